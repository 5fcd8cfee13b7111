"""
Digest - Scheduler.

Runs the weekly aggregator on a fixed interval until stopped.
"""

import asyncio
import logging
from typing import List, Optional

from scan_engine.clock import ClockProtocol, SystemClock
from scan_engine.config import DigestConfig

from .aggregator import DigestRunReport, WeeklyDigestAggregator


logger = logging.getLogger(__name__)


class DigestScheduler:
    """Fixed-interval digest loop."""

    def __init__(
        self,
        aggregator: WeeklyDigestAggregator,
        config: Optional[DigestConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._aggregator = aggregator
        self._config = config or DigestConfig()
        self._clock = clock or SystemClock()
        self._shutdown_requested = False
        self._task: Optional[asyncio.Task] = None
        self.reports: List[DigestRunReport] = []

    @property
    def interval_seconds(self) -> float:
        return self._config.interval_days * 86400

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_forever(self, max_runs: Optional[int] = None) -> None:
        """
        Run the aggregator, then wait one interval, until shutdown.

        Args:
            max_runs: Stop after this many runs (None = unbounded)
        """
        logger.info(f"Starting digest loop | interval={self._config.interval_days}d")
        runs = 0

        while not self._shutdown_requested:
            try:
                self.reports.append(await self._aggregator.run())
            except asyncio.CancelledError:
                logger.info("Digest loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Digest run error: {e}", exc_info=True)

            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            if not self._shutdown_requested:
                await self._clock.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.is_running:
            return
        self._shutdown_requested = False
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        self._shutdown_requested = True
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Digest loop stopped")
