"""
Scan Engine - Poll Worker.

============================================================
PURPOSE
============================================================
Completes deferred scans.

For one scan-deferred message:
- Skip scans that are missing, not deferred, or already terminal
  (redelivered messages are harmless)
- poll_until_complete() with the configured 120s deadline
- Success  -> ResultRecorder (score, tier, journal, alert)
- Timeout  -> TIMED_OUT
- Failure  -> FAILED

The only retry is the backoff inside poll_until_complete(); the
worker never re-enqueues and never raises to the bus.

============================================================
"""

import logging
from typing import Any, Dict, Optional

from .bus import MessageBus, Topic
from .clock import ClockProtocol, SystemClock
from .config import PollConfig
from .exceptions import ConfigurationError, ExternalServiceError, PollTimeout
from .recorder import ResultRecorder
from .resolution_client import ResolutionClient
from .state_machine import ScanStateMachine, persist_transition
from .types import ScanState


logger = logging.getLogger(__name__)


class PollWorker:
    """Deferred scan continuation."""

    def __init__(
        self,
        store,
        client: ResolutionClient,
        recorder: ResultRecorder,
        config: Optional[PollConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._client = client
        self._recorder = recorder
        self._config = config or PollConfig()
        self._clock = clock or SystemClock()

    def subscribe(self, bus: MessageBus) -> None:
        bus.subscribe(Topic.SCAN_DEFERRED, self.handle)

    async def handle(self, payload: Dict[str, Any]) -> Optional[ScanState]:
        """
        Process one deferred scan message.

        Returns:
            Final state, or None if the message was skipped
        """
        scan_id = payload.get("scan_id")
        scan = await self._store.get_scan(scan_id) if scan_id else None

        if scan is None:
            logger.warning(f"Deferred scan not found: {scan_id}")
            return None
        if scan.state.is_terminal():
            logger.info(f"Scan {scan_id} already {scan.state.value}, skipping")
            return None
        if scan.state != ScanState.DEFERRED or not scan.external_job_id:
            logger.warning(f"Scan {scan_id} is {scan.state.value}, not pollable")
            return None

        machine = ScanStateMachine(scan, self._clock)

        try:
            result = await self._client.poll_until_complete(
                scan.external_job_id,
                credential_ref=scan.external_credential_ref,
                deadline_seconds=self._config.deadline_seconds,
                initial_delay_seconds=self._config.initial_delay_seconds,
            )
        except PollTimeout as e:
            logger.warning(f"Scan {scan_id} timed out: {e}")
            await persist_transition(self._store, machine.mark_timed_out(), scan)
            return scan.state
        except (ExternalServiceError, ConfigurationError) as e:
            reason = e.category.value if isinstance(e, ExternalServiceError) else "CONFIGURATION"
            logger.error(f"Scan {scan_id} polling failed: {reason} ({e})")
            await persist_transition(self._store, machine.mark_failed(reason), scan)
            return scan.state
        except Exception as e:
            logger.error(f"Scan {scan_id} polling failed unexpectedly: {e}", exc_info=True)
            await persist_transition(self._store, machine.mark_failed("INTERNAL"), scan)
            return scan.state

        if result.failed:
            logger.error(f"Scan {scan_id}: resolution job {result.job_id} reported {result.status}")
            await persist_transition(self._store, machine.mark_failed("UPSTREAM_FAILED"), scan)
            return scan.state

        try:
            await self._recorder.record(machine, result)
        except Exception as e:
            logger.error(f"Recording result for scan {scan_id} failed: {e}", exc_info=True)
            if not machine.current_state.is_terminal():
                await persist_transition(self._store, machine.mark_failed("RECORDING_FAILED"), scan)

        return scan.state
