"""
Scan Engine - Quota Ledger.

============================================================
PURPOSE
============================================================
Per account, per period scan counter.

- check(): cheap, non-atomic pre-check for fast rejection
- reserve(): authoritative atomic compare-and-increment
- release(): give a reservation back when no external job was created
- warn_if_needed(): usage warning at 80%, at most once per 24h

============================================================
"""

import logging
from datetime import timedelta
from typing import Optional

from .clock import ClockProtocol, SystemClock
from .config import QuotaConfig
from .exceptions import QuotaExceeded
from .types import QuotaRecord, QuotaReservation


logger = logging.getLogger(__name__)


class QuotaLedger:
    """Atomic usage counter on top of the scan store."""

    def __init__(
        self,
        store,
        config: Optional[QuotaConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._config = config or QuotaConfig()
        self._clock = clock or SystemClock()

    async def _record(self, account_id: str, period: str) -> QuotaRecord:
        record = await self._store.get_quota(account_id, period)
        if record is None:
            await self._store.ensure_quota(account_id, period, self._config.scans_per_period)
            record = await self._store.get_quota(account_id, period)
        return record

    async def check(self, account_id: str, period: str) -> QuotaRecord:
        """
        Non-atomic pre-check.

        Raises:
            QuotaExceeded: if the counter is already at the limit
        """
        record = await self._record(account_id, period)
        if record.used >= record.limit:
            raise QuotaExceeded(account_id, record.used, record.limit)
        return record

    async def reserve(self, account_id: str, period: str) -> QuotaReservation:
        """
        Reserve one scan.

        Raises:
            QuotaExceeded: counter unchanged
        """
        await self._record(account_id, period)

        allowed = await self._store.increment_quota(account_id, period)
        record = await self._store.get_quota(account_id, period)

        if not allowed:
            logger.warning(
                f"Quota exceeded for account {account_id}: {record.used}/{record.limit}"
            )
            raise QuotaExceeded(account_id, record.used, record.limit)

        return QuotaReservation(allowed=True, used=record.used, limit=record.limit)

    async def release(self, account_id: str, period: str) -> None:
        """Return one reserved scan."""
        if await self._store.decrement_quota(account_id, period):
            logger.info(f"Released quota reservation for account {account_id}")

    async def warn_if_needed(self, account_id: str, period: str) -> bool:
        """
        Emit a usage warning past the warning ratio, debounced.

        Returns:
            True if a warning was emitted
        """
        record = await self._store.get_quota(account_id, period)
        if record is None:
            return False

        if record.used < record.limit * self._config.warning_ratio:
            return False

        now = self._clock.now()
        interval = timedelta(hours=self._config.warning_interval_hours)
        if record.last_warned_at is not None and now - record.last_warned_at < interval:
            return False

        logger.warning(
            f"Account {account_id} has used {record.used}/{record.limit} scans "
            f"for {period} ({record.remaining} remaining)"
        )
        await self._store.mark_quota_warned(account_id, period, now)
        return True
