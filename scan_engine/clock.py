"""
Scan Engine - Clock.

============================================================
RESPONSIBILITY
============================================================
Testable time source for the scan pipeline.

- Wall-clock time in UTC for persisted timestamps
- Monotonic time for deadlines
- Async sleep, so backoff loops can be driven by tests

============================================================
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for time."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic scale."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend for `seconds`."""
        pass

    def period(self, at: Optional[datetime] = None) -> str:
        """Quota period key (calendar year)."""
        return str((at or self.now()).year)


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    sleep() returns immediately and advances both the wall clock and the
    monotonic clock, recording every requested delay.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = initial_time or datetime.now(timezone.utc)
        self._monotonic = 0.0
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        # Let other tasks run, as a real sleep would.
        await asyncio.sleep(0)

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            if new_time.tzinfo is None:
                new_time = new_time.replace(tzinfo=timezone.utc)
            self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """Advance time by the specified amount."""
        with self._lock:
            delta = timedelta(seconds=seconds, **kwargs)
            self._time = self._time + delta
            self._monotonic += delta.total_seconds()
