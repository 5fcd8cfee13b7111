"""
Scan Engine - Refreshable Caches.

============================================================
PURPOSE
============================================================
Recomputable process state with an explicit contract:

- get() loads on miss (or after the TTL) and caches the value
- Concurrent misses share a single in-flight load
- invalidate() drops the value; the next get() reloads

Used for global thresholds, resolved external credentials and
lazy client initialization. Instances are injected, never global.

============================================================
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

from .clock import ClockProtocol, SystemClock
from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# REFRESHABLE VALUE
# ============================================================

class RefreshableValue(Generic[T]):
    """Single-flight cached value."""

    def __init__(
        self,
        loader: Callable[[], Awaitable[T]],
        ttl_seconds: Optional[float] = None,
        clock: Optional[ClockProtocol] = None,
        name: str = "value",
    ):
        """
        Args:
            loader: Coroutine function producing the value
            ttl_seconds: Reload after this age; None keeps it until invalidated
            clock: Time source for TTL checks
            name: Label for logs
        """
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()
        self._name = name
        self._lock = asyncio.Lock()
        self._value: Optional[T] = None
        self._loaded = False
        self._loaded_at = 0.0
        self.load_count = 0

    @property
    def is_loaded(self) -> bool:
        return self._is_fresh()

    def _is_fresh(self) -> bool:
        if not self._loaded:
            return False
        if self._ttl_seconds is None:
            return True
        return self._clock.monotonic() - self._loaded_at < self._ttl_seconds

    async def get(self) -> T:
        """Return the cached value, loading it once on miss."""
        if self._is_fresh():
            return self._value

        async with self._lock:
            # Another caller may have finished the load while we waited.
            if self._is_fresh():
                return self._value

            value = await self._loader()
            self._value = value
            self._loaded = True
            self._loaded_at = self._clock.monotonic()
            self.load_count += 1
            logger.debug(f"Loaded {self._name}")
            return value

    def invalidate(self) -> None:
        """Drop the cached value."""
        self._value = None
        self._loaded = False


# ============================================================
# CREDENTIAL PROVIDER
# ============================================================

async def _env_loader(ref: str) -> Optional[str]:
    return os.getenv(ref)


class CredentialProvider:
    """
    Resolves credential references to secrets.

    A reference is what gets persisted on a scan (e.g. the name of an
    environment variable); the secret itself is never stored.
    """

    def __init__(
        self,
        default_ref: str,
        loader: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
        ttl_seconds: Optional[float] = 3600.0,
        clock: Optional[ClockProtocol] = None,
    ):
        self.default_ref = default_ref
        self._loader = loader or _env_loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, RefreshableValue[str]] = {}

    async def get(self, ref: Optional[str] = None) -> str:
        """Resolve `ref` (default reference when None)."""
        ref = ref or self.default_ref
        entry = self._entries.get(ref)
        if entry is None:
            entry = RefreshableValue(
                lambda: self._load(ref),
                ttl_seconds=self._ttl_seconds,
                clock=self._clock,
                name=f"credential {ref}",
            )
            self._entries[ref] = entry
        return await entry.get()

    async def _load(self, ref: str) -> str:
        value = await self._loader(ref)
        if not value:
            raise ConfigurationError(f"Credential {ref} is not configured")
        return value

    def invalidate(self, ref: Optional[str] = None) -> None:
        """Forget a resolved credential (all of them when ref is None)."""
        if ref is None:
            for entry in self._entries.values():
                entry.invalidate()
            return
        entry = self._entries.get(ref)
        if entry is not None:
            entry.invalidate()
            logger.info(f"Invalidated credential {ref}")
