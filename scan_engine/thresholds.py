"""
Scan Engine - Threshold Resolver.

============================================================
PURPOSE
============================================================
Decides which tier floors apply to a scan and classifies scores.

PRIORITY CHAIN:
1. Per-account override (account profile)
2. Per-service default (service_thresholds table)
3. Global default (GLOBAL_THRESHOLDS setting, else 89/75/50)

CLASSIFICATION (open intervals on every floor):
- score >  high            -> HIGH
- medium < score <= high   -> MEDIUM
- low < score <= medium    -> LOW
- score <= low             -> none

============================================================
"""

import json
import logging
import math
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .cache import RefreshableValue
from .clock import ClockProtocol
from .config import ThresholdSettings
from .exceptions import InvalidThreshold, ProfileNotFound
from .types import MatchTier, ThresholdConfig, ThresholdSource


logger = logging.getLogger(__name__)


DEFAULT_THRESHOLDS = ThresholdConfig(high=89, medium=75, low=50, source=ThresholdSource.GLOBAL)


# ============================================================
# VALIDATION / CLASSIFICATION
# ============================================================

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_thresholds(thresholds: ThresholdConfig) -> ThresholdConfig:
    """
    Check 0 <= low < medium < high <= 100.

    Raises:
        InvalidThreshold: describing the first violated rule
    """
    high, medium, low = thresholds.high, thresholds.medium, thresholds.low

    for name, value in (("high", high), ("medium", medium), ("low", low)):
        if not _is_number(value):
            raise InvalidThreshold(f"{name} must be a number, got {value!r}")
        if value < 0 or value > 100:
            raise InvalidThreshold(f"{name} must be between 0 and 100, got {value}")

    if not high > medium:
        raise InvalidThreshold(f"high ({high}) must be greater than medium ({medium})")
    if not medium > low:
        raise InvalidThreshold(f"medium ({medium}) must be greater than low ({low})")

    return thresholds


def parse_thresholds(
    data: Mapping[str, Any],
    source: ThresholdSource = ThresholdSource.GLOBAL,
) -> ThresholdConfig:
    """Build and validate a threshold tuple from a mapping."""
    missing = [key for key in ("high", "medium", "low") if key not in data]
    if missing:
        raise InvalidThreshold(f"Missing threshold fields: {', '.join(missing)}")

    return validate_thresholds(ThresholdConfig(
        high=data["high"],
        medium=data["medium"],
        low=data["low"],
        source=source,
    ))


def classify(score: float, thresholds: ThresholdConfig) -> Optional[MatchTier]:
    """Map a score to a tier. Floors are exclusive."""
    if score > thresholds.high:
        return MatchTier.HIGH
    if score > thresholds.medium:
        return MatchTier.MEDIUM
    if score > thresholds.low:
        return MatchTier.LOW
    return None


# ============================================================
# RESOLVER
# ============================================================

class ThresholdResolver:
    """
    Priority-chain lookup with injected caches.

    Service and global tuples are cached; account overrides are read
    on every call since they are per-entity.
    """

    def __init__(
        self,
        store,
        settings: Optional[ThresholdSettings] = None,
        global_loader: Optional[Callable[[], Awaitable[Optional[Dict[str, Any]]]]] = None,
        cache_ttl_seconds: Optional[float] = 300.0,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Args:
            store: Scan store
            settings: Built-in global defaults and optional JSON override
            global_loader: Coroutine returning the global tuple as a mapping,
                e.g. from a parameter store; None falls back to settings
            cache_ttl_seconds: Age after which cached tuples are reloaded
            clock: Time source for cache ages
        """
        self._store = store
        self._settings = settings or ThresholdSettings()
        self._global_loader = global_loader
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock

        self._global = RefreshableValue(
            self._load_global,
            ttl_seconds=cache_ttl_seconds,
            clock=clock,
            name="global thresholds",
        )
        self._services: Dict[str, RefreshableValue] = {}

    # --------------------------------------------------------
    # RESOLUTION
    # --------------------------------------------------------

    async def resolve(self, account_id: str, service_id: Optional[str] = None) -> ThresholdConfig:
        """Return the tuple that applies to this account and service."""
        profile = await self._store.get_account_profile(account_id)
        if profile is not None and profile.thresholds is not None:
            try:
                return validate_thresholds(profile.thresholds)
            except InvalidThreshold as e:
                logger.warning(f"Ignoring invalid thresholds for account {account_id}: {e}")

        if service_id:
            service_thresholds = await self._service_entry(service_id).get()
            if service_thresholds is not None:
                return service_thresholds

        return await self._global.get()

    async def classify_for(
        self,
        score: float,
        account_id: str,
        service_id: Optional[str] = None,
    ) -> Optional[MatchTier]:
        return classify(score, await self.resolve(account_id, service_id))

    def _service_entry(self, service_id: str) -> RefreshableValue:
        entry = self._services.get(service_id)
        if entry is None:
            entry = RefreshableValue(
                lambda: self._load_service(service_id),
                ttl_seconds=self._cache_ttl_seconds,
                clock=self._clock,
                name=f"service thresholds {service_id}",
            )
            self._services[service_id] = entry
        return entry

    async def _load_service(self, service_id: str) -> Optional[ThresholdConfig]:
        thresholds = await self._store.get_service_thresholds(service_id)
        if thresholds is None:
            return None
        try:
            return validate_thresholds(thresholds)
        except InvalidThreshold as e:
            logger.warning(f"Ignoring invalid thresholds for service {service_id}: {e}")
            return None

    async def _load_global(self) -> ThresholdConfig:
        defaults = ThresholdConfig(
            high=self._settings.high,
            medium=self._settings.medium,
            low=self._settings.low,
            source=ThresholdSource.GLOBAL,
        )

        if self._global_loader is not None:
            raw = await self._global_loader()
        elif self._settings.global_override_json:
            try:
                raw = json.loads(self._settings.global_override_json)
            except json.JSONDecodeError as e:
                logger.warning(f"GLOBAL_THRESHOLDS is not valid JSON, using defaults: {e}")
                raw = None
        else:
            raw = None

        if not raw:
            return defaults

        try:
            return parse_thresholds(raw, ThresholdSource.GLOBAL)
        except InvalidThreshold as e:
            logger.warning(f"Invalid global thresholds, using defaults: {e}")
            return defaults

    # --------------------------------------------------------
    # UPDATES
    # --------------------------------------------------------

    async def update_account_thresholds(
        self,
        account_id: str,
        high: float,
        medium: float,
        low: float,
    ) -> ThresholdConfig:
        """
        Validate and store an account override.

        Raises:
            InvalidThreshold: nothing is written
            ProfileNotFound: account has no profile
        """
        thresholds = validate_thresholds(ThresholdConfig(
            high=high, medium=medium, low=low, source=ThresholdSource.USER,
        ))
        if not await self._store.update_account_thresholds(account_id, thresholds, "user"):
            raise ProfileNotFound(f"Account profile not found: {account_id}")

        logger.info(f"Updated thresholds for account {account_id}: {thresholds.to_dict()}")
        return thresholds

    async def update_service_thresholds(
        self,
        service_id: str,
        high: float,
        medium: float,
        low: float,
    ) -> ThresholdConfig:
        """Validate and store a service default."""
        thresholds = validate_thresholds(ThresholdConfig(
            high=high, medium=medium, low=low, source=ThresholdSource.SERVICE,
        ))
        await self._store.save_service_thresholds(service_id, thresholds)
        self.invalidate(service_id)

        logger.info(f"Updated thresholds for service {service_id}: {thresholds.to_dict()}")
        return thresholds

    def invalidate(self, service_id: Optional[str] = None) -> None:
        """Drop cached tuples (one service, or everything)."""
        if service_id is not None:
            entry = self._services.get(service_id)
            if entry is not None:
                entry.invalidate()
            return

        self._global.invalidate()
        for entry in self._services.values():
            entry.invalidate()
