"""
Scan Engine - Result Recorder.

============================================================
PURPOSE
============================================================
Turns a finished resolution result into persisted scan state.

Shared by the orchestrator (immediate path) and the poll worker
(deferred path):
1. Resolve thresholds and classify the top score
2. Persist score, tier, best subject and COMPLETED
3. Journal the sighting for HIGH tier matches with a location
4. Publish an AlertEvent for HIGH / MEDIUM tiers

============================================================
"""

import logging
from typing import Optional

from .bus import MessageBus, Topic
from .clock import ClockProtocol, SystemClock
from .config import AlertConfig
from .exceptions import InvalidTransition
from .state_machine import ScanStateMachine, persist_transition
from .thresholds import ThresholdResolver, classify
from .types import (
    AlertEvent,
    MatchTier,
    ResolutionResult,
    Scan,
    ThreatLocationEntry,
)


logger = logging.getLogger(__name__)


TIER_TOPICS = {
    MatchTier.HIGH: Topic.HIGH_THREAT,
    MatchTier.MEDIUM: Topic.MEDIUM_THREAT,
}

JOURNALED_TIERS = frozenset({MatchTier.HIGH})


class ResultRecorder:
    """Classify, persist, journal, publish."""

    def __init__(
        self,
        store,
        thresholds: ThresholdResolver,
        bus: MessageBus,
        config: Optional[AlertConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._thresholds = thresholds
        self._bus = bus
        self._config = config or AlertConfig()
        self._clock = clock or SystemClock()

    def view_url_for(self, scan: Scan, result: ResolutionResult) -> str:
        return result.view_url or f"{self._config.alert_base_url.rstrip('/')}/scan/{scan.scan_id}"

    async def record(self, machine: ScanStateMachine, result: ResolutionResult) -> Scan:
        """
        Complete the scan managed by `machine`.

        Returns:
            The completed scan

        Raises:
            InvalidTransition: if the stored scan already left the
                expected state (another worker finished it)
        """
        scan = machine.scan
        thresholds = await self._thresholds.resolve(scan.account_id, scan.service_id)

        top = result.top_match
        scan.top_score = result.top_score
        scan.match_tier = classify(scan.top_score, thresholds)
        scan.view_url = self.view_url_for(scan, result)
        scan.biometrics = list(result.biometrics)
        scan.crimes = list(result.crimes)
        if top is not None and top.subject is not None:
            scan.subject_id = top.subject.subject_id
            scan.subject_name = top.subject.name
            scan.subject_type = top.subject.subject_type
            scan.subject_photo_url = top.subject.photo_url

        event = machine.mark_completed(
            f"score={scan.top_score} tier={scan.match_tier.value if scan.match_tier else 'none'} "
            f"thresholds={thresholds.source.value}"
        )
        if not await persist_transition(self._store, event, scan):
            raise InvalidTransition(f"Scan {scan.scan_id} was completed concurrently")

        if scan.match_tier in JOURNALED_TIERS:
            await self._journal(scan)

        topic = TIER_TOPICS.get(scan.match_tier)
        if topic is not None:
            alert = AlertEvent(
                scan_id=scan.scan_id,
                tier=scan.match_tier,
                score=scan.top_score,
                account_id=scan.account_id,
                view_url=scan.view_url,
                location=scan.location,
                subject_id=scan.subject_id,
                subject_name=scan.subject_name,
                subject_type=scan.subject_type,
                mugshot_url=scan.subject_photo_url,
                crimes=scan.crimes,
                occurred_at=self._clock.now(),
            )
            await self._bus.publish(topic, alert.to_dict())
            logger.info(f"Published {scan.match_tier.value} alert for scan {scan.scan_id}")

        return scan

    async def _journal(self, scan: Scan) -> None:
        if scan.location is None or scan.subject_id is None:
            logger.debug(f"Scan {scan.scan_id} has no location or subject, not journaled")
            return

        await self._store.append_threat_location(
            scan.subject_id,
            ThreatLocationEntry(
                latitude=scan.location.latitude,
                longitude=scan.location.longitude,
                recorded_at=self._clock.now(),
                account_id=scan.account_id,
                scan_id=scan.scan_id,
            ),
        )
        logger.info(f"Journaled sighting of subject {scan.subject_id} (scan {scan.scan_id})")
