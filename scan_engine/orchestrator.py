"""
Scan Engine - Scan Orchestrator.

============================================================
PURPOSE
============================================================
Entry point for one scan request.

SEQUENCE:
1. Validate request shape
2. Reserve quota (atomic, before any external call)
3. Check consent (denial gives the reservation back)
4. Submit to the resolution service
5a. Immediate result -> classify, persist, alert, return COMPLETED
5b. Deferred job     -> persist DEFERRED, hand to the poll worker,
                        return PENDING

ERROR CONTAINMENT:
- Validation, quota and consent errors are raised to the caller
- External-service errors end as a FAILED scan, never raised
- The image buffer is wiped as soon as the external call is over

============================================================
"""

import logging
import uuid
from typing import Callable, Optional

from .bus import MessageBus, Topic
from .clock import ClockProtocol, SystemClock
from .config import ScanEngineConfig
from .consent import ConsentGate
from .exceptions import (
    ConfigurationError,
    ConsentDenied,
    ExternalServiceError,
    InvalidTransition,
    ScanNotFound,
    ValidationError,
)
from .quota import QuotaLedger
from .recorder import ResultRecorder
from .resolution_client import ResolutionClient
from .state_machine import ScanStateMachine, StateTransitionEvent, persist_transition
from .types import (
    ResponseStatus,
    Scan,
    ScanRequest,
    ScanResponse,
    ScanState,
)


logger = logging.getLogger(__name__)


MAX_CAMERA_ID_LENGTH = 100


class ScanOrchestrator:
    """
    Admission + resolution + lifecycle for submitted scans.
    """

    def __init__(
        self,
        store,
        quota: QuotaLedger,
        consent: ConsentGate,
        client: ResolutionClient,
        recorder: ResultRecorder,
        bus: MessageBus,
        config: Optional[ScanEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._store = store
        self._quota = quota
        self._consent = consent
        self._client = client
        self._recorder = recorder
        self._bus = bus
        self._config = config or ScanEngineConfig()
        self._clock = clock or SystemClock()
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    @staticmethod
    def validate(request: ScanRequest) -> None:
        """
        Check request shape.

        Raises:
            ValidationError: first problem found
        """
        if not request.account_id or not request.account_id.strip():
            raise ValidationError("accountId is required", field="account_id")

        if request.image is None or request.image.is_empty:
            raise ValidationError("image is required", field="image")

        camera_id = request.site.camera_id if request.site else None
        if not camera_id or len(camera_id) > MAX_CAMERA_ID_LENGTH:
            raise ValidationError(
                f"cameraID must be 1-{MAX_CAMERA_ID_LENGTH} characters",
                field="camera_id",
            )

        location = request.site.location
        if location is not None:
            if not -90 <= location.latitude <= 90:
                raise ValidationError("lat must be between -90 and 90", field="location.lat")
            if not -180 <= location.longitude <= 180:
                raise ValidationError("lon must be between -180 and 180", field="location.lon")

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    async def submit_scan(self, request: ScanRequest) -> ScanResponse:
        """
        Run one scan request.

        Raises:
            ValidationError, QuotaExceeded, ConsentDenied
        """
        try:
            return await self._submit(request)
        finally:
            request.image.clear()

    async def _submit(self, request: ScanRequest) -> ScanResponse:
        self.validate(request)

        account_id = request.account_id
        period = self._clock.period()

        await self._quota.check(account_id, period)
        await self._quota.reserve(account_id, period)
        try:
            await self._consent.require(account_id)
        except ConsentDenied:
            await self._quota.release(account_id, period)
            raise
        await self._quota.warn_if_needed(account_id, period)

        scan = Scan(
            scan_id=self._id_factory(),
            account_id=account_id,
            service_id=request.service_id or self._config.resolution.service_id,
            camera_id=request.site.camera_id,
            location=request.site.location,
        )
        await self._store.create_scan(scan)
        machine = ScanStateMachine(scan, self._clock)
        await self._advance(machine.mark_submitted(), scan)

        try:
            result = await self._client.submit(request.image, request.site)
        except (ExternalServiceError, ConfigurationError) as e:
            await self._quota.release(account_id, period)
            return await self._fail(machine, e)
        finally:
            request.image.clear()

        if result.failed:
            return await self._fail(
                machine,
                ExternalServiceError(f"Resolution job {result.job_id} failed"),
            )

        if not result.deferred:
            return await self._complete_immediately(machine, result)

        event = machine.mark_deferred(result.job_id, self._client.default_credential_ref)
        await self._advance(event, scan)
        await self._bus.publish(Topic.SCAN_DEFERRED, {
            "scan_id": scan.scan_id,
            "account_id": scan.account_id,
            "external_job_id": scan.external_job_id,
            "credential_ref": scan.external_credential_ref,
        })
        logger.info(f"Scan {scan.scan_id} deferred (job {result.job_id})")

        return ScanResponse(
            scan_id=scan.scan_id,
            status=ResponseStatus.PENDING,
            state=scan.state,
        )

    async def _complete_immediately(self, machine: ScanStateMachine, result) -> ScanResponse:
        scan = machine.scan
        await self._advance(machine.mark_resolved_immediate(), scan)

        try:
            scan = await self._recorder.record(machine, result)
        except Exception as e:
            logger.error(f"Recording result for scan {scan.scan_id} failed: {e}", exc_info=True)
            if not machine.current_state.is_terminal():
                return await self._fail(machine, e, failure_reason="RECORDING_FAILED")
            # Completion is persisted; only the follow-up steps failed.
            scan = machine.scan

        return ScanResponse(
            scan_id=scan.scan_id,
            status=ResponseStatus.COMPLETED,
            state=scan.state,
            top_score=scan.top_score,
            tier=scan.match_tier,
            view_url=scan.view_url,
        )

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _advance(self, event: StateTransitionEvent, scan: Scan) -> None:
        if not await persist_transition(self._store, event, scan):
            raise InvalidTransition(
                f"Scan {scan.scan_id} left {event.from_state.value} concurrently"
            )

    async def _fail(
        self,
        machine: ScanStateMachine,
        error: Exception,
        failure_reason: Optional[str] = None,
    ) -> ScanResponse:
        scan = machine.scan
        if failure_reason is None:
            if isinstance(error, ExternalServiceError):
                failure_reason = error.category.value
            else:
                failure_reason = "CONFIGURATION"

        logger.error(f"Scan {scan.scan_id} failed: {failure_reason} ({error})")
        event = machine.mark_failed(failure_reason)
        await persist_transition(self._store, event, scan)

        return ScanResponse(
            scan_id=scan.scan_id,
            status=ResponseStatus.FAILED,
            state=ScanState.FAILED,
            error_code=failure_reason,
        )

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def get_scan(self, scan_id: str) -> Scan:
        scan = await self._store.get_scan(scan_id)
        if scan is None:
            raise ScanNotFound(f"Scan not found: {scan_id}")
        return scan
