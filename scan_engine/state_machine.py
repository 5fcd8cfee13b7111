"""
Scan Engine - Scan State Machine.

============================================================
PURPOSE
============================================================
Manages the scan lifecycle with strict state transitions.

STATE MACHINE:

         CREATED
            │
            ▼
        SUBMITTED ─────────────────────────┐
            │                              │
            ├──► RESOLVED_IMMEDIATE ──┐    │
            │                         │    │
            └──► DEFERRED ────────────┤    │
                    │                 ▼    ▼
                    │            COMPLETED  FAILED
                    ▼
                TIMED_OUT

    CREATED, SUBMITTED, RESOLVED_IMMEDIATE and DEFERRED
    can all transition to FAILED.

INVARIANTS:
- Terminal states are final
- Each transition has a guard
- Persisted writes are conditional on the previous state

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .clock import ClockProtocol, SystemClock
from .exceptions import InvalidTransition
from .types import Scan, ScanState


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[ScanState, Set[ScanState]] = {
    ScanState.CREATED: {
        ScanState.SUBMITTED,
        ScanState.FAILED,
    },
    ScanState.SUBMITTED: {
        ScanState.RESOLVED_IMMEDIATE,
        ScanState.DEFERRED,
        ScanState.FAILED,
    },
    ScanState.RESOLVED_IMMEDIATE: {
        ScanState.COMPLETED,
        ScanState.FAILED,
    },
    ScanState.DEFERRED: {
        ScanState.COMPLETED,
        ScanState.FAILED,
        ScanState.TIMED_OUT,
    },
    # Terminal states - no transitions out
    ScanState.COMPLETED: set(),
    ScanState.FAILED: set(),
    ScanState.TIMED_OUT: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a state transition."""

    scan_id: str
    """Scan ID."""

    from_state: ScanState
    """Previous state."""

    to_state: ScanState
    """New state."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When transition occurred."""

    reason: str = ""
    """Reason for transition."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for state transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_state: ScanState,
        to_state: ScanState,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    @staticmethod
    def validate_scan_for_state(scan: Scan, target_state: ScanState) -> Tuple[bool, str]:
        """Check the scan carries the data the target state needs."""
        if target_state == ScanState.DEFERRED and not scan.external_job_id:
            return False, "Missing external_job_id for DEFERRED state"

        if target_state == ScanState.COMPLETED and scan.top_score is None:
            return False, "Missing top_score for COMPLETED state"

        return True, "Scan valid for state"


# ============================================================
# SCAN STATE MACHINE
# ============================================================

class ScanStateMachine:
    """
    State machine for one scan.

    Manages state transitions with:
    - Guard checks
    - Event emission
    - History tracking
    """

    def __init__(self, scan: Scan, clock: Optional[ClockProtocol] = None):
        self._scan = scan
        self._clock = clock or SystemClock()
        self._history: List[StateTransitionEvent] = []
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []

    @property
    def current_state(self) -> ScanState:
        return self._scan.state

    @property
    def scan(self) -> Scan:
        return self._scan

    @property
    def history(self) -> List[StateTransitionEvent]:
        return list(self._history)

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        """Add a transition listener."""
        self._listeners.append(listener)

    def can_transition_to(self, target_state: ScanState) -> Tuple[bool, str]:
        allowed, reason = TransitionGuard.can_transition(self.current_state, target_state)
        if not allowed:
            return False, reason
        return TransitionGuard.validate_scan_for_state(self._scan, target_state)

    def transition_to(
        self,
        target_state: ScanState,
        reason: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> StateTransitionEvent:
        """
        Transition to a new state.

        Raises:
            InvalidTransition: If transition is not allowed
        """
        allowed, validation_reason = self.can_transition_to(target_state)

        if not allowed:
            raise InvalidTransition(
                f"Cannot transition scan {self._scan.scan_id} from "
                f"{self.current_state.value} to {target_state.value}: "
                f"{validation_reason}"
            )

        event = StateTransitionEvent(
            scan_id=self._scan.scan_id,
            from_state=self.current_state,
            to_state=target_state,
            timestamp=self._clock.now(),
            reason=reason,
            details=details or {},
        )

        self._scan.state = target_state
        self._scan.updated_at = event.timestamp
        self._history.append(event)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"State listener error: {e}")

        logger.info(
            f"Scan {self._scan.scan_id}: "
            f"{event.from_state.value} -> {event.to_state.value} "
            f"({reason})"
        )

        return event

    # --------------------------------------------------------
    # CONVENIENCE METHODS
    # --------------------------------------------------------

    def mark_submitted(self, reason: str = "Sent to resolution service") -> StateTransitionEvent:
        return self.transition_to(ScanState.SUBMITTED, reason)

    def mark_resolved_immediate(self, reason: str = "Match data returned") -> StateTransitionEvent:
        return self.transition_to(ScanState.RESOLVED_IMMEDIATE, reason)

    def mark_deferred(
        self,
        external_job_id: str,
        credential_ref: Optional[str],
        reason: str = "Job accepted, polling required",
    ) -> StateTransitionEvent:
        self._scan.external_job_id = external_job_id
        self._scan.external_credential_ref = credential_ref
        self._scan.polling_required = True
        return self.transition_to(
            ScanState.DEFERRED,
            reason,
            details={"external_job_id": external_job_id},
        )

    def mark_completed(self, reason: str = "Result recorded") -> StateTransitionEvent:
        return self.transition_to(ScanState.COMPLETED, reason)

    def mark_failed(self, failure_reason: str, reason: str = "") -> StateTransitionEvent:
        self._scan.failure_reason = failure_reason
        return self.transition_to(ScanState.FAILED, reason or failure_reason)

    def mark_timed_out(self, reason: str = "Polling deadline elapsed") -> StateTransitionEvent:
        self._scan.failure_reason = "POLL_TIMEOUT"
        return self.transition_to(ScanState.TIMED_OUT, reason)


# ============================================================
# PERSISTENCE
# ============================================================

async def persist_transition(store, event: StateTransitionEvent, scan: Scan) -> bool:
    """
    Write a transitioned scan, conditional on its previous state.

    Returns:
        False if the stored scan had already moved on
    """
    return await store.update_scan(scan, expected_state=event.from_state)
