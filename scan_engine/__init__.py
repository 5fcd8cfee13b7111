"""
Scan Engine.

============================================================
PURPOSE
============================================================
Core of the threat scan pipeline.

- Admission: quota ledger, consent gate
- Resolution: external service client with retry, redirects, polling
- Lifecycle: scan state machine, orchestrator, poll worker
- Classification: threshold resolver and result recorder
- Messaging: in-process bus with bounded redelivery

============================================================
"""

from .bus import InMemoryMessageBus, MessageBus, Topic
from .cache import CredentialProvider, RefreshableValue
from .clock import ClockProtocol, MockClock, SystemClock
from .config import ScanEngineConfig
from .consent import ConsentGate
from .exceptions import (
    ChannelDeliveryError,
    ConfigurationError,
    ConsentDenied,
    EmailDeliveryError,
    ExternalServiceError,
    InvalidThreshold,
    InvalidTransition,
    PollTimeout,
    ProfileNotFound,
    QuotaExceeded,
    ScanEngineError,
    ScanNotFound,
    ValidationError,
)
from .orchestrator import ScanOrchestrator
from .poll_worker import PollWorker
from .quota import QuotaLedger
from .recorder import ResultRecorder
from .resolution_client import ResolutionClient
from .state_machine import ScanStateMachine
from .thresholds import ThresholdResolver, classify, validate_thresholds
from .types import (
    AlertEvent,
    ImageRef,
    Location,
    MatchTier,
    ResolutionResult,
    Scan,
    ScanRequest,
    ScanResponse,
    ScanState,
    SiteMetadata,
    ThresholdConfig,
)


__all__ = [
    # Pipeline
    "ScanOrchestrator",
    "PollWorker",
    "ResultRecorder",
    "ResolutionClient",
    "QuotaLedger",
    "ConsentGate",
    "ThresholdResolver",
    "ScanStateMachine",
    "classify",
    "validate_thresholds",
    # Infrastructure
    "MessageBus",
    "InMemoryMessageBus",
    "Topic",
    "RefreshableValue",
    "CredentialProvider",
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ScanEngineConfig",
    # Types
    "AlertEvent",
    "ImageRef",
    "Location",
    "MatchTier",
    "ResolutionResult",
    "Scan",
    "ScanRequest",
    "ScanResponse",
    "ScanState",
    "SiteMetadata",
    "ThresholdConfig",
    # Exceptions
    "ScanEngineError",
    "ConfigurationError",
    "ValidationError",
    "QuotaExceeded",
    "ConsentDenied",
    "ExternalServiceError",
    "PollTimeout",
    "InvalidTransition",
    "ScanNotFound",
    "InvalidThreshold",
    "ProfileNotFound",
    "ChannelDeliveryError",
    "EmailDeliveryError",
]
