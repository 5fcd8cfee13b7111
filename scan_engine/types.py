"""
Scan Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Core types for the threat scan pipeline.

TYPES:
- Enums: scan states, tiers, threshold sources, channels
- Request types: image reference, site metadata, scan request
- Result types: resolution result, scan record, scan response
- Admission types: quota record, consent record
- Alert types: alert event, threat location journal
- Account types: profile, webhook subscription, device token

============================================================
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# ENUMS
# ============================================================

class ScanState(Enum):
    """
    Scan lifecycle state.

    CREATED -> SUBMITTED -> RESOLVED_IMMEDIATE | DEFERRED
    -> COMPLETED | FAILED | TIMED_OUT
    """

    CREATED = "CREATED"
    """Admitted, not yet sent to the resolution service."""

    SUBMITTED = "SUBMITTED"
    """External call in flight."""

    RESOLVED_IMMEDIATE = "RESOLVED_IMMEDIATE"
    """Service answered with match data inside the request timeout."""

    DEFERRED = "DEFERRED"
    """Service accepted the job; the poll worker owns completion."""

    COMPLETED = "COMPLETED"
    """Score and tier persisted."""

    FAILED = "FAILED"
    """External call or polling failed."""

    TIMED_OUT = "TIMED_OUT"
    """Polling deadline elapsed."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (
            ScanState.COMPLETED,
            ScanState.FAILED,
            ScanState.TIMED_OUT,
        )


class MatchTier(Enum):
    """Threat tier of a match score."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ThresholdSource(Enum):
    """Where a threshold tuple came from."""

    USER = "user"
    SERVICE = "service"
    GLOBAL = "global"


class ChannelType(Enum):
    """Alert delivery channel."""

    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    THREAT_LOCATION = "threat_location"


class ResponseStatus(Enum):
    """Status returned to the scan submitter."""

    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"


# ============================================================
# REQUEST TYPES
# ============================================================

@dataclass
class Location:
    """Capture location."""

    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.latitude, "lon": self.longitude}


@dataclass
class ImageRef:
    """
    Image handed to the resolution service.

    Either a URL or raw bytes. Bytes are held in a bytearray so the
    buffer can be zeroed once the external call is done.
    """

    url: Optional[str] = None
    data: Optional[bytearray] = None
    content_type: str = "image/jpeg"

    @classmethod
    def from_url(cls, url: str) -> "ImageRef":
        return cls(url=url)

    @classmethod
    def from_bytes(cls, data: bytes, content_type: str = "image/jpeg") -> "ImageRef":
        return cls(data=bytearray(data), content_type=content_type)

    @classmethod
    def from_base64(cls, encoded: str, content_type: str = "image/jpeg") -> "ImageRef":
        """Decode a base64 payload, tolerating a data-URL prefix."""
        if encoded.startswith("data:") and "," in encoded:
            header, encoded = encoded.split(",", 1)
            content_type = header[5:].split(";", 1)[0] or content_type
        return cls(data=bytearray(base64.b64decode(encoded)), content_type=content_type)

    @property
    def is_url(self) -> bool:
        return self.url is not None

    @property
    def is_empty(self) -> bool:
        return self.url is None and not self.data

    def clear(self) -> None:
        """Zero and drop the image buffer."""
        if self.data is not None:
            for i in range(len(self.data)):
                self.data[i] = 0
            self.data = None
        self.url = None


@dataclass
class SiteMetadata:
    """Where and when the image was captured."""

    camera_id: str
    location: Optional[Location] = None
    site: Optional[str] = None
    name: Optional[str] = None
    captured_at: Optional[datetime] = None


@dataclass
class ScanRequest:
    """Inbound scan request."""

    account_id: str
    image: ImageRef
    site: SiteMetadata
    service_id: Optional[str] = None


# ============================================================
# RESOLUTION RESULT
# ============================================================

@dataclass
class Subject:
    """Matched subject as reported by the resolution service."""

    subject_id: str
    name: Optional[str] = None
    subject_type: Optional[str] = None
    photo_url: Optional[str] = None


@dataclass
class Match:
    """One candidate match."""

    match_id: str
    score: float
    score_level: Optional[str] = None
    subject: Optional[Subject] = None


PENDING_STATUSES = frozenset({"PENDING", "PROCESSING", "QUEUED", "SUBMITTED"})
FAILED_STATUSES = frozenset({"FAILED", "ERROR", "CANCELLED"})


@dataclass
class ResolutionResult:
    """Normalized answer from the resolution service."""

    job_id: str
    status: str
    matches: List[Match] = field(default_factory=list)
    biometrics: List[Dict[str, Any]] = field(default_factory=list)
    crimes: List[Dict[str, Any]] = field(default_factory=list)
    view_url: Optional[str] = None
    timed_out: bool = False

    @property
    def deferred(self) -> bool:
        """Job accepted but not finished."""
        return self.timed_out or self.status.upper() in PENDING_STATUSES

    @property
    def failed(self) -> bool:
        return self.status.upper() in FAILED_STATUSES

    @property
    def top_match(self) -> Optional[Match]:
        if not self.matches:
            return None
        return max(self.matches, key=lambda m: m.score)

    @property
    def top_score(self) -> float:
        top = self.top_match
        return top.score if top else 0.0


# ============================================================
# SCAN RECORD
# ============================================================

@dataclass
class Scan:
    """Persisted scan lifecycle record."""

    scan_id: str
    account_id: str
    state: ScanState = ScanState.CREATED
    external_job_id: Optional[str] = None
    top_score: Optional[float] = None
    match_tier: Optional[MatchTier] = None
    view_url: Optional[str] = None
    polling_required: bool = False
    external_credential_ref: Optional[str] = None
    service_id: Optional[str] = None

    # Capture metadata
    camera_id: Optional[str] = None
    location: Optional[Location] = None

    # Best match
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    subject_type: Optional[str] = None
    subject_photo_url: Optional[str] = None
    biometrics: List[Dict[str, Any]] = field(default_factory=list)
    crimes: List[Dict[str, Any]] = field(default_factory=list)

    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ScanResponse:
    """Synchronous answer to the submitter."""

    scan_id: str
    status: ResponseStatus
    state: ScanState
    top_score: Optional[float] = None
    tier: Optional[MatchTier] = None
    view_url: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "status": self.status.value,
            "state": self.state.value,
            "top_score": self.top_score,
            "tier": self.tier.value if self.tier else None,
            "view_url": self.view_url,
            "error_code": self.error_code,
        }


# ============================================================
# ADMISSION
# ============================================================

@dataclass
class QuotaRecord:
    """Per account, per period usage counter."""

    account_id: str
    period: str
    used: int
    limit: int
    last_warned_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass
class QuotaReservation:
    """Outcome of an atomic reservation."""

    allowed: bool
    used: int
    limit: int


@dataclass
class ConsentRecord:
    """Account consent flag."""

    account_id: str
    consent_status: bool
    updated_at: Optional[datetime] = None


# ============================================================
# THRESHOLDS
# ============================================================

@dataclass(frozen=True)
class ThresholdConfig:
    """Tier floors. Valid only when 0 <= low < medium < high <= 100."""

    high: float
    medium: float
    low: float
    source: ThresholdSource = ThresholdSource.GLOBAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "source": self.source.value,
        }


# ============================================================
# ALERTS
# ============================================================

@dataclass
class AlertEvent:
    """Notable match handed to the alert dispatcher."""

    scan_id: str
    tier: MatchTier
    score: float
    account_id: str
    view_url: str
    location: Optional[Location] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    subject_type: Optional[str] = None
    mugshot_url: Optional[str] = None
    crimes: List[Dict[str, Any]] = field(default_factory=list)
    occurred_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the bus."""
        return {
            "scan_id": self.scan_id,
            "tier": self.tier.value,
            "score": self.score,
            "account_id": self.account_id,
            "view_url": self.view_url,
            "location": self.location.to_dict() if self.location else None,
            "subject_id": self.subject_id,
            "subject_name": self.subject_name,
            "subject_type": self.subject_type,
            "mugshot_url": self.mugshot_url,
            "crimes": list(self.crimes),
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertEvent":
        location = data.get("location")
        occurred_at = data.get("occurred_at")
        return cls(
            scan_id=data["scan_id"],
            tier=MatchTier(data["tier"]),
            score=float(data["score"]),
            account_id=data["account_id"],
            view_url=data["view_url"],
            location=Location(location["lat"], location["lon"]) if location else None,
            subject_id=data.get("subject_id"),
            subject_name=data.get("subject_name"),
            subject_type=data.get("subject_type"),
            mugshot_url=data.get("mugshot_url"),
            crimes=list(data.get("crimes") or []),
            occurred_at=datetime.fromisoformat(occurred_at) if occurred_at else None,
        )


@dataclass
class ThreatLocationEntry:
    """One sighting of a subject."""

    latitude: float
    longitude: float
    recorded_at: datetime
    account_id: Optional[str] = None
    scan_id: Optional[str] = None


@dataclass
class ThreatLocationJournal:
    """Append-only sightings of one subject."""

    subject_id: str
    entries: List[ThreatLocationEntry] = field(default_factory=list)

    @property
    def last_seen_at(self) -> Optional[datetime]:
        if not self.entries:
            return None
        return max(entry.recorded_at for entry in self.entries)


# ============================================================
# ACCOUNT COLLABORATORS
# ============================================================

@dataclass
class AccountProfile:
    """Contact details and per-account overrides."""

    account_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    unsubscribe_token: Optional[str] = None
    email_opt_out: bool = False
    email_opt_out_at: Optional[datetime] = None
    email_opt_out_reason: Optional[str] = None
    thresholds: Optional[ThresholdConfig] = None


@dataclass
class WebhookSubscription:
    """Account webhook endpoint."""

    webhook_id: str
    account_id: str
    url: str
    enabled: bool = True
    created_at: Optional[datetime] = None


@dataclass
class DeviceToken:
    """Registered push token."""

    account_id: str
    token: str
    platform: Optional[str] = None
    app_version: Optional[str] = None
    registered_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    failure_count: int = 0
    last_error: Optional[str] = None
    stale: bool = False
