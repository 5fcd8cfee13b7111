"""
Scan Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the scan pipeline.

CRITICAL CONSTRAINTS:
- Bounded retries with exponential backoff
- Bounded polling window (120s)
- Secrets come from the environment, never from code

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for external calls.

    Applies to network errors, 5xx and rate-limit responses.
    """

    max_retries: int = 3
    """Maximum number of retry attempts after the first call."""

    initial_delay_seconds: float = 1.0
    """Initial delay before first retry."""

    max_delay_seconds: float = 30.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (0-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay_seconds)


# ============================================================
# POLLING CONFIGURATION
# ============================================================

@dataclass
class PollConfig:
    """Deferred job polling window."""

    deadline_seconds: float = 120.0
    """Total polling budget per scan."""

    initial_delay_seconds: float = 5.0
    """Delay before the first poll."""

    backoff_multiplier: float = 1.5
    """Growth factor between polls."""

    max_delay_seconds: float = 30.0
    """Cap on the delay between polls."""


# ============================================================
# RESOLUTION SERVICE
# ============================================================

@dataclass
class ResolutionConfig:
    """External resolution service settings."""

    base_url: str = "https://asi-api.solveacrime.com"
    """Service origin. Redirects may rebase it at runtime."""

    credential_ref: str = "RESOLUTION_ACCESS_KEY"
    """Environment variable holding the default access key."""

    service_id: str = "captis"
    """Service id used for per-service threshold lookup."""

    connect_timeout_seconds: float = 5.0
    """Connection timeout."""

    request_timeout_seconds: float = 15.0
    """Client-side bound on a single call."""

    sync_wait_seconds: int = 10
    """Server-side wait before the service hands back a job handle."""

    min_score: int = 50
    """Matches below this score are not returned."""

    max_matches: int = 20
    """Maximum matches per scan."""

    fields: List[str] = field(default_factory=lambda: [
        "matches",
        "biometrics",
        "subjects-wanted",
        "crimes",
        "viewMatchesUrl",
    ])
    """Response fields requested from the service."""

    max_redirects: int = 5
    """Redirect hops allowed per request."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    poll: PollConfig = field(default_factory=PollConfig)


# ============================================================
# QUOTA CONFIGURATION
# ============================================================

@dataclass
class QuotaConfig:
    """Per-account scan quota."""

    scans_per_period: int = 14400
    """Scans allowed per account per calendar year."""

    warning_ratio: float = 0.8
    """Usage share that triggers a warning."""

    warning_interval_hours: float = 24.0
    """Minimum time between two warnings."""


# ============================================================
# THRESHOLD CONFIGURATION
# ============================================================

@dataclass
class ThresholdSettings:
    """Global tier floors."""

    high: float = 89.0
    medium: float = 75.0
    low: float = 50.0

    global_override_json: Optional[str] = None
    """JSON object {"high", "medium", "low"} replacing the defaults."""


# ============================================================
# CHANNEL CONFIGURATION
# ============================================================

@dataclass
class SmsConfig:
    """Twilio settings."""

    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None
    base_url: str = "https://api.twilio.com"
    timeout_seconds: float = 10.0


@dataclass
class PushConfig:
    """Firebase Cloud Messaging (HTTP v1) settings."""

    project_id: Optional[str] = None
    access_token_env: str = "FCM_ACCESS_TOKEN"
    """Environment variable holding the OAuth bearer token."""

    base_url: str = "https://fcm.googleapis.com"
    timeout_seconds: float = 10.0
    max_in_flight: int = 20
    """Concurrent per-token sends inside one batch."""


@dataclass
class EmailConfig:
    """SendGrid settings."""

    api_key: Optional[str] = None
    from_address: str = "alerts@threatscan.example"
    from_name: str = "Threat Scan Alerts"
    base_url: str = "https://api.sendgrid.com"
    timeout_seconds: float = 10.0


@dataclass
class AlertConfig:
    """Alert dispatch settings."""

    alert_base_url: str = "https://alerts.threatscan.example"
    """Fallback host for view links when the service returns none."""

    channel_concurrency: int = 4
    """Channels running at once for one event."""

    webhook_max_in_flight: int = 10
    """Concurrent webhook calls per fan-out."""

    webhook_timeout_seconds: float = 10.0
    """Per-call webhook timeout."""

    webhook_user_agent: str = "ThreatScan-Webhook/1.0"

    sms: SmsConfig = field(default_factory=SmsConfig)
    push: PushConfig = field(default_factory=PushConfig)


# ============================================================
# DIGEST CONFIGURATION
# ============================================================

@dataclass
class DigestConfig:
    """Weekly digest settings."""

    window_days: int = 7
    """Trailing window of LOW-tier matches."""

    interval_days: float = 7.0
    """Schedule period."""

    max_attempts: int = 3
    """Send attempts per account."""

    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    unsubscribe_base_url: str = "https://threatscan.example/unsubscribe"
    """Unsubscribe landing page."""

    email: EmailConfig = field(default_factory=EmailConfig)


# ============================================================
# INFRASTRUCTURE
# ============================================================

@dataclass
class DatabaseConfig:
    """Durable store settings."""

    url: str = "sqlite+aiosqlite:///./threat_scan.db"
    echo: bool = False


@dataclass
class BusConfig:
    """In-process bus settings."""

    max_deliveries: int = 3
    """Delivery attempts before a message goes to dead letter."""

    queue_size: int = 0
    """Per-topic queue bound; 0 means unbounded."""

    max_concurrent_deliveries: int = 50
    """Handler calls in flight at once across all topics."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ScanEngineConfig:
    """
    Master configuration for the scan pipeline.
    """

    resolution: ResolutionConfig = field(default_factory=ResolutionConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    thresholds: ThresholdSettings = field(default_factory=ThresholdSettings)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    digest: DigestConfig = field(default_factory=DigestConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    bus: BusConfig = field(default_factory=BusConfig)

    @classmethod
    def for_testing(cls) -> "ScanEngineConfig":
        """Get configuration for testing."""
        return cls(
            resolution=ResolutionConfig(
                base_url="https://resolver.test",
                retry=RetryConfig(max_retries=1, initial_delay_seconds=0.0),
                poll=PollConfig(deadline_seconds=1.0, initial_delay_seconds=0.01),
            ),
            database=DatabaseConfig(url="sqlite+aiosqlite://"),
            digest=DigestConfig(initial_backoff_seconds=0.0),
        )

    @classmethod
    def for_production(cls) -> "ScanEngineConfig":
        """Get configuration for production."""
        return cls.from_env()

    @classmethod
    def from_env(cls) -> "ScanEngineConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        return cls(
            resolution=ResolutionConfig(
                base_url=os.getenv("RESOLUTION_BASE_URL", "https://asi-api.solveacrime.com"),
                credential_ref=os.getenv("RESOLUTION_CREDENTIAL_REF", "RESOLUTION_ACCESS_KEY"),
                service_id=os.getenv("RESOLUTION_SERVICE_ID", "captis"),
                request_timeout_seconds=float(os.getenv("RESOLUTION_TIMEOUT_SECONDS", "15")),
                sync_wait_seconds=int(os.getenv("RESOLUTION_SYNC_WAIT_SECONDS", "10")),
                min_score=int(os.getenv("RESOLUTION_MIN_SCORE", "50")),
                max_matches=int(os.getenv("RESOLUTION_MAX_MATCHES", "20")),
            ),
            quota=QuotaConfig(
                scans_per_period=int(os.getenv("QUOTA_SCANS_PER_PERIOD", "14400")),
            ),
            thresholds=ThresholdSettings(
                global_override_json=os.getenv("GLOBAL_THRESHOLDS"),
            ),
            alerts=AlertConfig(
                alert_base_url=os.getenv("ALERT_BASE_URL", "https://alerts.threatscan.example"),
                webhook_max_in_flight=int(os.getenv("WEBHOOK_MAX_IN_FLIGHT", "10")),
                webhook_timeout_seconds=float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10")),
                sms=SmsConfig(
                    account_sid=os.getenv("TWILIO_ACCOUNT_SID"),
                    auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
                    from_number=os.getenv("TWILIO_FROM_NUMBER"),
                ),
                push=PushConfig(
                    project_id=os.getenv("FCM_PROJECT_ID"),
                ),
            ),
            digest=DigestConfig(
                unsubscribe_base_url=os.getenv(
                    "UNSUBSCRIBE_BASE_URL", "https://threatscan.example/unsubscribe"
                ),
                email=EmailConfig(
                    api_key=os.getenv("SENDGRID_API_KEY"),
                    from_address=os.getenv("EMAIL_FROM_ADDRESS", "alerts@threatscan.example"),
                ),
            ),
            database=DatabaseConfig(
                url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./threat_scan.db"),
                echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
            ),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        poll = self.resolution.poll
        if poll.initial_delay_seconds <= 0:
            errors.append("poll.initial_delay_seconds must be positive")
        if poll.backoff_multiplier < 1:
            errors.append("poll.backoff_multiplier must be at least 1")
        if self.resolution.max_redirects < 0:
            errors.append("resolution.max_redirects must not be negative")
        if self.quota.scans_per_period < 1:
            errors.append("quota.scans_per_period must be at least 1")
        if self.alerts.webhook_max_in_flight < 1:
            errors.append("alerts.webhook_max_in_flight must be at least 1")
        if self.digest.max_attempts < 1:
            errors.append("digest.max_attempts must be at least 1")
        if self.bus.max_concurrent_deliveries < 1:
            errors.append("bus.max_concurrent_deliveries must be at least 1")

        return errors
