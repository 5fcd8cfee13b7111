"""
Scan Engine - Exceptions.

============================================================
PURPOSE
============================================================
Exception hierarchy for the scan pipeline.

PROPAGATION:
- Admission errors (validation, quota, consent) are raised to the caller
- External-service and polling errors are contained by the orchestrator
  and the poll worker and only surface as persisted scan state
- Channel and digest errors are caught per channel / per account

============================================================
"""

from typing import Optional

from .errors import ErrorCategory, RetryEligibility


# ============================================================
# BASE
# ============================================================

class ScanEngineError(Exception):
    """Base exception for the scan engine."""
    pass


class ConfigurationError(ScanEngineError):
    """Missing or malformed runtime configuration."""
    pass


# ============================================================
# ADMISSION
# ============================================================

class ValidationError(ScanEngineError):
    """Request failed shape validation. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class QuotaExceeded(ScanEngineError):
    """Account has no scans left in the current period."""

    def __init__(self, account_id: str, used: int, limit: int):
        self.account_id = account_id
        self.used = used
        self.limit = limit
        super().__init__(
            f"Quota exceeded for account {account_id}: {used}/{limit}"
        )


class ConsentDenied(ScanEngineError):
    """Account has explicitly withdrawn consent."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Consent denied for account {account_id}")


# ============================================================
# EXTERNAL SERVICE
# ============================================================

class ExternalServiceError(ScanEngineError):
    """Error talking to the external resolution service."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    retry_eligible: RetryEligibility = RetryEligibility.NO_RETRY

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        self.http_status = http_status
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)

    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)


class NetworkError(ExternalServiceError):
    """Connection failure or client-side timeout."""

    category = ErrorCategory.NETWORK
    retry_eligible = RetryEligibility.RETRY


class RateLimited(ExternalServiceError):
    """Service answered 429."""

    category = ErrorCategory.RATE_LIMIT
    retry_eligible = RetryEligibility.BACKOFF


class ServerError(ExternalServiceError):
    """Service answered 5xx. Retried up to a bound."""

    category = ErrorCategory.SERVER
    retry_eligible = RetryEligibility.RETRY


class ServiceUnavailable(ServerError):
    """Service unavailable (503, or 5xx after retries were exhausted)."""

    category = ErrorCategory.SERVICE_UNAVAILABLE


class AuthenticationFailed(ExternalServiceError):
    """Credential rejected by the service."""

    category = ErrorCategory.AUTHENTICATION


class UpstreamInvalid(ExternalServiceError):
    """
    Service rejected the request (4xx).

    The upstream body is kept on the exception for logging only and is
    never returned to callers.
    """

    category = ErrorCategory.CLIENT

    def __init__(
        self,
        message: str = "Upstream service rejected the request",
        http_status: Optional[int] = None,
        upstream_detail: Optional[str] = None,
    ):
        self.upstream_detail = upstream_detail
        super().__init__(message, http_status=http_status)


class RedirectLimitExceeded(ExternalServiceError):
    """Too many redirects while following the service endpoint."""

    category = ErrorCategory.REDIRECT


class PollTimeout(ScanEngineError):
    """Deferred job did not complete before the polling deadline."""

    def __init__(self, job_id: str, elapsed_seconds: float):
        self.job_id = job_id
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"Job {job_id} still pending after {elapsed_seconds:.1f}s"
        )


# ============================================================
# SCAN LIFECYCLE
# ============================================================

class InvalidTransition(ValueError, ScanEngineError):
    """Scan state transition not allowed."""
    pass


class ScanNotFound(ScanEngineError):
    """Scan id is unknown to the store."""
    pass


# ============================================================
# THRESHOLDS / PROFILES
# ============================================================

class InvalidThreshold(ScanEngineError):
    """Threshold tuple is not strictly ordered within 0..100."""
    pass


class ProfileNotFound(ScanEngineError):
    """Account profile does not exist."""
    pass


# ============================================================
# DELIVERY
# ============================================================

class ChannelDeliveryError(ScanEngineError):
    """Notification channel failed to deliver."""

    def __init__(self, channel: str, message: str, http_status: Optional[int] = None):
        self.channel = channel
        self.http_status = http_status
        super().__init__(f"[{channel}] {message}")


class EmailDeliveryError(ChannelDeliveryError):
    """Transactional email provider refused the message."""

    retryable: bool = False

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__("email", message, http_status=http_status)


class EmailRateLimited(EmailDeliveryError):
    """Provider throttled the request."""

    retryable = True


class EmailServerError(EmailDeliveryError):
    """Provider failed with 5xx."""

    retryable = True


class EmailInvalidAddress(EmailDeliveryError):
    """Hard bounce or invalid recipient. Permanent."""
    pass


class EmailRejected(EmailDeliveryError):
    """Any other client error. Not retried."""
    pass
