"""
Scan Engine - Error Taxonomy and HTTP Mapping.

============================================================
PURPOSE
============================================================
Unified classification of external-service failures:
- Error category per failure class
- Retry eligibility per category
- HTTP status to exception mapping

============================================================
ERROR CATEGORIES
============================================================
1. NETWORK              - Connection issues, timeouts
2. RATE_LIMIT           - 429, retried with backoff
3. AUTHENTICATION       - 401/403, never retried
4. CLIENT               - other 4xx, never retried
5. SERVER               - 5xx, retried up to a bound
6. SERVICE_UNAVAILABLE  - 503 or exhausted 5xx retries
7. REDIRECT             - redirect loop
8. UNKNOWN              - unclassified

============================================================
"""

import logging
from enum import Enum
from typing import Optional, Tuple


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    CLIENT = "CLIENT"
    SERVER = "SERVER"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    REDIRECT = "REDIRECT"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


# ============================================================
# HTTP STATUS MAPPING
# ============================================================

def classify_http_status(http_status: int) -> Tuple[ErrorCategory, RetryEligibility]:
    """
    Map an HTTP error status to a category and retry eligibility.

    Args:
        http_status: Response status (>= 400)

    Returns:
        Tuple of (category, retry eligibility)
    """
    if http_status == 429:
        return ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF
    if http_status in (401, 403):
        return ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY
    if http_status == 503:
        return ErrorCategory.SERVICE_UNAVAILABLE, RetryEligibility.RETRY
    if http_status >= 500:
        return ErrorCategory.SERVER, RetryEligibility.RETRY
    if http_status >= 400:
        return ErrorCategory.CLIENT, RetryEligibility.NO_RETRY
    return ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


def error_for_status(
    http_status: int,
    body: str = "",
    retry_after: Optional[str] = None,
):
    """
    Build the exception matching an HTTP error response.

    Upstream bodies are attached for logging only; client-facing messages
    stay generic.
    """
    # Imported here; exceptions.py depends on this module for the enums.
    from .exceptions import (
        AuthenticationFailed,
        ExternalServiceError,
        RateLimited,
        ServerError,
        ServiceUnavailable,
        UpstreamInvalid,
    )

    category, _ = classify_http_status(http_status)

    if category == ErrorCategory.RATE_LIMIT:
        return RateLimited(
            "Resolution service rate limit exceeded",
            http_status=http_status,
            retry_after_seconds=parse_retry_after(retry_after),
        )
    if category == ErrorCategory.AUTHENTICATION:
        return AuthenticationFailed(
            "Resolution service rejected the credential",
            http_status=http_status,
        )
    if category == ErrorCategory.SERVICE_UNAVAILABLE:
        return ServiceUnavailable(
            "Resolution service temporarily unavailable",
            http_status=http_status,
            retry_after_seconds=parse_retry_after(retry_after),
        )
    if category == ErrorCategory.SERVER:
        return ServerError(
            f"Resolution service error (HTTP {http_status})",
            http_status=http_status,
        )
    if category == ErrorCategory.CLIENT:
        logger.debug(f"Upstream rejected request ({http_status}): {body[:500]}")
        return UpstreamInvalid(http_status=http_status, upstream_detail=body[:500])
    return ExternalServiceError(
        f"Unexpected response status {http_status}",
        http_status=http_status,
    )
