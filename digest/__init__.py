"""
Weekly Digest.

Deduplicated weekly summary of low-tier matches, one email per account.
"""

from .aggregator import (
    AccountDigestResult,
    DigestOutcome,
    DigestRunReport,
    WeeklyDigestAggregator,
)
from .fingerprint import DigestCandidate, build_candidates, subject_fingerprint
from .renderer import digest_subject, render_digest, unsubscribe_url
from .scheduler import DigestScheduler


__all__ = [
    "WeeklyDigestAggregator",
    "DigestOutcome",
    "DigestRunReport",
    "AccountDigestResult",
    "DigestScheduler",
    "DigestCandidate",
    "build_candidates",
    "subject_fingerprint",
    "render_digest",
    "digest_subject",
    "unsubscribe_url",
]
