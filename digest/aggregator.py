"""
Digest - Weekly Aggregator.

============================================================
PURPOSE
============================================================
Weekly summary email of LOW-tier matches.

SEQUENCE:
1. Load completed LOW-tier scans from the trailing window
2. Group by account and dedup by subject fingerprint
   (finished for every account before any email goes out)
3. Per account, in turn:
   - skip: no address, opted out, malformed address
   - provision an unsubscribe token on first digest
   - render and send with bounded retry

RETRY POLICY:
- Rate limit / 5xx : up to max_attempts, exponential backoff
- Invalid address  : no retry, permanent email opt-out
- Other 4xx        : no retry

One account's failure never aborts the run.

============================================================
"""

import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from scan_engine.clock import ClockProtocol, SystemClock
from scan_engine.config import DigestConfig
from scan_engine.exceptions import EmailDeliveryError, EmailInvalidAddress
from scan_engine.types import AccountProfile, MatchTier

from notifications.email import SendGridEmailClient

from .fingerprint import DigestCandidate, build_candidates
from .renderer import digest_subject, render_digest, unsubscribe_url


logger = logging.getLogger(__name__)


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

HARD_BOUNCE_REASON = "hard_bounce"


class DigestOutcome(Enum):
    """Per-account result of one run."""
    SENT = "SENT"
    SKIPPED_NO_ADDRESS = "SKIPPED_NO_ADDRESS"
    SKIPPED_OPTED_OUT = "SKIPPED_OPTED_OUT"
    SKIPPED_INVALID_ADDRESS = "SKIPPED_INVALID_ADDRESS"
    BOUNCED = "BOUNCED"
    FAILED = "FAILED"


@dataclass
class AccountDigestResult:
    """Delivery result for one account."""

    account_id: str
    outcome: DigestOutcome
    match_count: int = 0
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class DigestRunReport:
    """Summary of one aggregation run."""

    started_at: datetime
    window_start: datetime
    scans_considered: int = 0
    results: List[AccountDigestResult] = field(default_factory=list)

    def result_for(self, account_id: str) -> Optional[AccountDigestResult]:
        for result in self.results:
            if result.account_id == account_id:
                return result
        return None

    def count(self, outcome: DigestOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> Dict[str, int]:
        return {outcome.value: self.count(outcome) for outcome in DigestOutcome}


class WeeklyDigestAggregator:
    """
    Builds and sends the weekly digest.
    """

    def __init__(
        self,
        store,
        email: SendGridEmailClient,
        config: Optional[DigestConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._email = email
        self._config = config or DigestConfig()
        self._clock = clock or SystemClock()

    async def run(self, now: Optional[datetime] = None) -> DigestRunReport:
        """Run one aggregation pass."""
        now = now or self._clock.now()
        window_start = now - timedelta(days=self._config.window_days)

        scans = await self._store.list_scans_by_tier(MatchTier.LOW, window_start)
        grouped = build_candidates(scans)

        report = DigestRunReport(
            started_at=now,
            window_start=window_start,
            scans_considered=len(scans),
        )
        logger.info(
            f"Digest run: {len(scans)} low-tier scans across {len(grouped)} accounts"
        )

        for account_id, candidates in grouped.items():
            try:
                result = await self._deliver(account_id, list(candidates.values()))
            except Exception as e:
                logger.error(f"Digest for account {account_id} failed: {e}", exc_info=True)
                result = AccountDigestResult(
                    account_id=account_id,
                    outcome=DigestOutcome.FAILED,
                    match_count=len(candidates),
                    error=str(e),
                )
            report.results.append(result)

        logger.info(f"Digest run complete: {report.to_dict()}")
        return report

    # --------------------------------------------------------
    # PER ACCOUNT
    # --------------------------------------------------------

    async def _deliver(
        self,
        account_id: str,
        candidates: List[DigestCandidate],
    ) -> AccountDigestResult:
        profile = await self._store.get_account_profile(account_id)

        skip = self._skip_reason(profile)
        if skip is not None:
            logger.info(f"Digest for account {account_id} skipped: {skip.value}")
            return AccountDigestResult(account_id, skip, match_count=len(candidates))

        token = profile.unsubscribe_token
        if not token:
            token = await self._store.set_unsubscribe_token(
                account_id, secrets.token_urlsafe(32)
            )

        link = unsubscribe_url(self._config.unsubscribe_base_url, token, profile.email)
        html = render_digest(candidates, profile.name, link)
        subject = digest_subject(len(candidates))

        return await self._send_with_retry(profile, subject, html, link, len(candidates))

    @staticmethod
    def _skip_reason(profile: Optional[AccountProfile]) -> Optional[DigestOutcome]:
        if profile is None or not profile.email:
            return DigestOutcome.SKIPPED_NO_ADDRESS
        if profile.email_opt_out:
            return DigestOutcome.SKIPPED_OPTED_OUT
        if not EMAIL_PATTERN.match(profile.email):
            return DigestOutcome.SKIPPED_INVALID_ADDRESS
        return None

    async def _send_with_retry(
        self,
        profile: AccountProfile,
        subject: str,
        html: str,
        unsubscribe_link: str,
        match_count: int,
    ) -> AccountDigestResult:
        account_id = profile.account_id
        headers = {"List-Unsubscribe": f"<{unsubscribe_link}>"}
        max_attempts = self._config.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                await self._email.send(profile.email, subject, html, headers=headers)
            except EmailInvalidAddress as e:
                logger.warning(f"Digest for account {account_id} bounced: {e}")
                await self._store.opt_out_email(account_id, HARD_BOUNCE_REASON)
                return AccountDigestResult(
                    account_id, DigestOutcome.BOUNCED,
                    match_count=match_count, attempts=attempt, error=str(e),
                )
            except EmailDeliveryError as e:
                if not e.retryable or attempt >= max_attempts:
                    logger.error(
                        f"Digest for account {account_id} failed after {attempt} attempt(s): {e}"
                    )
                    return AccountDigestResult(
                        account_id, DigestOutcome.FAILED,
                        match_count=match_count, attempts=attempt, error=str(e),
                    )
                delay = self._backoff(attempt)
                logger.warning(
                    f"Digest for account {account_id} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await self._clock.sleep(delay)
                continue

            logger.info(f"Digest sent to account {account_id} ({match_count} matches)")
            return AccountDigestResult(
                account_id, DigestOutcome.SENT,
                match_count=match_count, attempts=attempt,
            )

        # max_attempts < 1
        return AccountDigestResult(account_id, DigestOutcome.FAILED, match_count=match_count)

    def _backoff(self, attempt: int) -> float:
        return self._config.initial_backoff_seconds * (
            self._config.backoff_multiplier ** (attempt - 1)
        )
