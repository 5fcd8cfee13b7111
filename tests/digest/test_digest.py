"""
Tests for the weekly digest: fingerprints, rendering, delivery and scheduling.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from digest.aggregator import DigestOutcome, WeeklyDigestAggregator
from digest.fingerprint import build_candidates, subject_fingerprint
from digest.renderer import digest_subject, render_digest, unsubscribe_url
from digest.scheduler import DigestScheduler
from notifications.email import SendGridEmailClient
from scan_engine.config import DigestConfig, EmailConfig
from scan_engine.types import AccountProfile, MatchTier, Scan, ScanState

from fakes import FakeResponse, FakeSession


EMAIL_CONFIG = EmailConfig(api_key="SG.key", base_url="https://sendgrid.test")

BIOMETRICS = [{"age": 30, "gender": "male"}, {"height": 180}]

INVALID_ADDRESS_BODY = '{"errors": [{"message": "Invalid", "field": "personalizations.0.to.0.email"}]}'


def low_scan(scan_id, score, subject_id="subj-1", account_id="acct-1", biometrics=None, **kwargs):
    return Scan(
        scan_id=scan_id,
        account_id=account_id,
        state=ScanState.COMPLETED,
        top_score=score,
        match_tier=MatchTier.LOW,
        subject_id=subject_id,
        subject_name=kwargs.pop("subject_name", "John Doe"),
        view_url=f"https://view/{scan_id}",
        biometrics=biometrics if biometrics is not None else list(BIOMETRICS),
        **kwargs,
    )


def make_aggregator(store, clock, responses, **config):
    session = FakeSession(responses)
    email = SendGridEmailClient(EMAIL_CONFIG, session=session)
    aggregator = WeeklyDigestAggregator(
        store, email, DigestConfig(unsubscribe_base_url="https://scan.test/unsubscribe", **config), clock
    )
    return aggregator, session


async def seed_profile(store, email="user@example.com", **kwargs):
    await store.save_account_profile(
        AccountProfile(account_id="acct-1", name="Alex", email=email, **kwargs)
    )


# ============================================================
# FINGERPRINTS
# ============================================================

class TestFingerprint:
    """Order-independent subject keys."""

    def test_key_and_record_order_ignored(self):
        a = subject_fingerprint("s1", [{"age": 30, "gender": "male"}, {"height": 180}])
        b = subject_fingerprint("s1", [{"height": 180}, {"gender": "male", "age": 30}])
        assert a == b
        assert a.startswith("s1:")

    def test_subject_and_biometrics_both_matter(self):
        assert subject_fingerprint("s1", BIOMETRICS) != subject_fingerprint("s2", BIOMETRICS)
        assert subject_fingerprint("s1", BIOMETRICS) != subject_fingerprint("s1", [{"age": 31}])

    def test_missing_subject(self):
        assert subject_fingerprint(None, None).startswith("unknown:")

    def test_highest_score_kept(self):
        grouped = build_candidates([
            low_scan("a", 65),
            low_scan("b", 70, biometrics=list(reversed(BIOMETRICS))),
            low_scan("c", 55, subject_id="subj-2"),
            low_scan("d", 60, account_id="acct-2"),
        ])

        mine = list(grouped["acct-1"].values())
        assert sorted(c.score for c in mine) == [55, 70]
        assert next(c for c in mine if c.score == 70).scan_id == "b"
        assert len(grouped["acct-2"]) == 1


# ============================================================
# RENDERING
# ============================================================

class TestRenderer:
    """Digest HTML."""

    def test_subject(self):
        assert digest_subject(3) == "Weekly Threat Summary - 3 Potential Matches"

    def test_unsubscribe_url(self):
        url = unsubscribe_url("https://scan.test/unsubscribe", "tok", "a+b@example.com")
        assert url == "https://scan.test/unsubscribe?token=tok&email=a%2Bb%40example.com"

    def test_render_orders_and_escapes(self):
        candidates = list(build_candidates([
            low_scan("a", 55, subject_id="s-a", subject_name="<Low>"),
            low_scan("b", 72.5, subject_id="s-b", subject_name="High One"),
        ])["acct-1"].values())

        html = render_digest(candidates, "Alex", "https://scan.test/unsubscribe?token=t")

        assert "Hello Alex," in html
        assert "&lt;Low&gt;" in html
        assert "<Low>" not in html
        assert html.index("High One") < html.index("&lt;Low&gt;")
        assert "72.5%" in html
        assert "Repeat sightings of the same subject are listed once" in html
        assert "Unsubscribe" in html


# ============================================================
# AGGREGATOR
# ============================================================

class TestWeeklyDigestAggregator:
    """Tests for WeeklyDigestAggregator.run."""

    @pytest.mark.asyncio
    async def test_dedup_and_send(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("a", 65))
        await store.create_scan(low_scan("b", 70))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(202)])

        report = await aggregator.run()

        result = report.result_for("acct-1")
        assert result.outcome == DigestOutcome.SENT
        assert result.match_count == 1
        assert report.scans_considered == 2

        body = session.calls[0]["json"]
        assert body["subject"] == "Weekly Threat Summary - 1 Potential Matches"
        html = body["content"][0]["value"]
        assert "70%" in html
        assert "65%" not in html
        assert body["headers"]["List-Unsubscribe"].startswith("<https://scan.test/unsubscribe?token=")

    @pytest.mark.asyncio
    async def test_window_excludes_old_and_other_tiers(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("old", 60, created_at=clock.now() - timedelta(days=8)))
        await store.create_scan(Scan(
            scan_id="high", account_id="acct-1", state=ScanState.COMPLETED,
            top_score=95, match_tier=MatchTier.HIGH,
        ))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(202)])

        report = await aggregator.run()

        assert report.scans_considered == 0
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_token_provisioned_once(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("a", 60))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(202)])

        await aggregator.run()
        profile = await store.get_account_profile("acct-1")
        assert profile.unsubscribe_token

        await aggregator.run()
        again = await store.get_account_profile("acct-1")
        assert again.unsubscribe_token == profile.unsubscribe_token
        assert profile.unsubscribe_token in session.calls[1]["json"]["headers"]["List-Unsubscribe"]

    @pytest.mark.asyncio
    async def test_existing_token_reused(self, store, clock):
        await seed_profile(store, unsubscribe_token="existing-token")
        await store.create_scan(low_scan("a", 60))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(202)])

        await aggregator.run()
        assert "token=existing-token" in session.calls[0]["json"]["headers"]["List-Unsubscribe"]

    @pytest.mark.asyncio
    async def test_server_errors_retried_with_backoff(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("a", 60))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(500, text="down")])

        report = await aggregator.run()

        result = report.result_for("acct-1")
        assert result.outcome == DigestOutcome.FAILED
        assert result.attempts == 3
        assert len(session.calls) == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("a", 60))
        aggregator, _ = make_aggregator(
            store, clock, [FakeResponse(429, text="slow"), FakeResponse(202)]
        )

        result = (await aggregator.run()).result_for("acct-1")

        assert result.outcome == DigestOutcome.SENT
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_bounce_opts_out_without_retry(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("a", 60))
        aggregator, session = make_aggregator(
            store, clock, [FakeResponse(400, text=INVALID_ADDRESS_BODY)]
        )

        result = (await aggregator.run()).result_for("acct-1")

        assert result.outcome == DigestOutcome.BOUNCED
        assert len(session.calls) == 1
        profile = await store.get_account_profile("acct-1")
        assert profile.email_opt_out
        assert profile.email_opt_out_reason == "hard_bounce"

        # Opted out now, so the next run skips the account.
        second = (await aggregator.run()).result_for("acct-1")
        assert second.outcome == DigestOutcome.SKIPPED_OPTED_OUT
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_other_client_error_not_retried(self, store, clock):
        await seed_profile(store)
        await store.create_scan(low_scan("a", 60))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(403, text="forbidden")])

        result = (await aggregator.run()).result_for("acct-1")

        assert result.outcome == DigestOutcome.FAILED
        assert len(session.calls) == 1
        profile = await store.get_account_profile("acct-1")
        assert not profile.email_opt_out

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email,outcome", [
        (None, DigestOutcome.SKIPPED_NO_ADDRESS),
        ("not-an-address", DigestOutcome.SKIPPED_INVALID_ADDRESS),
    ])
    async def test_skip_reasons(self, store, clock, email, outcome):
        await seed_profile(store, email=email)
        await store.create_scan(low_scan("a", 60))
        aggregator, session = make_aggregator(store, clock, [FakeResponse(202)])

        result = (await aggregator.run()).result_for("acct-1")

        assert result.outcome == outcome
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_missing_profile_skipped(self, store, clock):
        await store.create_scan(low_scan("a", 60))
        aggregator, _ = make_aggregator(store, clock, [FakeResponse(202)])

        result = (await aggregator.run()).result_for("acct-1")
        assert result.outcome == DigestOutcome.SKIPPED_NO_ADDRESS

    @pytest.mark.asyncio
    async def test_one_account_failure_does_not_abort_run(self, store, clock):
        await seed_profile(store)
        await store.save_account_profile(
            AccountProfile(account_id="acct-2", email="other@example.com")
        )
        await store.create_scan(low_scan("a", 60))
        await store.create_scan(low_scan("b", 61, account_id="acct-2"))

        email = MagicMock()
        email.send = AsyncMock(side_effect=[RuntimeError("template crash"), "msg-2"])
        aggregator = WeeklyDigestAggregator(store, email, DigestConfig(), clock)

        report = await aggregator.run()

        outcomes = sorted(r.outcome.value for r in report.results)
        assert outcomes == ["FAILED", "SENT"]


# ============================================================
# SCHEDULER
# ============================================================

class TestDigestScheduler:
    """Fixed-interval loop."""

    @pytest.mark.asyncio
    async def test_runs_on_interval(self, clock):
        aggregator = MagicMock()
        aggregator.run = AsyncMock(return_value="report")
        scheduler = DigestScheduler(aggregator, DigestConfig(), clock)

        await scheduler.run_forever(max_runs=3)

        assert aggregator.run.await_count == 3
        assert scheduler.reports == ["report"] * 3
        assert clock.sleeps == [7 * 86400, 7 * 86400]

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_loop(self, clock):
        aggregator = MagicMock()
        aggregator.run = AsyncMock(side_effect=[RuntimeError("db down"), "report"])
        scheduler = DigestScheduler(aggregator, DigestConfig(), clock)

        await scheduler.run_forever(max_runs=2)

        assert scheduler.reports == ["report"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        aggregator = MagicMock()
        aggregator.run = AsyncMock(return_value="report")
        scheduler = DigestScheduler(aggregator, DigestConfig(), clock)

        scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
        assert not scheduler.is_running


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
