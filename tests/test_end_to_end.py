"""
End-to-end pipeline tests.

============================================================
PURPOSE
============================================================
Submit scans through the orchestrator and follow them across the
bus into the poll worker, the alert dispatcher and the weekly
digest. Every outbound HTTP call goes to one fake session that
routes by host.

============================================================
"""

import itertools

import pytest

from digest.aggregator import DigestOutcome, WeeklyDigestAggregator
from notifications import (
    AlertDispatcher,
    FcmPushClient,
    SendGridEmailClient,
    TwilioSmsClient,
    WebhookNotifier,
)
from scan_engine import (
    ConsentGate,
    CredentialProvider,
    InMemoryMessageBus,
    PollWorker,
    QuotaLedger,
    ResolutionClient,
    ResultRecorder,
    ScanOrchestrator,
    ThresholdResolver,
)
from scan_engine.config import (
    DigestConfig,
    EmailConfig,
    PollConfig,
    PushConfig,
    ScanEngineConfig,
    SmsConfig,
)
from scan_engine.types import (
    AccountProfile,
    DeviceToken,
    ImageRef,
    Location,
    MatchTier,
    ResponseStatus,
    ScanRequest,
    ScanState,
    SiteMetadata,
    WebhookSubscription,
)

from fakes import FakeResponse, FakeSession


def resolve_payload(job_id, score, subject_id="subj-1", status="COMPLETED"):
    return {
        "id": job_id,
        "status": status,
        "matches": [{"id": f"m-{job_id}", "score": score,
                     "subject": {"id": subject_id, "name": "John Doe"}}],
        "biometrics": [{"age": 30}],
        "viewMatchesUrl": f"https://view/{job_id}",
    }


class FakeUpstreams:
    """Routes outbound calls by host and records them."""

    def __init__(self):
        self.submit_queue = []
        self.status_payloads = {}
        self.session = FakeSession(handler=self.route)

    def calls_to(self, host):
        return [c for c in self.session.calls if f"://{host}" in c["url"]]

    def route(self, method, url, kwargs):
        if "resolver.test" in url:
            if url.endswith("/resolve"):
                return FakeResponse(200, self.submit_queue.pop(0))
            job_id = url.rsplit("/", 1)[-1]
            return FakeResponse(200, self.status_payloads[job_id])
        if "twilio.test" in url:
            return FakeResponse(201, {"sid": "SM1"})
        if "fcm.test" in url:
            return FakeResponse(200, {"name": "projects/p/messages/1"})
        if "hooks.test" in url:
            return FakeResponse(200)
        if "sendgrid.test" in url:
            return FakeResponse(202, headers={"X-Message-Id": "msg-1"})
        raise AssertionError(f"Unexpected call: {method} {url}")


async def _tokens():
    return "oauth-token"


class Service:
    """Every component wired together on the in-memory bus."""

    def __init__(self, store, clock):
        self.upstreams = FakeUpstreams()
        session = self.upstreams.session
        config = ScanEngineConfig.for_testing()
        self.store = store
        self.bus = InMemoryMessageBus(config.bus)
        counter = itertools.count(1)

        async def keys(ref):
            return "access-key"

        client = ResolutionClient(
            config.resolution,
            CredentialProvider(config.resolution.credential_ref, loader=keys, clock=clock),
            clock,
            session=session,
        )
        recorder = ResultRecorder(store, ThresholdResolver(store), self.bus, config.alerts, clock)
        self.orchestrator = ScanOrchestrator(
            store=store,
            quota=QuotaLedger(store, config.quota, clock),
            consent=ConsentGate(store),
            client=client,
            recorder=recorder,
            bus=self.bus,
            config=config,
            clock=clock,
            id_factory=lambda: f"scan-{next(counter)}",
        )
        PollWorker(store, client, recorder, PollConfig(), clock).subscribe(self.bus)

        AlertDispatcher(
            store,
            TwilioSmsClient(SmsConfig(
                account_sid="AC1", auth_token="t", from_number="+15550000000",
                base_url="https://twilio.test",
            ), session=session),
            FcmPushClient(
                PushConfig(project_id="p", base_url="https://fcm.test"),
                token_loader=_tokens, session=session,
            ),
            WebhookNotifier(session=session),
            config.alerts,
        ).subscribe(self.bus)

        self.aggregator = WeeklyDigestAggregator(
            store,
            SendGridEmailClient(
                EmailConfig(api_key="SG.key", base_url="https://sendgrid.test"), session=session
            ),
            DigestConfig(unsubscribe_base_url="https://scan.test/unsubscribe"),
            clock,
        )

    async def submit(self, location=None):
        response = await self.orchestrator.submit_scan(ScanRequest(
            account_id="acct-1",
            image=ImageRef.from_bytes(b"\xff\xd8frame"),
            site=SiteMetadata(camera_id="cam-1", location=location),
        ))
        await self.bus.drain()
        return response


async def seed_account(store):
    await store.save_account_profile(AccountProfile(
        account_id="acct-1", name="Alex", email="alex@example.com", phone_number="+15551234567",
    ))
    await store.register_device_token(DeviceToken(account_id="acct-1", token="device-1"))
    await store.save_webhook_subscription(
        WebhookSubscription(webhook_id="wh-1", account_id="acct-1", url="https://hooks.test/alerts")
    )


class TestPipeline:
    """Scans flowing through every stage."""

    @pytest.mark.asyncio
    async def test_immediate_high_alerts_every_channel(self, store, clock):
        await seed_account(store)
        service = Service(store, clock)
        service.upstreams.submit_queue.append(resolve_payload("job-1", 95))

        response = await service.submit(location=Location(40.7, -74.0))

        assert response.status == ResponseStatus.COMPLETED
        assert response.tier == MatchTier.HIGH

        up = service.upstreams
        sms = up.calls_to("twilio.test")
        assert len(sms) == 1
        assert sms[0]["data"]["Body"] == "High threat detected (95% match). View details: https://view/job-1"
        assert len(up.calls_to("fcm.test")) == 1
        hooks = up.calls_to("hooks.test")
        assert len(hooks) == 1
        assert hooks[0]["json"]["threatLocation"] == {"lat": 40.7, "lon": -74.0}

        journal = await store.get_threat_journal("subj-1")
        assert [e.scan_id for e in journal.entries] == ["scan-1"]

    @pytest.mark.asyncio
    async def test_deferred_medium_pushes_only(self, store, clock):
        await seed_account(store)
        service = Service(store, clock)
        up = service.upstreams
        up.submit_queue.append({"id": "job-2", "status": "PENDING", "timedOutFlag": True})
        up.status_payloads["job-2"] = {"scan": {
            "id": "job-2",
            "status": "COMPLETED",
            "recordList": [{"match": {"id": "m", "score": 80}, "subject": {"id": "subj-2"}}],
        }}

        response = await service.submit(location=Location(1.0, 2.0))

        assert response.status == ResponseStatus.PENDING
        scan = await store.get_scan(response.scan_id)
        assert scan.state == ScanState.COMPLETED
        assert scan.match_tier == MatchTier.MEDIUM

        assert len(up.calls_to("fcm.test")) == 1
        assert up.calls_to("twilio.test") == []
        assert up.calls_to("hooks.test") == []
        assert (await store.get_threat_journal("subj-2")).entries == []

    @pytest.mark.asyncio
    async def test_low_matches_reach_digest_once(self, store, clock):
        await seed_account(store)
        service = Service(store, clock)
        up = service.upstreams
        for i, score in enumerate([60, 65, 58]):
            up.submit_queue.append(resolve_payload(f"job-{i}", score))

        for _ in range(3):
            response = await service.submit()
            assert response.tier == MatchTier.LOW

        # LOW tier raises no real-time alerts.
        assert up.calls_to("fcm.test") == []
        assert up.calls_to("twilio.test") == []

        report = await service.aggregator.run()

        assert report.result_for("acct-1").outcome == DigestOutcome.SENT
        emails = up.calls_to("sendgrid.test")
        assert len(emails) == 1
        html = emails[0]["json"]["content"][0]["value"]
        assert "65%" in html
        assert "60%" not in html
        assert "58%" not in html
        assert emails[0]["json"]["subject"] == "Weekly Threat Summary - 1 Potential Matches"

    @pytest.mark.asyncio
    async def test_quota_counts_every_accepted_scan(self, store, clock):
        service = Service(store, clock)
        up = service.upstreams
        up.submit_queue.extend([resolve_payload("a", 40), resolve_payload("b", 40)])

        await service.submit()
        await service.submit()

        assert (await store.get_quota("acct-1", "2026")).used == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
