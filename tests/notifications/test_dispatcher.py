"""
Tests for alert routing and channel isolation.
"""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from notifications.dispatcher import ROUTES, AlertDispatcher
from notifications.push import BatchResult, TokenResult
from notifications.webhook import WebhookNotifier
from scan_engine.bus import InMemoryMessageBus, Topic
from scan_engine.exceptions import ChannelDeliveryError
from scan_engine.types import (
    AccountProfile,
    AlertEvent,
    ChannelType,
    DeviceToken,
    Location,
    MatchTier,
    WebhookSubscription,
)

from fakes import FakeResponse, FakeSession


def alert(tier=MatchTier.HIGH, score=95.0, location=None):
    return AlertEvent(
        scan_id="scan-1",
        tier=tier,
        score=score,
        account_id="acct-1",
        view_url="https://view/scan-1",
        location=location,
        subject_id="subj-1",
        subject_name="John Doe",
    )


async def seed_account(store, phone="+15551234567"):
    await store.save_account_profile(AccountProfile(account_id="acct-1", phone_number=phone))
    await store.register_device_token(DeviceToken(account_id="acct-1", token="tok-ok"))
    await store.register_device_token(DeviceToken(account_id="acct-1", token="tok-gone"))
    await store.save_webhook_subscription(
        WebhookSubscription(webhook_id="wh-1", account_id="acct-1", url="https://hooks.test/a")
    )


def make_dispatcher(store, sms=None, push=None, webhook_session=None):
    if sms is None:
        sms = MagicMock()
        sms.send_sms = AsyncMock(return_value="SM1")
    if push is None:
        push = MagicMock()
        push.send_multicast = AsyncMock(return_value=BatchResult(results=[
            TokenResult(token="tok-ok", success=True, message_id="m1"),
            TokenResult(token="tok-gone", success=False, error_code="UNREGISTERED", stale=True),
        ]))
    webhooks = WebhookNotifier(session=webhook_session or FakeSession([FakeResponse(200)]))
    return AlertDispatcher(store, sms, push, webhooks), sms, push


class TestRoutes:
    """Tier to channel mapping."""

    def test_routes(self):
        assert set(ROUTES[MatchTier.HIGH]) == {
            ChannelType.SMS, ChannelType.PUSH, ChannelType.WEBHOOK, ChannelType.THREAT_LOCATION,
        }
        assert ROUTES[MatchTier.MEDIUM] == (ChannelType.PUSH,)
        assert ROUTES[MatchTier.LOW] == ()


class TestAlertDispatcher:
    """Tests for AlertDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_high_runs_all_channels(self, store):
        await seed_account(store)
        webhook_session = FakeSession([FakeResponse(200)])
        dispatcher, sms, push = make_dispatcher(store, webhook_session=webhook_session)

        report = await dispatcher.dispatch(alert(location=Location(40.7, -74.0)))

        assert report.failed_channels == []
        sms.send_sms.assert_awaited_once()
        to, body = sms.send_sms.await_args.args
        assert to == "+15551234567"
        assert "95% match" in body
        assert report.outcome(ChannelType.PUSH).detail == "1/2 devices"
        assert report.outcome(ChannelType.WEBHOOK).detail == "1 delivered, 0 failed"
        assert report.outcome(ChannelType.THREAT_LOCATION).detail == "logged"
        assert webhook_session.calls[0]["json"]["threatLocation"] == {"lat": 40.7, "lon": -74.0}

    @pytest.mark.asyncio
    async def test_sms_failure_does_not_block_others(self, store):
        await seed_account(store)
        sms = MagicMock()
        sms.send_sms = AsyncMock(side_effect=ChannelDeliveryError("sms", "provider down"))
        dispatcher, _, push = make_dispatcher(store, sms=sms)

        report = await dispatcher.dispatch(alert())

        assert report.failed_channels == [ChannelType.SMS]
        assert "provider down" in report.outcome(ChannelType.SMS).error
        push.send_multicast.assert_awaited_once()
        assert report.outcome(ChannelType.WEBHOOK).success
        assert report.outcome(ChannelType.PUSH).success

    @pytest.mark.asyncio
    async def test_unexpected_exception_contained(self, store):
        await seed_account(store)
        push = MagicMock()
        push.send_multicast = AsyncMock(side_effect=RuntimeError("boom"))
        dispatcher, sms, _ = make_dispatcher(store, push=push)

        report = await dispatcher.dispatch(alert())

        assert report.failed_channels == [ChannelType.PUSH]
        sms.send_sms.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_medium_is_push_only(self, store):
        await seed_account(store)
        dispatcher, sms, push = make_dispatcher(store)

        report = await dispatcher.dispatch(alert(MatchTier.MEDIUM, 80))

        assert report.channels == [ChannelType.PUSH]
        sms.send_sms.assert_not_awaited()
        title = push.send_multicast.await_args.args[1]
        assert title == "⚠️ Medium Threat Detected (80%)"

    @pytest.mark.asyncio
    async def test_low_dispatches_nothing(self, store):
        dispatcher, sms, push = make_dispatcher(store)
        report = await dispatcher.dispatch(alert(MatchTier.LOW, 60))

        assert report.outcomes == []
        push.send_multicast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_outcomes_recorded_on_tokens(self, store):
        await seed_account(store)
        dispatcher, _, _ = make_dispatcher(store)

        await dispatcher.dispatch(alert(MatchTier.MEDIUM, 80))

        active = await store.list_device_tokens("acct-1")
        assert [d.token for d in active] == ["tok-ok"]
        assert active[0].last_used_at is not None

        everything = {d.token: d for d in await store.list_device_tokens("acct-1", include_stale=True)}
        assert everything["tok-gone"].stale
        assert everything["tok-gone"].failure_count == 1
        assert everything["tok-gone"].last_error == "UNREGISTERED"

    @pytest.mark.asyncio
    async def test_missing_contacts_are_skipped(self, store):
        dispatcher, sms, push = make_dispatcher(store)

        report = await dispatcher.dispatch(alert())

        assert report.failed_channels == []
        for channel in ROUTES[MatchTier.HIGH]:
            assert report.outcome(channel).skipped
        sms.send_sms.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_threat_location_logged(self, store, caplog):
        dispatcher, _, _ = make_dispatcher(store)

        with caplog.at_level(logging.WARNING, logger="notifications.dispatcher"):
            await dispatcher.dispatch(alert(location=Location(40.7, -74.0)))

        assert any(
            "THREAT LOCATION subject=subj-1 lat=40.7 lon=-74.0" in r.getMessage()
            for r in caplog.records
        )


class TestBusWiring:
    """Dispatcher consuming alert topics."""

    @pytest.mark.asyncio
    async def test_webhook_fanout_topic_runs_webhooks_only(self, store):
        await seed_account(store)
        webhook_session = FakeSession([FakeResponse(200)])
        dispatcher, sms, push = make_dispatcher(store, webhook_session=webhook_session)
        bus = InMemoryMessageBus()
        dispatcher.subscribe(bus)

        await bus.publish(Topic.WEBHOOK_FANOUT, alert().to_dict())
        await bus.drain()

        assert len(webhook_session.calls) == 1
        sms.send_sms.assert_not_awaited()
        push.send_multicast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_high_topic_dispatches(self, store):
        await seed_account(store)
        dispatcher, sms, _ = make_dispatcher(store)
        bus = InMemoryMessageBus()
        dispatcher.subscribe(bus)

        await bus.publish(Topic.HIGH_THREAT, alert().to_dict())
        await bus.drain()

        sms.send_sms.assert_awaited_once()
        assert bus.dead_letters(Topic.HIGH_THREAT) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
