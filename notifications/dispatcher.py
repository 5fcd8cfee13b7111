"""
Alert Dispatcher.

============================================================
PURPOSE
============================================================
Routes an AlertEvent to the channels of its tier.

ROUTING:
- HIGH   -> SMS, push, webhook, threat-location log
- MEDIUM -> push
- LOW    -> nothing (weekly digest only)

PRINCIPLES:
- Channels run concurrently under a semaphore
- One failing channel never blocks another
- Every channel leaves an outcome in the DispatchReport

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from scan_engine.bus import MessageBus, Topic
from scan_engine.config import AlertConfig
from scan_engine.types import AlertEvent, ChannelType, MatchTier

from .formatting import AlertFormatter, format_score
from .push import FcmPushClient
from .sms import TwilioSmsClient
from .webhook import WebhookNotifier


logger = logging.getLogger(__name__)


ROUTES: Dict[MatchTier, tuple] = {
    MatchTier.HIGH: (
        ChannelType.SMS,
        ChannelType.PUSH,
        ChannelType.WEBHOOK,
        ChannelType.THREAT_LOCATION,
    ),
    MatchTier.MEDIUM: (ChannelType.PUSH,),
    MatchTier.LOW: (),
}


# ============================================================
# REPORTS
# ============================================================

@dataclass
class ChannelOutcome:
    """Result of one channel for one event."""

    channel: ChannelType
    success: bool
    skipped: bool = False
    detail: str = ""
    error: Optional[str] = None


@dataclass
class DispatchReport:
    """All channel outcomes for one event."""

    scan_id: str
    tier: MatchTier
    outcomes: List[ChannelOutcome] = field(default_factory=list)

    def outcome(self, channel: ChannelType) -> Optional[ChannelOutcome]:
        for outcome in self.outcomes:
            if outcome.channel == channel:
                return outcome
        return None

    @property
    def channels(self) -> List[ChannelType]:
        return [o.channel for o in self.outcomes]

    @property
    def failed_channels(self) -> List[ChannelType]:
        return [o.channel for o in self.outcomes if not o.success]


class _Skipped(Exception):
    """Channel had nothing to deliver to."""
    pass


# ============================================================
# DISPATCHER
# ============================================================

class AlertDispatcher:
    """
    Fans one alert out to its channels.
    """

    def __init__(
        self,
        store,
        sms: TwilioSmsClient,
        push: FcmPushClient,
        webhooks: WebhookNotifier,
        config: Optional[AlertConfig] = None,
    ):
        self._store = store
        self._sms = sms
        self._push = push
        self._webhooks = webhooks
        self._config = config or AlertConfig()
        self._handlers: Dict[ChannelType, Callable[[AlertEvent], Awaitable[str]]] = {
            ChannelType.SMS: self._send_sms,
            ChannelType.PUSH: self._send_push,
            ChannelType.WEBHOOK: self._send_webhooks,
            ChannelType.THREAT_LOCATION: self._log_threat_location,
        }

    # --------------------------------------------------------
    # BUS WIRING
    # --------------------------------------------------------

    def subscribe(self, bus: MessageBus) -> None:
        bus.subscribe(Topic.HIGH_THREAT, self.handle_alert)
        bus.subscribe(Topic.MEDIUM_THREAT, self.handle_alert)
        bus.subscribe(Topic.WEBHOOK_FANOUT, self.handle_webhook_fanout)

    async def handle_alert(self, payload: Dict[str, Any]) -> None:
        await self.dispatch(AlertEvent.from_dict(payload))

    async def handle_webhook_fanout(self, payload: Dict[str, Any]) -> None:
        """Replay path: webhook delivery only."""
        event = AlertEvent.from_dict(payload)
        outcome = await self._run_channel(ChannelType.WEBHOOK, event)
        logger.info(f"Webhook replay for scan {event.scan_id}: {outcome.detail or outcome.error}")

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    async def dispatch(self, event: AlertEvent) -> DispatchReport:
        """Deliver `event` on every channel of its tier."""
        channels = ROUTES.get(event.tier, ())
        report = DispatchReport(scan_id=event.scan_id, tier=event.tier)
        if not channels:
            logger.debug(f"No channels for {event.tier.value} scan {event.scan_id}")
            return report

        semaphore = asyncio.Semaphore(self._config.channel_concurrency)

        async def run(channel: ChannelType) -> ChannelOutcome:
            async with semaphore:
                return await self._run_channel(channel, event)

        report.outcomes = list(await asyncio.gather(*(run(c) for c in channels)))

        failed = report.failed_channels
        if failed:
            logger.warning(
                f"Alert {event.scan_id} ({event.tier.value}): "
                f"failed channels {[c.value for c in failed]}"
            )
        else:
            logger.info(f"Alert {event.scan_id} ({event.tier.value}) dispatched")
        return report

    async def _run_channel(self, channel: ChannelType, event: AlertEvent) -> ChannelOutcome:
        handler = self._handlers[channel]
        try:
            detail = await handler(event)
            return ChannelOutcome(channel=channel, success=True, detail=detail)
        except _Skipped as e:
            logger.info(f"{channel.value} skipped for scan {event.scan_id}: {e}")
            return ChannelOutcome(channel=channel, success=True, skipped=True, detail=str(e))
        except Exception as e:
            logger.error(f"{channel.value} delivery failed for scan {event.scan_id}: {e}")
            return ChannelOutcome(channel=channel, success=False, error=str(e))

    # --------------------------------------------------------
    # CHANNELS
    # --------------------------------------------------------

    async def _send_sms(self, event: AlertEvent) -> str:
        profile = await self._store.get_account_profile(event.account_id)
        if profile is None or not profile.phone_number:
            raise _Skipped("no phone number on file")

        message_id = await self._sms.send_sms(
            profile.phone_number, AlertFormatter.sms_body(event)
        )
        return f"sms {message_id}"

    async def _send_push(self, event: AlertEvent) -> str:
        devices = await self._store.list_device_tokens(event.account_id)
        if not devices:
            raise _Skipped("no registered devices")

        batch = await self._push.send_multicast(
            [d.token for d in devices],
            AlertFormatter.push_title(event),
            AlertFormatter.push_body(event),
            AlertFormatter.push_data(event),
        )

        for failure in batch.failures:
            await self._store.record_device_token_failure(
                event.account_id,
                failure.token,
                failure.error_code or "unknown",
                stale=failure.stale,
            )
        await self._store.mark_device_tokens_used(event.account_id, batch.delivered_tokens)

        return f"{batch.success_count}/{len(devices)} devices"

    async def _send_webhooks(self, event: AlertEvent) -> str:
        subscriptions = await self._store.list_webhook_subscriptions(event.account_id)
        if not subscriptions:
            raise _Skipped("no webhook subscriptions")

        report = await self._webhooks.fan_out(
            subscriptions, AlertFormatter.webhook_payload(event)
        )
        return f"{report.delivered} delivered, {report.failed} failed"

    async def _log_threat_location(self, event: AlertEvent) -> str:
        if event.location is None:
            raise _Skipped("no location")

        logger.warning(
            f"THREAT LOCATION subject={event.subject_id or 'unknown'} "
            f"lat={event.location.latitude} lon={event.location.longitude} "
            f"score={format_score(event.score)} scan={event.scan_id} "
            f"account={event.account_id}"
        )
        return "logged"
