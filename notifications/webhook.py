"""
Webhook Fan-out.

============================================================
PURPOSE
============================================================
POST one alert payload to every subscribed endpoint.

- At most `max_in_flight` calls at once
- Each call bounded by its own timeout
- A failing endpoint never stops the others; failures are tallied

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from scan_engine.types import WebhookSubscription


logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    """Outcome for one endpoint."""

    webhook_id: str
    url: str
    success: bool
    http_status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class FanOutReport:
    """Outcome of one fan-out."""

    results: List[WebhookResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.delivered

    @property
    def failures(self) -> List[WebhookResult]:
        return [r for r in self.results if not r.success]


class WebhookNotifier:
    """Bounded concurrent webhook delivery."""

    def __init__(
        self,
        max_in_flight: int = 10,
        timeout_seconds: float = 10.0,
        user_agent: str = "ThreatScan-Webhook/1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._max_in_flight = max_in_flight
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def fan_out(
        self,
        subscriptions: List[WebhookSubscription],
        payload: Dict[str, Any],
    ) -> FanOutReport:
        """Deliver `payload` to every subscription."""
        semaphore = asyncio.Semaphore(self._max_in_flight)

        async def deliver(subscription: WebhookSubscription) -> WebhookResult:
            async with semaphore:
                return await self._deliver(subscription, payload)

        results = await asyncio.gather(*(deliver(s) for s in subscriptions))
        report = FanOutReport(results=list(results))

        if report.failed:
            logger.warning(
                f"Webhook fan-out: {report.delivered} delivered, {report.failed} failed"
            )
        else:
            logger.info(f"Webhook fan-out: {report.delivered} delivered")
        return report

    async def _deliver(
        self,
        subscription: WebhookSubscription,
        payload: Dict[str, Any],
    ) -> WebhookResult:
        try:
            status = await asyncio.wait_for(
                self._post(subscription.url, payload),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Webhook {subscription.webhook_id} timed out")
            return WebhookResult(
                webhook_id=subscription.webhook_id,
                url=subscription.url,
                success=False,
                error="timeout",
            )
        except aiohttp.ClientError as e:
            logger.warning(f"Webhook {subscription.webhook_id} failed: {e}")
            return WebhookResult(
                webhook_id=subscription.webhook_id,
                url=subscription.url,
                success=False,
                error=str(e),
            )
        except Exception as e:
            logger.error(f"Webhook {subscription.webhook_id} failed unexpectedly: {e}", exc_info=True)
            return WebhookResult(
                webhook_id=subscription.webhook_id,
                url=subscription.url,
                success=False,
                error=f"internal: {e}",
            )

        success = 200 <= status < 300
        if not success:
            logger.warning(f"Webhook {subscription.webhook_id} returned HTTP {status}")
        return WebhookResult(
            webhook_id=subscription.webhook_id,
            url=subscription.url,
            success=success,
            http_status=status,
            error=None if success else f"HTTP {status}",
        )

    async def _post(self, url: str, payload: Dict[str, Any]) -> int:
        session = await self._get_session()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
        }
        async with session.post(
            url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
        ) as response:
            return response.status
