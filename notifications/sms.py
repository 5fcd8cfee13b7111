"""
SMS Notification Client.

============================================================
PURPOSE
============================================================
Send SMS through the Twilio REST API.

- E.164 numbers only
- Returns the provider message id
- Raises ChannelDeliveryError on any failure

============================================================
"""

import asyncio
import logging
import re
from typing import Optional

import aiohttp

from scan_engine.config import SmsConfig
from scan_engine.exceptions import ChannelDeliveryError


logger = logging.getLogger(__name__)


E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def is_e164(number: Optional[str]) -> bool:
    return bool(number) and bool(E164_PATTERN.match(number))


class TwilioSmsClient:
    """Minimal Twilio Messages API client."""

    def __init__(
        self,
        config: Optional[SmsConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or SmsConfig()
        self._session = session

    @property
    def is_configured(self) -> bool:
        c = self._config
        return bool(c.account_sid and c.auth_token and c.from_number)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def send_sms(self, to: str, body: str) -> str:
        """
        Send one SMS.

        Returns:
            Provider message id

        Raises:
            ChannelDeliveryError: invalid number, missing config, provider error
        """
        if not is_e164(to):
            raise ChannelDeliveryError("sms", "Recipient is not a valid E.164 number")
        if not self.is_configured:
            raise ChannelDeliveryError("sms", "Twilio credentials are not configured")

        c = self._config
        url = f"{c.base_url}/2010-04-01/Accounts/{c.account_sid}/Messages.json"
        form = {"To": to, "From": c.from_number, "Body": body}

        try:
            session = await self._get_session()
            async with session.post(
                url,
                data=form,
                auth=aiohttp.BasicAuth(c.account_sid, c.auth_token),
            ) as response:
                if response.status not in (200, 201):
                    text = await response.text()
                    logger.error(f"Twilio API error: {response.status} - {text[:300]}")
                    raise ChannelDeliveryError(
                        "sms",
                        f"Provider returned HTTP {response.status}",
                        http_status=response.status,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelDeliveryError("sms", f"Network error: {e}")

        message_id = data.get("sid", "")
        logger.info(f"SMS sent: {message_id}")
        return message_id
