"""
Transactional Email Client.

============================================================
PURPOSE
============================================================
Send HTML email through the SendGrid v3 API.

Provider responses map onto typed errors so callers can decide:
- 429          -> EmailRateLimited     (retryable)
- 5xx          -> EmailServerError     (retryable)
- bad address  -> EmailInvalidAddress  (permanent, treat as bounce)
- other 4xx    -> EmailRejected        (permanent)

============================================================
"""

import asyncio
import json
import logging
from typing import Dict, Optional

import aiohttp

from scan_engine.config import EmailConfig
from scan_engine.exceptions import (
    EmailDeliveryError,
    EmailInvalidAddress,
    EmailRateLimited,
    EmailRejected,
    EmailServerError,
)


logger = logging.getLogger(__name__)


SEND_PATH = "/v3/mail/send"

INVALID_ADDRESS_MARKERS = (
    "valid email",
    "invalid email",
    "does not contain a valid address",
    "bounce",
)


def classify_email_error(status: int, body: str) -> EmailDeliveryError:
    """Map a non-2xx provider response to a typed error."""
    if status == 429:
        return EmailRateLimited("Email provider rate limited the request", http_status=status)
    if status >= 500:
        return EmailServerError(f"Email provider returned HTTP {status}", http_status=status)

    if status == 400 and _mentions_invalid_address(body):
        return EmailInvalidAddress("Recipient address rejected", http_status=status)
    return EmailRejected(f"Email provider rejected the message (HTTP {status})", http_status=status)


def _mentions_invalid_address(body: str) -> bool:
    try:
        errors = json.loads(body).get("errors", [])
    except (ValueError, AttributeError):
        errors = []

    texts = [body.lower()]
    for error in errors:
        if isinstance(error, dict):
            texts.append(str(error.get("message", "")).lower())
            if str(error.get("field", "")).endswith(".email"):
                return True
    return any(marker in text for text in texts for marker in INVALID_ADDRESS_MARKERS)


class SendGridEmailClient:
    """SendGrid mail/send client."""

    def __init__(
        self,
        config: Optional[EmailConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or EmailConfig()
        self._session = session

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

    async def send(
        self,
        to_address: str,
        subject: str,
        html: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """
        Send one HTML email.

        Returns:
            Provider message id when the provider returns one

        Raises:
            EmailDeliveryError (typed subclass)
        """
        if not self._config.api_key:
            raise EmailRejected("SendGrid API key is not configured")

        message = {
            "personalizations": [{"to": [{"email": to_address}]}],
            "from": {
                "email": self._config.from_address,
                "name": self._config.from_name,
            },
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        if headers:
            message["headers"] = headers

        url = f"{self._config.base_url}{SEND_PATH}"
        auth_headers = {"Authorization": f"Bearer {self._config.api_key}"}

        try:
            session = await self._get_session()
            async with session.post(url, json=message, headers=auth_headers) as response:
                if response.status in (200, 202):
                    return response.headers.get("X-Message-Id")
                body = await response.text()
                logger.error(f"SendGrid API error: {response.status} - {body[:300]}")
                raise classify_email_error(response.status, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise EmailServerError(f"Network error: {e}")
