"""
Push Notification Client.

============================================================
PURPOSE
============================================================
Multicast push through Firebase Cloud Messaging (HTTP v1).

- Client initialization runs once, even under concurrent first use
- One request per device token, bounded in-flight
- Per-token outcome; tokens the provider no longer knows are
  reported as stale

============================================================
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

from scan_engine.cache import RefreshableValue
from scan_engine.config import PushConfig
from scan_engine.exceptions import ChannelDeliveryError


logger = logging.getLogger(__name__)


STALE_TOKEN_ERRORS = frozenset({
    "UNREGISTERED",
    "INVALID_ARGUMENT",
    "NOT_FOUND",
    "SENDER_ID_MISMATCH",
})


# ============================================================
# RESULTS
# ============================================================

@dataclass
class TokenResult:
    """Outcome for one device token."""

    token: str
    success: bool
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    stale: bool = False


@dataclass
class BatchResult:
    """Outcome of one multicast."""

    results: List[TokenResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def failures(self) -> List[TokenResult]:
        return [r for r in self.results if not r.success]

    @property
    def delivered_tokens(self) -> List[str]:
        return [r.token for r in self.results if r.success]


@dataclass
class _PushAuth:
    access_token: str


# ============================================================
# CLIENT
# ============================================================

class FcmPushClient:
    """
    FCM HTTP v1 sender.
    """

    def __init__(
        self,
        config: Optional[PushConfig] = None,
        token_loader: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config or PushConfig()
        self._token_loader = token_loader or self._token_from_env
        self._session = session
        self._auth: RefreshableValue[_PushAuth] = RefreshableValue(
            self._initialize, name="push client"
        )

    @property
    def initialize_count(self) -> int:
        return self._auth.load_count

    async def _token_from_env(self) -> Optional[str]:
        return os.getenv(self._config.access_token_env)

    async def _initialize(self) -> _PushAuth:
        if not self._config.project_id:
            raise ChannelDeliveryError("push", "FCM project id is not configured")
        token = await self._token_loader()
        if not token:
            raise ChannelDeliveryError("push", "FCM access token is not configured")
        logger.info(f"Push client initialized for project {self._config.project_id}")
        return _PushAuth(access_token=token)

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

    async def send_multicast(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, str]] = None,
    ) -> BatchResult:
        """
        Send one notification to every token.

        Raises:
            ChannelDeliveryError: client could not be initialized
        """
        if not tokens:
            return BatchResult()

        auth = await self._auth.get()
        semaphore = asyncio.Semaphore(self._config.max_in_flight)

        async def send(token: str) -> TokenResult:
            async with semaphore:
                return await self._send_one(auth, token, title, body, data or {})

        results = await asyncio.gather(*(send(t) for t in tokens))
        batch = BatchResult(results=list(results))

        if any(r.error_code == "UNAUTHENTICATED" for r in batch.results):
            self._auth.invalidate()

        logger.info(
            f"Push multicast: {batch.success_count}/{len(tokens)} delivered"
        )
        return batch

    async def _send_one(
        self,
        auth: _PushAuth,
        token: str,
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> TokenResult:
        url = f"{self._config.base_url}/v1/projects/{self._config.project_id}/messages:send"
        message = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": {k: str(v) for k, v in data.items()},
                "android": {"priority": "high"},
                "apns": {"payload": {"aps": {"sound": "default"}}},
            }
        }
        headers = {"Authorization": f"Bearer {auth.access_token}"}

        try:
            session = await self._get_session()
            async with session.post(url, json=message, headers=headers) as response:
                if response.status == 200:
                    payload = await response.json(content_type=None)
                    message_id = payload.get("name") if isinstance(payload, dict) else None
                    return TokenResult(token=token, success=True, message_id=message_id)

                text = await response.text()
                error_code = self._error_code(response.status, text)
                logger.warning(f"FCM API error: {response.status} - {error_code}")
                return TokenResult(
                    token=token,
                    success=False,
                    error_code=error_code,
                    stale=error_code in STALE_TOKEN_ERRORS,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return TokenResult(token=token, success=False, error_code=f"NETWORK: {e}")
        except Exception as e:
            logger.error(f"FCM send to token failed unexpectedly: {e}", exc_info=True)
            return TokenResult(token=token, success=False, error_code=f"INTERNAL: {e}")

    @staticmethod
    def _error_code(status: int, text: str) -> str:
        """Pull the most specific FCM error code out of an error body."""
        try:
            error = json.loads(text).get("error", {})
        except (ValueError, AttributeError):
            error = {}

        for detail in error.get("details", []) or []:
            code = detail.get("errorCode") if isinstance(detail, dict) else None
            if code:
                return code
        if error.get("status"):
            return error["status"]
        if status == 404:
            return "NOT_FOUND"
        if status == 401:
            return "UNAUTHENTICATED"
        return f"HTTP_{status}"
