"""
Test doubles for aiohttp sessions.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union


class FakeResponse:
    """Minimal stand-in for aiohttp.ClientResponse."""

    def __init__(
        self,
        status: int = 200,
        json_data: Any = None,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        delay: float = 0.0,
    ):
        self.status = status
        self._json = json_data
        self._text = text
        self.headers = headers or {}
        self._body = body
        self.delay = delay

    async def json(self, content_type: Optional[str] = None) -> Any:
        if self._json is None:
            if self._text is not None:
                return json.loads(self._text)
            raise ValueError("No JSON body")
        return self._json

    async def text(self) -> str:
        if self._text is not None:
            return self._text
        if self._json is not None:
            return json.dumps(self._json)
        return ""

    async def read(self) -> bytes:
        return self._body


Outcome = Union[FakeResponse, BaseException]


class _RequestContext:
    def __init__(self, session: "FakeSession", outcome: Outcome):
        self._session = session
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        self._session.in_flight += 1
        self._session.max_in_flight = max(self._session.max_in_flight, self._session.in_flight)
        try:
            if isinstance(self._outcome, BaseException):
                raise self._outcome
            if self._outcome.delay:
                await asyncio.sleep(self._outcome.delay)
            return self._outcome
        except BaseException:
            self._session.in_flight -= 1
            raise

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._session.in_flight -= 1
        return False


class FakeSession:
    """
    Records requests and replays canned outcomes.

    Outcomes come from `handler(method, url, kwargs)` when given,
    otherwise from the `responses` list in order (the last one repeats).
    """

    def __init__(
        self,
        responses: Optional[List[Outcome]] = None,
        handler: Optional[Callable[[str, str, Dict[str, Any]], Outcome]] = None,
    ):
        self._responses = list(responses or [])
        self._handler = handler
        self.calls: List[Dict[str, Any]] = []
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0

    def _next(self, method: str, url: str, kwargs: Dict[str, Any]) -> Outcome:
        if self._handler is not None:
            return self._handler(method, url, kwargs)
        if len(self._responses) > 1:
            return self._responses.pop(0)
        if self._responses:
            return self._responses[0]
        return FakeResponse(200, json_data={})

    def request(self, method: str, url: str, **kwargs) -> _RequestContext:
        self.calls.append({"method": method, "url": url, **kwargs})
        return _RequestContext(self, self._next(method, url, kwargs))

    def get(self, url: str, **kwargs) -> _RequestContext:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> _RequestContext:
        return self.request("POST", url, **kwargs)

    async def close(self) -> None:
        self.closed = True
