"""
Scan Engine - Resolution Client.

============================================================
PURPOSE
============================================================
Client for the external recognition service.

OPERATIONS:
- submit(): send an image (URL or bytes) with site metadata
- poll(): fetch the status of a deferred job once
- poll_until_complete(): poll with x1.5 backoff until done or deadline

TRANSPORT RULES:
- Network errors, 5xx and 429 retried with exponential backoff
- Other 4xx mapped to UpstreamInvalid and never retried
- Redirects rebase the service origin, bounded by max_redirects
- 401/403 invalidate the cached credential

The image is never written anywhere; downloaded copies are zeroed
once the call returns or fails.

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, urljoin, urlsplit

import aiohttp

from .cache import CredentialProvider
from .clock import ClockProtocol, SystemClock
from .config import ResolutionConfig
from .errors import REDIRECT_STATUSES, error_for_status
from .exceptions import (
    AuthenticationFailed,
    ExternalServiceError,
    NetworkError,
    PollTimeout,
    RateLimited,
    RedirectLimitExceeded,
    ServerError,
    ServiceUnavailable,
    UpstreamInvalid,
)
from .types import ImageRef, Match, ResolutionResult, SiteMetadata, Subject


logger = logging.getLogger(__name__)


RESOLVE_PATH = "/pub/asi/v4/resolve"
SCAN_STATUS_PATH = "/pub/asi/v4/scan/{job_id}"

# Poll responses in these classes mean "ask again later".
TRANSIENT_POLL_ERRORS = (ServiceUnavailable, RateLimited, NetworkError)


# ============================================================
# BACKOFF
# ============================================================

def next_poll_delay(delay: float, multiplier: float = 1.5, cap: float = 30.0) -> float:
    """Delay after `delay`, grown by `multiplier` and capped."""
    return min(delay * multiplier, cap)


def poll_delays(initial: float = 5.0, multiplier: float = 1.5, cap: float = 30.0) -> Iterator[float]:
    """Infinite sequence of poll delays."""
    delay = min(initial, cap)
    while True:
        yield delay
        delay = next_poll_delay(delay, multiplier, cap)


# ============================================================
# PAYLOAD PARSING
# ============================================================

def _parse_match(match: Dict[str, Any], subject: Optional[Dict[str, Any]]) -> Match:
    subject = subject or {}
    subject_id = subject.get("id") or match.get("subjectId")

    parsed_subject = None
    if subject_id is not None:
        parsed_subject = Subject(
            subject_id=str(subject_id),
            name=subject.get("name") or subject.get("nameLine"),
            subject_type=subject.get("type"),
            photo_url=subject.get("photo"),
        )

    return Match(
        match_id=str(match.get("id", "")),
        score=float(match.get("score") or 0),
        score_level=match.get("scoreLevel"),
        subject=parsed_subject,
    )


def _as_list(value: Any) -> List[Any]:
    """The service sends single objects where it usually sends arrays."""
    if not value:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def parse_resolution_payload(data: Any, job_id: Optional[str] = None) -> ResolutionResult:
    """
    Normalize a submit or status payload.

    Submit answers carry `matches[]` at the top level; status answers
    wrap everything in `scan` with `recordList[{match, subject}]`.

    Raises:
        UpstreamInvalid: payload does not have the expected shape
    """
    if not isinstance(data, dict):
        raise UpstreamInvalid("Malformed response from resolution service")

    try:
        return _parse_body(data, job_id)
    except (TypeError, ValueError, AttributeError) as e:
        raise UpstreamInvalid(f"Malformed response from resolution service: {e}") from e


def _parse_body(data: Dict[str, Any], job_id: Optional[str]) -> ResolutionResult:
    body = data.get("scan") if isinstance(data.get("scan"), dict) else data

    matches: List[Match] = []
    for raw in _as_list(body.get("matches")):
        matches.append(_parse_match(raw, raw.get("subject")))
    for record in _as_list(body.get("recordList")):
        matches.append(_parse_match(record.get("match") or {}, record.get("subject")))

    status = body.get("status")
    if not status:
        status = "COMPLETED" if matches else "PENDING"

    return ResolutionResult(
        job_id=str(body.get("id") or job_id or ""),
        status=str(status).upper(),
        matches=matches,
        biometrics=_as_list(body.get("biometrics")),
        crimes=_as_list(body.get("crimes")),
        view_url=body.get("viewMatchesUrl"),
        timed_out=bool(body.get("timedOutFlag")),
    )


# ============================================================
# CLIENT
# ============================================================

class ResolutionClient:
    """
    aiohttp client for the resolution service.
    """

    def __init__(
        self,
        config: ResolutionConfig,
        credentials: CredentialProvider,
        clock: Optional[ClockProtocol] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            config: Service settings
            credentials: Resolves credential references to access keys
            clock: Time source for backoff and deadlines
            session: Shared session; created lazily when omitted
        """
        self._config = config
        self._credentials = credentials
        self._clock = clock or SystemClock()
        self._session = session
        self._owns_session = session is None
        self._base_url = config.base_url.rstrip("/")

    @property
    def base_url(self) -> str:
        """Current origin (after any redirect rebase)."""
        return self._base_url

    @property
    def default_credential_ref(self) -> str:
        return self._credentials.default_ref

    # --------------------------------------------------------
    # SESSION
    # --------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                connect=self._config.connect_timeout_seconds,
                total=self._config.request_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # --------------------------------------------------------
    # SUBMIT
    # --------------------------------------------------------

    async def submit(
        self,
        image: ImageRef,
        site: SiteMetadata,
        credential_ref: Optional[str] = None,
    ) -> ResolutionResult:
        """
        Submit an image for resolution.

        The service waits up to `sync_wait_seconds` before answering with
        a job handle, so this call returns inside a short bound either way.

        Raises:
            ExternalServiceError: after retries, for non-retryable errors
        """
        ref = credential_ref or self._credentials.default_ref
        access_key = await self._credentials.get(ref)

        params: Dict[str, Any] = {
            "accessKey": access_key,
            "async": "true",
            "timeout": str(self._config.sync_wait_seconds),
            "minScore": str(self._config.min_score),
            "maxMatches": str(self._config.max_matches),
            "fields": ",".join(self._config.fields),
            "camera": site.camera_id,
        }
        if site.site:
            params["site"] = site.site
        if site.name:
            params["name"] = site.name

        body, content_type = await self._image_body(image)
        try:
            data = await self._request(
                "POST",
                RESOLVE_PATH,
                params=params,
                data=body,
                headers={"Content-Type": content_type},
                credential_ref=ref,
            )
        finally:
            # Downloaded copies are ours to wipe; caller-owned buffers are
            # cleared by the caller.
            if image.is_url:
                for i in range(len(body)):
                    body[i] = 0

        result = parse_resolution_payload(data)
        if not result.job_id:
            raise UpstreamInvalid("Resolution service returned no job id")

        logger.info(
            f"Submitted scan to resolution service: job={result.job_id} "
            f"status={result.status} matches={len(result.matches)} deferred={result.deferred}"
        )
        return result

    async def _image_body(self, image: ImageRef) -> Tuple[bytearray, str]:
        if image.is_url:
            return await self._download_image(image.url)
        if not image.data:
            raise UpstreamInvalid("No image data to submit")
        return image.data, image.content_type

    async def _download_image(self, url: str) -> Tuple[bytearray, str]:
        session = await self._get_session()
        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise UpstreamInvalid(
                        "Image URL could not be fetched",
                        http_status=response.status,
                    )
                content = bytearray(await response.read())
                content_type = response.headers.get("Content-Type", "image/jpeg")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Image download failed: {e}")

        return content, content_type.split(";", 1)[0].strip() or "image/jpeg"

    # --------------------------------------------------------
    # POLLING
    # --------------------------------------------------------

    async def poll(self, job_id: str, credential_ref: Optional[str] = None) -> ResolutionResult:
        """Fetch job status once, without inner retries."""
        ref = credential_ref or self._credentials.default_ref
        access_key = await self._credentials.get(ref)

        data = await self._request(
            "GET",
            SCAN_STATUS_PATH.format(job_id=quote(job_id, safe="")),
            params={"accessKey": access_key},
            credential_ref=ref,
            max_retries=0,
        )
        return parse_resolution_payload(data, job_id=job_id)

    async def poll_until_complete(
        self,
        job_id: str,
        credential_ref: Optional[str] = None,
        deadline_seconds: Optional[float] = None,
        initial_delay_seconds: Optional[float] = None,
    ) -> ResolutionResult:
        """
        Poll until the job leaves the pending states.

        The service can report COMPLETED before its matches are ready,
        so a COMPLETED answer without matches keeps polling. If the
        deadline passes with only such answers, the last one is
        returned as a no-match completion.

        Raises:
            PollTimeout: deadline elapsed while still pending
            ExternalServiceError: non-transient poll failure
        """
        poll_config = self._config.poll
        if deadline_seconds is None:
            deadline_seconds = poll_config.deadline_seconds
        if initial_delay_seconds is None:
            initial_delay_seconds = poll_config.initial_delay_seconds

        started = self._clock.monotonic()
        deadline_at = started + deadline_seconds
        delays = poll_delays(
            initial_delay_seconds,
            poll_config.backoff_multiplier,
            poll_config.max_delay_seconds,
        )
        attempts = 0
        empty_completion: Optional[ResolutionResult] = None

        while True:
            attempts += 1
            try:
                result = await self.poll(job_id, credential_ref)
            except TRANSIENT_POLL_ERRORS as e:
                logger.info(f"Job {job_id} poll {attempts}: treated as pending ({e})")
                result = None

            if result is not None and not result.deferred:
                if result.matches or result.failed:
                    logger.info(
                        f"Job {job_id} finished after {attempts} polls: "
                        f"status={result.status} matches={len(result.matches)}"
                    )
                    return result
                logger.info(f"Job {job_id} poll {attempts}: {result.status} without matches yet")
                empty_completion = result

            remaining = deadline_at - self._clock.monotonic()
            if remaining <= 0:
                elapsed = self._clock.monotonic() - started
                if empty_completion is not None:
                    logger.info(
                        f"Job {job_id} completed with no matches after {attempts} polls ({elapsed:.1f}s)"
                    )
                    return empty_completion
                logger.warning(f"Job {job_id} timed out after {attempts} polls ({elapsed:.1f}s)")
                raise PollTimeout(job_id, elapsed)

            await self._clock.sleep(min(next(delays), remaining))

    # --------------------------------------------------------
    # TRANSPORT
    # --------------------------------------------------------

    def _rebase(self, location: Optional[str], status: int) -> None:
        if not location:
            raise UpstreamInvalid("Redirect without Location header", http_status=status)

        target = urlsplit(urljoin(self._base_url + "/", location))
        new_base = f"{target.scheme}://{target.netloc}"
        if new_base != self._base_url:
            logger.info(f"Resolution service redirected ({status}): {self._base_url} -> {new_base}")
        self._base_url = new_base

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[bytearray] = None,
        headers: Optional[Dict[str, str]] = None,
        credential_ref: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """Make an API request with redirect rebasing and bounded retries."""
        retry = self._config.retry
        retries = retry.max_retries if max_retries is None else max_retries
        attempt = 0
        redirects = 0

        while True:
            session = await self._get_session()
            url = f"{self._base_url}{path}"

            try:
                async with session.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    headers=headers,
                    allow_redirects=False,
                ) as response:
                    if response.status in REDIRECT_STATUSES:
                        redirects += 1
                        if redirects > self._config.max_redirects:
                            raise RedirectLimitExceeded(
                                f"More than {self._config.max_redirects} redirects",
                                http_status=response.status,
                            )
                        self._rebase(response.headers.get("Location"), response.status)
                        continue

                    if response.status < 400:
                        return await response.json(content_type=None)

                    body = await response.text()
                    error = error_for_status(
                        response.status,
                        body,
                        response.headers.get("Retry-After"),
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error = NetworkError(f"Network error: {e}")
            except ValueError:
                error = UpstreamInvalid("Malformed response from resolution service")

            if isinstance(error, AuthenticationFailed) and credential_ref:
                self._credentials.invalidate(credential_ref)

            if not error.is_retryable() or attempt >= retries:
                raise self._final_error(error)

            delay = error.retry_after_seconds
            if delay is None:
                delay = retry.delay_for_attempt(attempt)
            delay = min(delay, retry.max_delay_seconds)
            attempt += 1

            logger.warning(
                f"{method} {path} failed ({error}), retry {attempt}/{retries} in {delay:.1f}s"
            )
            await self._clock.sleep(delay)

    @staticmethod
    def _final_error(error: ExternalServiceError) -> ExternalServiceError:
        """Exhausted 5xx retries surface as ServiceUnavailable."""
        if isinstance(error, ServerError) and not isinstance(error, ServiceUnavailable):
            unavailable = ServiceUnavailable(
                "Resolution service unavailable",
                http_status=error.http_status,
            )
            unavailable.__cause__ = error
            return unavailable
        return error
