"""Plain HTTP tier (httpx, HTTP/2) with retry and backoff.

Retry policy:
- DNS failures fail fast, no retry.
- Timeouts, refused connections and 5xx retry with capped exponential backoff.
- 429 waits for Retry-After (or the backoff formula when absent) and does
  not advance the backoff exponent.
- Everything else (2xx, 3xx after redirects, 401/403) is returned as-is for
  protection classification upstream.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable
from urllib.parse import urlparse

import httpx

from threatharvest.config import settings
from threatharvest.core.exceptions import NetworkError
from threatharvest.core.metrics import fetch_attempts_total
from threatharvest.schemas.scrape import BrowserProfile, FetchResponse
from threatharvest.services.fingerprints import FingerprintPool

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})
# Cap on a server-supplied Retry-After
MAX_RETRY_AFTER_MS = 30000

_DNS_ERROR_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated",
    "getaddrinfo",
    "name resolution",
    "dns",
)


def compute_backoff(attempt: int, base_ms: int, max_ms: int) -> int:
    """Delay before retry number `attempt` (1-based): min(base * 2^(attempt-1), max)."""
    if attempt < 1:
        return 0
    return min(base_ms * (2 ** (attempt - 1)), max_ms)


def parse_retry_after(value: str | None) -> int | None:
    """Retry-After in milliseconds, or None if missing/unparseable (HTTP-date form is ignored)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return int(seconds * 1000)


def classify_network_error(exc: Exception) -> str:
    """Map a transport exception to NetworkError.kind."""
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "timeout"
    msg = str(exc).lower()
    cause = exc.__cause__ or exc.__context__
    if cause is not None:
        msg += " " + str(cause).lower()
    if any(marker in msg for marker in _DNS_ERROR_MARKERS):
        return "dns"
    return "connection"


class CookieJar:
    """Cookies carried between HTTP requests.

    With `shared=True` a single flat name->value map is sent to every host, so
    a session cookie picked up on one retry survives into the next. It also
    means cookies from one site are sent to another. Per-host mode keeps them
    apart.
    """

    def __init__(self, shared: bool = True):
        self.shared = shared
        self._jars: dict[str, dict[str, str]] = {}

    def _key(self, host: str) -> str:
        return "*" if self.shared else host

    def update(self, host: str, cookies: dict[str, str]) -> None:
        if cookies:
            self._jars.setdefault(self._key(host), {}).update(cookies)

    def get(self, host: str) -> dict[str, str]:
        return dict(self._jars.get(self._key(host), {}))

    def header(self, host: str) -> str:
        return "; ".join(f"{k}={v}" for k, v in self.get(host).items())

    def clear(self) -> None:
        self._jars.clear()


class HTTPClient:
    def __init__(
        self,
        fingerprints: FingerprintPool | None = None,
        cookie_jar: CookieJar | None = None,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fingerprints = fingerprints or FingerprintPool()
        self.cookie_jar = cookie_jar or CookieJar(shared=settings.SHARED_COOKIE_JAR)
        self.max_retries = max_retries if max_retries is not None else settings.HTTP_MAX_RETRIES
        self.base_delay_ms = base_delay_ms if base_delay_ms is not None else settings.RETRY_BASE_DELAY_MS
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.RETRY_MAX_DELAY_MS
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._loop_id: int | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Reusable client, recreated when the event loop changes."""
        current_loop_id = id(asyncio.get_running_loop())
        if self._client is None or self._client.is_closed or self._loop_id != current_loop_id:
            kwargs = dict(follow_redirects=True, timeout=settings.DEFAULT_TIMEOUT / 1000)
            if self._transport is not None:
                kwargs["transport"] = self._transport
            else:
                kwargs["http2"] = True
            self._client = httpx.AsyncClient(**kwargs)
            self._loop_id = current_loop_id
        return self._client

    async def fetch(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        profile: BrowserProfile | None = None,
    ) -> FetchResponse:
        """GET with retries. Raises NetworkError once retries are spent or on DNS failure.

        A fresh profile is drawn per attempt unless one is pinned by the caller.
        """
        timeout_ms = timeout_ms or settings.DEFAULT_TIMEOUT
        host = urlparse(url).hostname or ""
        backoff_attempt = 0
        last_response: FetchResponse | None = None
        last_error: NetworkError | None = None

        for attempt in range(1, self.max_retries + 1):
            attempt_profile = profile or self.fingerprints.random_profile()
            try:
                response = await self._request(url, attempt_profile, headers, timeout_ms, host)
            except NetworkError as e:
                fetch_attempts_total.labels(tier="http", outcome=e.kind).inc()
                if not e.retryable:
                    logger.warning(f"DNS failure for {url}, not retrying: {e}")
                    raise
                last_error = e
                if attempt == self.max_retries:
                    break
                backoff_attempt += 1
                delay = compute_backoff(backoff_attempt, self.base_delay_ms, self.max_delay_ms)
                logger.info(f"HTTP attempt {attempt} for {url} failed ({e.kind}), retrying in {delay}ms")
                await self._sleep(delay / 1000)
                continue

            fetch_attempts_total.labels(tier="http", outcome=str(response.status)).inc()
            last_response = response

            if response.status == 429:
                if attempt == self.max_retries:
                    break
                delay = parse_retry_after(response.headers.get("retry-after"))
                if delay is None:
                    delay = compute_backoff(backoff_attempt + 1, self.base_delay_ms, self.max_delay_ms)
                delay = min(delay, MAX_RETRY_AFTER_MS)
                logger.info(f"Rate limited on {url}, waiting {delay}ms before retry")
                await self._sleep(delay / 1000)
                continue

            if response.status in RETRYABLE_STATUSES:
                if attempt == self.max_retries:
                    break
                backoff_attempt += 1
                delay = compute_backoff(backoff_attempt, self.base_delay_ms, self.max_delay_ms)
                logger.info(f"HTTP {response.status} from {url}, retrying in {delay}ms")
                await self._sleep(delay / 1000)
                continue

            return response

        if last_response is not None:
            return last_response
        raise last_error or NetworkError(f"No response from {url}", kind="connection")

    async def _request(
        self,
        url: str,
        profile: BrowserProfile,
        headers: dict[str, str] | None,
        timeout_ms: int,
        host: str,
    ) -> FetchResponse:
        timeout_seconds = timeout_ms / 1000
        request_headers = dict(profile.headers)
        if headers:
            request_headers.update(headers)
        cookie_header = self.cookie_jar.header(host)
        if cookie_header:
            request_headers["Cookie"] = cookie_header

        client = self._get_client()
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.get(url, headers=request_headers, timeout=timeout_seconds),
                timeout=timeout_seconds,
            )
        except (httpx.TransportError, asyncio.TimeoutError) as e:
            kind = classify_network_error(e)
            raise NetworkError(f"{type(e).__name__}: {e}", kind=kind) from e

        # The jar above is the single source of truth for cookies
        self.cookie_jar.update(host, dict(response.cookies))
        client.cookies.clear()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            f"HTTP {url} -> {response.status_code} ({len(response.text)} chars, {elapsed_ms}ms, "
            f"profile={profile.name})"
        )
        return FetchResponse(
            status=response.status_code,
            body=response.text,
            headers={k.lower(): v for k, v in response.headers.items()},
            url=str(response.url),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._loop_id = None
