"""TLS-fingerprinted HTTP client.

Sends the request over curl_cffi with the profile's JA3 string so the
ClientHello looks like the browser named in the User-Agent, not like
OpenSSL/Python. Used as the cheap escalation when the plain HTTP tier gets
fingerprinted (DataDome in particular).
"""

import asyncio
import logging
import time
from typing import Any

from curl_cffi.requests import AsyncSession

from threatharvest.config import settings
from threatharvest.core.metrics import fetch_attempts_total
from threatharvest.schemas.scrape import BrowserProfile, FetchResponse

logger = logging.getLogger(__name__)


class TLSClient:
    """Pooled curl_cffi sessions, one per profile name."""

    def __init__(self, default_timeout_ms: int | None = None):
        self._default_timeout_ms = default_timeout_ms or settings.TLS_TIMEOUT
        self._sessions: dict[str, AsyncSession] = {}
        self._loop_id: int | None = None

    def _get_session(self, profile: BrowserProfile) -> AsyncSession:
        # Sessions are bound to the loop they were created on
        current_loop_id = id(asyncio.get_running_loop())
        if self._loop_id != current_loop_id:
            self._sessions.clear()
            self._loop_id = current_loop_id
        if profile.name not in self._sessions:
            self._sessions[profile.name] = AsyncSession(impersonate=profile.impersonate)
        return self._sessions[profile.name]

    async def fetch(
        self,
        url: str,
        profile: BrowserProfile,
        headers: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        proxy: str | None = None,
    ) -> FetchResponse:
        """Single request under `profile`'s JA3. Never raises; failures come back in `error`."""
        timeout_ms = timeout_ms or self._default_timeout_ms
        timeout_seconds = timeout_ms / 1000
        request_headers = dict(profile.headers)
        if headers:
            request_headers.update(headers)

        kwargs: dict[str, Any] = dict(
            headers=request_headers,
            timeout=timeout_seconds,
            allow_redirects=True,
            ja3=profile.ja3_fingerprint,
        )
        start = time.monotonic()
        try:
            if proxy:
                # Proxied requests use fresh sessions
                async with AsyncSession(impersonate=profile.impersonate) as session:
                    response = await asyncio.wait_for(
                        session.get(url, proxy=proxy, **kwargs), timeout=timeout_seconds
                    )
            else:
                session = self._get_session(profile)
                response = await asyncio.wait_for(session.get(url, **kwargs), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            fetch_attempts_total.labels(tier="tls", outcome="timeout").inc()
            logger.warning(f"TLS fetch timed out after {timeout_ms}ms: {url}")
            return FetchResponse(url=url, error="timeout")
        except Exception as e:
            fetch_attempts_total.labels(tier="tls", outcome="error").inc()
            logger.warning(f"TLS fetch failed ({profile.name}) for {url}: {type(e).__name__}: {e}")
            return FetchResponse(url=url, error=f"{type(e).__name__}: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        resp_headers = {k.lower(): v for k, v in response.headers.items()}
        fetch_attempts_total.labels(tier="tls", outcome=str(response.status_code)).inc()
        logger.info(
            f"TLS fetch {url} -> {response.status_code} "
            f"({len(response.text or '')} chars, {elapsed_ms}ms, profile={profile.name})"
        )
        return FetchResponse(
            status=response.status_code,
            body=response.text or "",
            headers=resp_headers,
            url=str(response.url or url),
        )

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            try:
                await session.close()
            except Exception as e:
                logger.debug(f"curl_cffi session close failed: {e}")
        self._sessions.clear()
        self._loop_id = None
