import asyncio
import logging
import time
from dataclasses import dataclass
from urllib.parse import urlparse

from threatharvest.config import settings
from threatharvest.core.exceptions import (
    ChallengeUnresolved,
    ExtractionLowConfidence,
    NetworkError,
    OracleError,
    ProtectionDetected,
    ScraperError,
    ValidationError,
)
from threatharvest.core.metrics import (
    protection_detected_total,
    scrape_duration_seconds,
    scrape_requests_total,
)
from threatharvest.core.scrape_context import scrape_scope
from threatharvest.schemas.scrape import (
    ArticleContent,
    ProtectionInfo,
    ProtectionType,
    ScrapeMethod,
    ScrapeResult,
    SelectorConfig,
    Target,
)
from threatharvest.services.browser import BrowserDriver
from threatharvest.services.fingerprints import FingerprintPool
from threatharvest.services.http_client import HTTPClient
from threatharvest.services.link_extractor import extract_article_links
from threatharvest.services.method_selector import MethodSelector
from threatharvest.services.oracle import SelectorOracle, default_oracle
from threatharvest.services.protection import (
    GENERIC_PROTECTION,
    ResponseMeta,
    detect,
    is_content_valid,
    looks_blocked,
    requires_browser,
)
from threatharvest.services.selector_cache import ArticleCache, DomainSelectorCache, get_domain
from threatharvest.services.selector_extraction import extract_article, extract_with_fallback
from threatharvest.services.tls_client import TLSClient

logger = logging.getLogger(__name__)

# Protections worth one TLS-fingerprinted request before paying for a browser.
# Everything else needs JavaScript execution to clear.
TLS_FIRST_PROTECTIONS = frozenset(
    {ProtectionType.DATADOME, ProtectionType.RATE_LIMIT, ProtectionType.COOKIE_CHECK}
)

DYNAMIC_CONTENT = ProtectionInfo(
    has_protection=True,
    type=ProtectionType.GENERIC,
    confidence=0.7,
    details="Thin or script-rendered content, needs a real browser",
)


@dataclass
class Fetched:
    html: str
    status: int
    final_url: str
    method: ScrapeMethod
    protection: ProtectionInfo | None = None


def validate_url(url: str) -> None:
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError as e:
        # Unbalanced IPv6 brackets, bad ports
        raise ValidationError(f"Invalid URL: {url!r} ({e})") from e
    if parsed.scheme not in ("http", "https") or not hostname:
        raise ValidationError(f"Invalid URL: {url!r}")


class Orchestrator:
    """Turns a Target into a ScrapeResult.

    Flow: article cache -> method decision -> fetch with escalation (HTTP,
    then TLS-fingerprinted HTTP for DataDome-style blocks, then headless
    browser) -> cached domain selectors, or discovery when they are missing
    or under-perform -> generic fallback -> cache writes. Nothing raised
    below this class escapes `scrape()`.
    """

    def __init__(
        self,
        http_client: HTTPClient | None = None,
        tls_client: TLSClient | None = None,
        browser: BrowserDriver | None = None,
        fingerprints: FingerprintPool | None = None,
        domain_cache: DomainSelectorCache | None = None,
        article_cache: ArticleCache | None = None,
        method_selector: MethodSelector | None = None,
        oracle: SelectorOracle | None = None,
        cache_threshold: float | None = None,
        max_concurrency: int | None = None,
    ):
        self.fingerprints = fingerprints or FingerprintPool()
        self.http = http_client or HTTPClient(fingerprints=self.fingerprints)
        self.tls = tls_client or TLSClient()
        self.browser = browser or BrowserDriver(fingerprints=self.fingerprints)
        self.domain_cache = domain_cache or DomainSelectorCache()
        self.article_cache = article_cache or ArticleCache()
        self.method_selector = method_selector or MethodSelector()
        self.oracle = oracle or default_oracle()
        self.cache_threshold = (
            cache_threshold if cache_threshold is not None else settings.CACHE_CONFIDENCE_THRESHOLD
        )
        self.max_concurrency = max_concurrency or settings.MAX_CONCURRENT_SCRAPES
        # One selector discovery per domain at a time
        self._discovery_locks: dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self.http.close()
        await self.tls.close()
        await self.browser.pool.shutdown()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def scrape(self, target: Target | str) -> ScrapeResult:
        if isinstance(target, str):
            target = Target(url=target)

        cached = self.article_cache.get(target.url)
        if cached is not None:
            logger.debug(f"Article cache hit: {target.url}")
            scrape_requests_total.labels(status="cache_hit").inc()
            return cached

        with scrape_scope():
            start = time.monotonic()
            try:
                result = await self._run(target, start)
            except ChallengeUnresolved as e:
                result = self._failed(target, e, start, ScrapeMethod.BROWSER, protection=e.protection)
            except ProtectionDetected as e:
                result = self._failed(target, e, start, status_code=e.status_code, protection=e.protection)
            except NetworkError as e:
                result = self._failed(target, e, start, status_code=e.status_code)
            except ScraperError as e:
                result = self._failed(target, e, start)
            except Exception as e:
                logger.error(f"Unexpected scrape failure for {target.url}: {type(e).__name__}: {e}", exc_info=True)
                result = ScrapeResult.failed(
                    target.url,
                    error="internal_error",
                    response_time_ms=self._elapsed_ms(start),
                )

            self.article_cache.set(target.url, result)
            scrape_requests_total.labels(status="success" if result.success else "failure").inc()
            scrape_duration_seconds.labels(method=result.method.value).observe(result.response_time_ms / 1000)
            logger.info(
                f"Scrape {target.url}: success={result.success} method={result.method.value} "
                f"status={result.status_code} time={result.response_time_ms}ms"
                + (f" error={result.error}" if result.error else "")
            )
            return result

    async def scrape_batch(self, urls: list[str | Target]) -> list[ScrapeResult]:
        """Scrape many URLs with bounded concurrency.

        Results line up with `urls` by index; completion order is not FIFO.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _worker(target: str | Target) -> ScrapeResult:
            async with semaphore:
                return await self.scrape(target)

        results = await asyncio.gather(*[_worker(u) for u in urls])
        ok = sum(1 for r in results if r.success)
        logger.info(f"Batch finished: {ok}/{len(results)} succeeded")
        return list(results)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, target: Target, start: float) -> ScrapeResult:
        validate_url(target.url)
        # Listing pages are consumed for their links, not extracted
        listing = target.is_source_url or not target.is_article_page
        cached_selectors = None if listing else self.domain_cache.get(target.url)

        method = self.method_selector.decide(target)
        if method == ScrapeMethod.BROWSER:
            logger.info(f"Browser-first for {target.url}")
            fetched = await self._fetch_browser(target)
        else:
            try:
                fetched = await self._fetch_http(target)
            except (ProtectionDetected, NetworkError) as e:
                fetched = await self._escalate(target, e)

        if listing:
            links = extract_article_links(
                fetched.html,
                fetched.final_url,
                include_patterns=target.include_patterns,
                exclude_patterns=target.exclude_patterns,
                max_links=target.max_links,
            )
            return self._success(target, fetched, None, start, article_links=links)

        if cached_selectors is not None:
            article = extract_article(fetched.html, cached_selectors)
            if article.confidence >= self.cache_threshold:
                self.domain_cache.set(target.url, cached_selectors, True)
                logger.info(f"Cached selectors worked for {target.url} ({article.confidence:.2f})")
                return self._success(target, fetched, article, start)
            logger.info(f"Cached selectors under-performed for {target.url} ({article.confidence:.2f})")
            self.domain_cache.set(target.url, cached_selectors, False)

        article = await self._extract(target, fetched, tried=cached_selectors)
        if not article.title and not article.content:
            raise ExtractionLowConfidence(article.confidence)
        return self._success(target, fetched, article, start)

    async def _escalate(self, target: Target, error: ScraperError) -> Fetched:
        if isinstance(error, NetworkError):
            if not error.retryable or error.kind == "http":
                raise error
            logger.info(f"HTTP tier failed for {target.url} ({error.kind}), escalating to browser")
            return await self._fetch_browser(target)

        protection = error.protection
        protection_detected_total.labels(type=protection.type.value).inc()
        logger.info(f"{protection.type.value} on {target.url} (HTTP {error.status_code}), escalating")
        if protection.type in TLS_FIRST_PROTECTIONS:
            fetched = await self._fetch_tls(target, protection)
            if fetched is not None:
                return fetched
        return await self._fetch_browser(target, protection)

    def _classify(self, target: Target, status: int, body: str, headers: dict[str, str]) -> ProtectionInfo:
        """Raise ProtectionDetected/NetworkError unless the body is usable. Returns the advisory protection."""
        protection = detect(body, ResponseMeta(status, headers))
        if status == 403 and not protection.has_protection:
            protection = GENERIC_PROTECTION

        ok = 200 <= status < 300 and bool(body)
        blocked = looks_blocked(body)
        if protection.has_protection and (not ok or blocked or not is_content_valid(body)):
            raise ProtectionDetected(protection, status_code=status, html=body)
        if not ok:
            raise NetworkError(f"HTTP {status} for {target.url}", kind="http", status_code=status)
        if blocked or requires_browser(body, target.is_article_page):
            raise ProtectionDetected(DYNAMIC_CONTENT, status_code=status, html=body)
        return protection

    async def _fetch_http(self, target: Target) -> Fetched:
        response = await self.http.fetch(
            target.url,
            headers=target.custom_headers,
            timeout_ms=target.timeout_ms,
        )
        protection = self._classify(target, response.status, response.body, response.headers)
        return Fetched(
            html=response.body,
            status=response.status,
            final_url=response.url or target.url,
            method=ScrapeMethod.HTTP,
            protection=protection if protection.has_protection else None,
        )

    async def _fetch_tls(self, target: Target, protection: ProtectionInfo) -> Fetched | None:
        profile = self.fingerprints.random_profile()
        logger.info(f"TLS-fingerprinted retry for {target.url} (profile={profile.name})")
        response = await self.tls.fetch(
            target.url,
            profile,
            headers=target.custom_headers,
            timeout_ms=target.timeout_ms or settings.TLS_TIMEOUT,
        )
        if response.error:
            return None
        try:
            self._classify(target, response.status, response.body, response.headers)
        except (ProtectionDetected, NetworkError) as e:
            logger.info(f"TLS tier did not get through for {target.url}: {e}")
            return None
        return Fetched(
            html=response.body,
            status=response.status,
            final_url=response.url or target.url,
            method=ScrapeMethod.HTTP,
            protection=protection,
        )

    async def _fetch_browser(self, target: Target, protection: ProtectionInfo | None = None) -> Fetched:
        try:
            result = await self.browser.scrape(
                target.url,
                timeout_ms=target.timeout_ms,
                headers=target.custom_headers,
                is_article_page=target.is_article_page,
            )
        except ChallengeUnresolved as e:
            if e.protection is None and protection is not None:
                e.protection = protection
            raise
        if not result.html:
            raise NetworkError(f"Browser returned an empty document for {target.url}", kind="http",
                               status_code=result.status_code)
        # 0 means the driver saw no main-frame response; trust the document then
        if result.status_code and not 200 <= result.status_code < 300:
            raise NetworkError(f"HTTP {result.status_code} for {target.url} (browser)", kind="http",
                               status_code=result.status_code)
        return Fetched(
            html=result.html,
            status=result.status_code,
            final_url=result.final_url or target.url,
            method=ScrapeMethod.BROWSER,
            protection=protection or result.protection_detected,
        )

    async def _discover(self, html: str, url: str) -> SelectorConfig:
        """Call the oracle under its deadline. Anything it does wrong becomes OracleError."""
        try:
            selectors = await asyncio.wait_for(
                self.oracle.discover_selectors(html, url),
                timeout=settings.ORACLE_TIMEOUT,
            )
        except (asyncio.TimeoutError, OracleError):
            raise
        except Exception as e:
            raise OracleError(f"{type(e).__name__}: {e}") from e
        if not isinstance(selectors, SelectorConfig):
            raise OracleError(f"Oracle returned {type(selectors).__name__}, not SelectorConfig")
        return selectors

    async def _extract(
        self,
        target: Target,
        fetched: Fetched,
        tried: SelectorConfig | None = None,
    ) -> ArticleContent:
        lock = self._discovery_locks.setdefault(get_domain(target.url), asyncio.Lock())
        async with lock:
            # Another scrape of this domain may have cached selectors while we waited
            fresh = self.domain_cache.get(target.url)
            if fresh is not None and fresh != tried:
                article = extract_article(fetched.html, fresh)
                if article.confidence >= self.cache_threshold:
                    self.domain_cache.set(target.url, fresh, True)
                    logger.info(f"Reused selectors discovered concurrently for {target.url}")
                    return article
            return await self._discover_and_extract(target, fetched)

    async def _discover_and_extract(self, target: Target, fetched: Fetched) -> ArticleContent:
        selectors: SelectorConfig | None = None
        try:
            selectors = await self._discover(fetched.html, fetched.final_url)
            article = extract_article(fetched.html, selectors)
            if article.confidence < self.cache_threshold:
                raise ExtractionLowConfidence(article.confidence)
            self.domain_cache.set(target.url, selectors, True)
            logger.info(f"Discovered selectors cached for {target.url} ({article.confidence:.2f})")
            return article
        except asyncio.TimeoutError:
            logger.warning(f"Selector discovery timed out for {target.url}, using generic selectors")
        except OracleError as e:
            logger.warning(f"Selector discovery failed for {target.url}: {e}, using generic selectors")
        except ExtractionLowConfidence as e:
            logger.info(f"{e} for {target.url}, trying generic selectors")
        return extract_with_fallback(fetched.html, selectors, self.cache_threshold)

    # ------------------------------------------------------------------
    # Result builders
    # ------------------------------------------------------------------

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    def _success(
        self,
        target: Target,
        fetched: Fetched,
        article: ArticleContent | None,
        start: float,
        article_links: list[str] | None = None,
    ) -> ScrapeResult:
        return ScrapeResult(
            url=target.url,
            html=fetched.html,
            success=True,
            method=fetched.method,
            response_time_ms=self._elapsed_ms(start),
            status_code=fetched.status,
            final_url=fetched.final_url,
            protection_detected=fetched.protection,
            article=article,
            article_links=article_links or [],
        )

    def _failed(
        self,
        target: Target,
        error: ScraperError,
        start: float,
        method: ScrapeMethod = ScrapeMethod.HTTP,
        status_code: int = 0,
        protection: ProtectionInfo | None = None,
    ) -> ScrapeResult:
        logger.warning(f"Scrape failed for {target.url}: {error.reason}: {error}")
        return ScrapeResult.failed(
            target.url,
            error=error.reason,
            method=method,
            response_time_ms=self._elapsed_ms(start),
            status_code=status_code,
            protection=protection,
        )
