import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from playwright.async_api import async_playwright, Browser, BrowserContext, Page

from threatharvest.config import settings
from threatharvest.core.exceptions import BrowserUnavailableError, NetworkError
from threatharvest.core.metrics import active_browser_contexts, fetch_attempts_total
from threatharvest.schemas.scrape import BrowserProfile, ScrapeMethod, ScrapeResult
from threatharvest.services.challenge import ChallengeSolver
from threatharvest.services.fingerprints import FingerprintPool
from threatharvest.services.protection import ResponseMeta, detect, looks_blocked
from threatharvest.services.stealth import build_overrides, render_init_script

logger = logging.getLogger(__name__)

GOOGLE_REFERRERS = [
    "https://www.google.com/",
    "https://www.google.com/search?q=",
    "https://www.google.co.uk/",
]

COOKIE_ACCEPT_SELECTORS = [
    "#onetrust-accept-btn-handler",  # OneTrust (common on news sites)
    "#cookie-consent-accept",
    ".fc-cta-consent",  # Google Funding Choices
    "[aria-label*='Accept']",
    "button:has-text('Accept')",
    "button:has-text('Accept All')",
    "button:has-text('I Agree')",
    "button:has-text('Got it')",
]


def _get_domain(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


async def try_accept_cookies(page: Page) -> None:
    """Best-effort click on cookie consent buttons."""
    for selector in COOKIE_ACCEPT_SELECTORS:
        try:
            el = await page.query_selector(selector)
            if el and await el.is_visible():
                await el.click()
                await page.wait_for_timeout(random.randint(100, 300))
                return
        except Exception:
            continue


async def human_like_actions(page: Page, profile: BrowserProfile) -> None:
    """Mouse drift and a couple of scrolls after load."""
    vp = profile.viewport
    await page.mouse.move(
        random.randint(50, max(60, vp.width - 50)),
        random.randint(50, max(60, vp.height - 50)),
        steps=random.randint(8, 15),
    )
    for _ in range(random.randint(1, 3)):
        await page.mouse.wheel(0, random.randint(200, 500))
        await page.wait_for_timeout(random.randint(200, 400))


class BrowserPool:
    """Chromium (default) and lazily-launched Firefox behind one concurrency limit.

    Each page gets its own context built from a BrowserProfile, with the
    profile's stealth overrides installed as an init script. Cookies are
    kept per domain across contexts.
    """

    _CHROMIUM_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--disable-extensions",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-features=IsolateOrigins,site-per-process,TranslateUI",
        "--disable-gpu",
        "--renderer-process-limit=2",
    ]

    def __init__(self, pool_size: int | None = None, headless: bool | None = None):
        self._pool_size = pool_size or settings.BROWSER_POOL_SIZE
        self._headless = settings.BROWSER_HEADLESS if headless is None else headless
        self._playwright = None
        self._chromium: Browser | None = None
        self._firefox: Browser | None = None
        self._slots: asyncio.Semaphore | None = None
        # Locks and semaphores are bound to the loop that created them
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock: asyncio.Lock | None = None
        self._domain_cookies: dict[str, list[dict]] = {}

    def _ready(self) -> bool:
        return (
            self._loop is asyncio.get_running_loop()
            and self._chromium is not None
            and self._chromium.is_connected()
        )

    def _launch_lock(self) -> asyncio.Lock:
        if self._lock is None or self._loop is not asyncio.get_running_loop():
            self._lock = asyncio.Lock()
        return self._lock

    async def initialize(self):
        if self._ready():
            return
        async with self._launch_lock():
            if self._ready():
                return
            if self._chromium is not None:
                logger.warning("Chromium gone or running on a stale loop, relaunching browser pool")
            self._loop = asyncio.get_running_loop()
            self._slots = asyncio.Semaphore(self._pool_size)
            self._firefox = None
            try:
                self._playwright = await async_playwright().start()
                self._chromium = await self._playwright.chromium.launch(
                    headless=self._headless, args=self._CHROMIUM_ARGS
                )
            except Exception as e:
                self._chromium = None
                raise BrowserUnavailableError(f"Chromium launch failed: {e}") from e
            logger.info(f"Browser pool ready (slots={self._pool_size}, headless={self._headless})")

    async def _firefox_browser(self) -> Browser | None:
        """Firefox is launched on first use; None when it cannot start."""
        if self._firefox is not None and self._firefox.is_connected():
            return self._firefox
        async with self._launch_lock():
            if self._firefox is None or not self._firefox.is_connected():
                try:
                    self._firefox = await self._playwright.firefox.launch(headless=self._headless)
                    logger.info("Firefox launched for Firefox profiles")
                except Exception as e:
                    logger.warning(f"Firefox unavailable, using Chromium instead: {e}")
                    self._firefox = None
        return self._firefox

    async def shutdown(self):
        for browser in (self._firefox, self._chromium):
            if browser is not None:
                await browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._playwright = self._chromium = self._firefox = None
        self._loop = None
        logger.info("Browser pool closed")

    async def _restore_cookies(self, context: BrowserContext, url: str):
        saved = self._domain_cookies.get(_get_domain(url))
        if not saved:
            return
        try:
            await context.add_cookies(saved)
        except Exception as e:
            logger.debug(f"Could not restore cookies for {url}: {e}")

    async def _save_cookies(self, context: BrowserContext, url: str):
        cookies = await context.cookies()
        if cookies:
            self._domain_cookies[_get_domain(url)] = cookies

    def _context_kwargs(self, profile: BrowserProfile, extra_headers: dict[str, str] | None) -> dict:
        headers = {k: v for k, v in profile.headers.items() if k.lower() != "user-agent"}
        if extra_headers:
            headers.update(extra_headers)
        return dict(
            user_agent=profile.user_agent,
            viewport={"width": profile.viewport.width, "height": profile.viewport.height},
            device_scale_factor=profile.pixel_ratio,
            is_mobile=profile.is_mobile,
            has_touch=profile.is_mobile,
            locale=profile.locale,
            timezone_id=profile.timezone,
            ignore_https_errors=True,
            java_script_enabled=True,
            color_scheme="light",
            extra_http_headers=headers,
        )

    @asynccontextmanager
    async def get_page(
        self,
        profile: BrowserProfile,
        target_url: str | None = None,
        extra_headers: dict[str, str] | None = None,
        acquire_timeout: float = 30.0,
    ):
        """Yield a page whose context matches `profile`, with stealth overrides installed."""
        await self.initialize()

        browser = self._chromium
        # Firefox UA on a Chromium engine is trivially detectable
        if profile.is_firefox:
            browser = await self._firefox_browser() or self._chromium

        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=acquire_timeout)
        except asyncio.TimeoutError:
            raise BrowserUnavailableError(f"No browser slots available after {acquire_timeout:.0f}s")
        active_browser_contexts.inc()
        try:
            context: BrowserContext = await browser.new_context(**self._context_kwargs(profile, extra_headers))
            if target_url:
                await self._restore_cookies(context, target_url)
            await context.add_init_script(render_init_script(build_overrides(profile)))
            page: Page = await context.new_page()
            try:
                yield page
            finally:
                # Runs to completion even if the scrape task is cancelled
                try:
                    await asyncio.shield(self._close_page(page, context, target_url))
                except asyncio.CancelledError:
                    logger.debug(f"Cancelled while closing context for {target_url}")
        finally:
            active_browser_contexts.dec()
            self._slots.release()

    async def _close_page(self, page: Page, context: BrowserContext, target_url: str | None):
        if target_url:
            try:
                await self._save_cookies(context, target_url)
            except Exception as e:
                logger.debug(f"Could not save cookies for {target_url}: {e}")
        for closable in (page, context):
            try:
                await closable.close()
            except Exception as e:
                logger.debug(f"Close failed for {target_url}: {e}")


class BrowserDriver:
    """Full-render fetch: fingerprint, stealth, navigate, solve any challenge."""

    def __init__(
        self,
        pool: BrowserPool | None = None,
        fingerprints: FingerprintPool | None = None,
        solver: ChallengeSolver | None = None,
    ):
        self.pool = pool or BrowserPool()
        self.fingerprints = fingerprints or FingerprintPool()
        self.solver = solver or ChallengeSolver()

    async def scrape(
        self,
        url: str,
        timeout_ms: int | None = None,
        headers: dict[str, str] | None = None,
        profile: BrowserProfile | None = None,
        is_article_page: bool = True,
    ) -> ScrapeResult:
        """Render `url` in a real browser.

        Raises NetworkError on navigation failure or deadline expiry and
        ChallengeUnresolved when the challenge loop gives up. The whole call,
        challenge loop included, is bounded by navigation timeout plus the
        challenge ceiling.
        """
        timeout_ms = timeout_ms or settings.DEFAULT_TIMEOUT
        profile = profile or self.fingerprints.residential_profile()
        deadline_s = (timeout_ms + self.solver.timeout_ms) / 1000 + 10
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._scrape(url, timeout_ms, headers, profile, is_article_page, start),
                timeout=deadline_s,
            )
        except asyncio.TimeoutError:
            fetch_attempts_total.labels(tier="browser", outcome="timeout").inc()
            raise NetworkError(f"Browser scrape exceeded {deadline_s:.0f}s: {url}", kind="timeout")
        fetch_attempts_total.labels(tier="browser", outcome=str(result.status_code)).inc()
        return result

    async def _scrape(
        self,
        url: str,
        timeout_ms: int,
        headers: dict[str, str] | None,
        profile: BrowserProfile,
        is_article_page: bool,
        start: float,
    ) -> ScrapeResult:
        logger.info(f"Browser scrape {url} (profile={profile.name})")
        async with self.pool.get_page(profile, target_url=url, extra_headers=headers) as page:
            try:
                response = await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=timeout_ms,
                    referer=random.choice(GOOGLE_REFERRERS),
                )
            except Exception as e:
                kind = "timeout" if "timeout" in str(e).lower() else "connection"
                if "err_name_not_resolved" in str(e).lower():
                    kind = "dns"
                raise NetworkError(f"Navigation failed: {e}", kind=kind) from e

            status = response.status if response else 0
            resp_headers = {k.lower(): v for k, v in response.headers.items()} if response else {}
            try:
                await page.wait_for_load_state("networkidle", timeout=5000)
            except Exception:
                pass

            html = await page.content()
            protection = detect(html, ResponseMeta(status, resp_headers))
            if protection.has_protection and (
                looks_blocked(html) or await self.solver.is_challenge_present(page)
            ):
                logger.info(f"{protection.type.value} challenge on {url}, entering solver")
                await self.solver.solve(page, profile, protection)
                try:
                    await page.wait_for_load_state("domcontentloaded", timeout=5000)
                except Exception:
                    pass
                # The recorded status belongs to the interstitial, not the unlocked page
                status = 200 if status in (401, 403, 429, 503) else status

            await try_accept_cookies(page)
            await human_like_actions(page, profile)
            if not is_article_page:
                # Listing pages lazy-load their link lists
                await page.mouse.wheel(0, profile.viewport.height * 2)
                await page.wait_for_timeout(random.randint(800, 1500))

            html = await page.content()
            final_url = page.url or url

        elapsed_ms = int((time.monotonic() - start) * 1000)
        final_protection = detect(html, ResponseMeta(status, {}))
        return ScrapeResult(
            url=url,
            html=html,
            success=bool(html),
            method=ScrapeMethod.BROWSER,
            response_time_ms=elapsed_ms,
            status_code=status,
            final_url=final_url,
            protection_detected=protection if protection.has_protection else final_protection,
        )
