"""Bounded challenge-solving loop for vendor interstitials.

Three escalating attempts (passive, active, aggressive). After each one the
page is polled every CHALLENGE_CHECK_INTERVAL_MS until that attempt's share
of the overall ceiling runs out. Two independent signals end the loop early:

- markers gone: no challenge fragment left in the DOM, and the page has real
  structure (nav/header/footer, or more than a handful of links);
- content volume: body text and link count both past a high absolute bar.
  This one wins even if markers are still there, since some vendors leave
  inert script tags behind after the visitor passes.

When all attempts fail there is one last-resort recovery (reload, then click
the first few visible clickable elements) before ChallengeUnresolved.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

from threatharvest.config import settings
from threatharvest.core.exceptions import ChallengeUnresolved
from threatharvest.core.metrics import challenge_outcomes_total
from threatharvest.schemas.scrape import BrowserProfile, ProtectionInfo

logger = logging.getLogger(__name__)

# Lowercased fragments that only appear on interstitials
CHALLENGE_MARKERS = [
    "captcha-delivery.com",
    "please enable js and disable any ad blocker",
    "checking your browser",
    "just a moment",
    "ddos protection",
    "challenges.cloudflare.com",
    "challenge-platform",
    "challenge-running",
    "_incapsula_resource",
    "window._icdt",
    "verify you are human",
    "press & hold",
]

_PAGE_STATE_JS = """
(markers) => {
    const html = (document.documentElement && document.documentElement.innerHTML || '').toLowerCase();
    const text = (document.body && document.body.innerText) || '';
    const title = (document.title || '').toLowerCase();
    const found = markers.filter(m => html.includes(m) || title.includes(m));
    return {
        markers: found,
        textLength: text.trim().length,
        linkCount: document.querySelectorAll('a[href]').length,
        hasStructure: !!document.querySelector('nav, header, footer'),
    };
}
"""

_PASSIVE_EVENTS_JS = """
() => {
    window.dispatchEvent(new Event('focus'));
    document.dispatchEvent(new Event('visibilitychange'));
    const x = Math.floor(Math.random() * window.innerWidth);
    const y = Math.floor(Math.random() * window.innerHeight);
    document.dispatchEvent(new MouseEvent('mousemove', { clientX: x, clientY: y, bubbles: true }));
    window.dispatchEvent(new Event('blur'));
    window.dispatchEvent(new Event('focus'));
}
"""

# Fires the full event set on every interactive element. Anchors get no
# synthetic click so the page doesn't navigate away mid-challenge.
_AGGRESSIVE_EVENTS_JS = """
(limit) => {
    const els = Array.from(document.querySelectorAll(
        'input, button, select, textarea, a, [role="button"], [tabindex]'
    )).slice(0, limit);
    const fire = (el, type) => el.dispatchEvent(new MouseEvent(type, { bubbles: true, cancelable: true }));
    let count = 0;
    for (const el of els) {
        try {
            el.dispatchEvent(new FocusEvent('focus'));
            fire(el, 'mousedown');
            fire(el, 'mouseup');
            if (el.tagName !== 'A') fire(el, 'click');
            el.dispatchEvent(new FocusEvent('blur'));
            count++;
        } catch (e) {}
    }
    window.scrollBy(0, Math.floor(window.innerHeight / 3));
    window.dispatchEvent(new Event('scroll'));
    return count;
}
"""

_VISIBLE_CLICKABLES = 'button:visible, [role="button"]:visible, input[type="submit"]:visible, input[type="checkbox"]:visible'


@dataclass
class PageState:
    markers: list[str]
    text_length: int
    link_count: int
    has_structure: bool

    @classmethod
    def from_js(cls, data: dict) -> "PageState":
        return cls(
            markers=list(data.get("markers") or []),
            text_length=int(data.get("textLength") or 0),
            link_count=int(data.get("linkCount") or 0),
            has_structure=bool(data.get("hasStructure")),
        )


class ChallengeSolver:
    def __init__(
        self,
        max_attempts: int | None = None,
        check_interval_ms: int | None = None,
        timeout_ms: int | None = None,
        content_text_threshold: int | None = None,
        content_link_threshold: int | None = None,
        structure_link_threshold: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts or settings.CHALLENGE_MAX_ATTEMPTS
        self.check_interval_ms = check_interval_ms or settings.CHALLENGE_CHECK_INTERVAL_MS
        self.timeout_ms = timeout_ms or settings.CHALLENGE_TIMEOUT_MS
        self.content_text_threshold = content_text_threshold or settings.CHALLENGE_CONTENT_TEXT_THRESHOLD
        self.content_link_threshold = content_link_threshold or settings.CHALLENGE_CONTENT_LINK_THRESHOLD
        self.structure_link_threshold = structure_link_threshold or settings.CHALLENGE_STRUCTURE_LINK_THRESHOLD
        self._clock = clock
        self._strategies = [self._passive, self._active, self._aggressive]

    # ------------------------------------------------------------------
    # Completion signals
    # ------------------------------------------------------------------

    async def page_state(self, page) -> PageState:
        data = await page.evaluate(_PAGE_STATE_JS, CHALLENGE_MARKERS)
        return PageState.from_js(data or {})

    def markers_cleared(self, state: PageState) -> bool:
        if state.markers:
            return False
        return state.has_structure or state.link_count > self.structure_link_threshold

    def content_overwhelming(self, state: PageState) -> bool:
        return (
            state.text_length >= self.content_text_threshold
            and state.link_count >= self.content_link_threshold
        )

    def is_resolved(self, state: PageState) -> bool:
        return self.content_overwhelming(state) or self.markers_cleared(state)

    async def is_challenge_present(self, page) -> bool:
        try:
            state = await self.page_state(page)
        except Exception as e:
            logger.debug(f"Challenge check failed: {e}")
            return False
        # A sparse page without interstitial fragments is just a small page
        return bool(state.markers) and not self.content_overwhelming(state)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def solve(
        self,
        page,
        profile: BrowserProfile | None = None,
        protection: ProtectionInfo | None = None,
    ) -> int:
        """Run the attempt loop. Returns the attempt number that cleared it (0 = recovery).

        Raises ChallengeUnresolved when nothing works.
        """
        deadline = self._clock() + self.timeout_ms / 1000
        attempts = self._strategies[: self.max_attempts]

        for index, strategy in enumerate(attempts, start=1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            logger.info(f"Challenge attempt {index}/{len(attempts)} ({strategy.__name__.strip('_')})")
            try:
                await strategy(page, profile)
            except Exception as e:
                logger.debug(f"Challenge attempt {index} interaction error: {e}")

            window = remaining / (len(attempts) - index + 1)
            if await self._poll(page, min(deadline, self._clock() + window)):
                logger.info(f"Challenge cleared on attempt {index}")
                challenge_outcomes_total.labels(outcome=f"attempt_{index}").inc()
                return index

        if await self._last_resort(page):
            logger.info("Challenge cleared by reload + blind click")
            challenge_outcomes_total.labels(outcome="recovery").inc()
            return 0

        challenge_outcomes_total.labels(outcome="unresolved").inc()
        logger.warning(f"Challenge unresolved after {len(attempts)} attempts")
        raise ChallengeUnresolved(len(attempts), protection)

    async def _poll(self, page, until: float) -> bool:
        interval_s = self.check_interval_ms / 1000
        # Bounded by count as well as time so a stalled clock can't spin forever
        polls = max(1, int(self.timeout_ms / self.check_interval_ms))
        for _ in range(polls):
            await page.wait_for_timeout(self.check_interval_ms)
            try:
                state = await self.page_state(page)
            except Exception as e:
                # Evaluating during a navigation throws; the next poll sees the new page
                logger.debug(f"Page state probe failed: {e}")
                state = None
            if state is not None and self.is_resolved(state):
                return True
            if self._clock() + interval_s > until:
                break
        return False

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _passive(self, page, profile: BrowserProfile | None) -> None:
        await page.evaluate(_PASSIVE_EVENTS_JS)
        await page.mouse.wheel(0, random.randint(80, 240))
        try:
            await page.wait_for_load_state("networkidle", timeout=min(5000, self.check_interval_ms * 2))
        except Exception:
            pass

    async def _active(self, page, profile: BrowserProfile | None) -> None:
        width = profile.viewport.width if profile else 1280
        height = profile.viewport.height if profile else 720

        x, y = random.uniform(0, width), random.uniform(0, height)
        await page.mouse.move(x, y)
        for _ in range(random.randint(3, 5)):
            tx, ty = random.uniform(0, width), random.uniform(0, height)
            steps = random.randint(12, 20)
            for i in range(1, steps + 1):
                t = i / steps
                ease = t * t * (3 - 2 * t)  # smoothstep
                await page.mouse.move(
                    x + (tx - x) * ease + random.uniform(-2, 2),
                    y + (ty - y) * ease + random.uniform(-2, 2),
                )
            x, y = tx, ty
            await page.wait_for_timeout(random.randint(50, 150))

        for _ in range(2):
            await page.keyboard.press("Tab")
            await page.wait_for_timeout(random.randint(80, 200))

        if profile is not None and profile.is_mobile:
            for _ in range(2):
                await page.touchscreen.tap(random.uniform(20, width - 20), random.uniform(80, height - 80))
                await page.wait_for_timeout(random.randint(150, 400))

    async def _aggressive(self, page, profile: BrowserProfile | None) -> None:
        fired = await page.evaluate(_AGGRESSIVE_EVENTS_JS, 60)
        logger.debug(f"Aggressive attempt fired events on {fired} elements")
        await page.mouse.wheel(0, random.randint(300, 600))

    async def _last_resort(self, page) -> bool:
        try:
            await page.reload(wait_until="domcontentloaded", timeout=self.timeout_ms)
            clickables = await page.query_selector_all(_VISIBLE_CLICKABLES)
            for el in clickables[:3]:
                try:
                    await el.click(timeout=1000)
                    await page.wait_for_timeout(random.randint(200, 500))
                except Exception:
                    continue
            await page.wait_for_timeout(self.check_interval_ms)
            return self.is_resolved(await self.page_state(page))
        except Exception as e:
            logger.debug(f"Last-resort recovery failed: {e}")
            return False
