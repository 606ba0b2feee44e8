"""In-process selector and article memoization.

DomainSelectorCache remembers which selectors worked for each domain so the
next article from that site can skip structure discovery. Entries expire by
age (TTL) and by accumulated failures; both are checked on every `get`, and a
stale entry is deleted rather than merely hidden.

ArticleCache is a short-TTL map keyed by exact URL that makes repeat scrapes
of the same article within one ingestion run free.

Both are plain objects owned by one Orchestrator. Writes are upsert-by-key
with no cross-key locking: two workers discovering the same domain at once
both write and the last one wins.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlparse

from threatharvest.config import settings
from threatharvest.core.metrics import selector_cache_events_total
from threatharvest.schemas.scrape import ScrapeResult, SelectorConfig

logger = logging.getLogger(__name__)


def get_domain(url: str) -> str:
    """Bare hostname from a URL (strips www.)."""
    try:
        domain = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


@dataclass
class DomainCacheEntry:
    domain: str
    selectors: SelectorConfig
    last_updated: float
    success_count: int = 0
    failure_count: int = 0


class DomainSelectorCache:
    def __init__(
        self,
        ttl_seconds: int | None = None,
        max_failures: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.DOMAIN_CACHE_TTL_SECONDS
        self.max_failures = max_failures if max_failures is not None else settings.DOMAIN_CACHE_MAX_FAILURES
        self._clock = clock
        self._entries: dict[str, DomainCacheEntry] = {}

    def get(self, url: str) -> SelectorConfig | None:
        domain = get_domain(url)
        entry = self._entries.get(domain)
        if entry is None:
            selector_cache_events_total.labels(cache="domain", event="miss").inc()
            return None

        if self._clock() - entry.last_updated > self.ttl_seconds:
            logger.debug(f"Selector cache entry for {domain} expired")
            del self._entries[domain]
            selector_cache_events_total.labels(cache="domain", event="expired").inc()
            return None

        if entry.failure_count >= self.max_failures:
            logger.info(f"Selector cache invalidated for {domain} after {entry.failure_count} failures")
            del self._entries[domain]
            selector_cache_events_total.labels(cache="domain", event="evicted").inc()
            return None

        selector_cache_events_total.labels(cache="domain", event="hit").inc()
        return entry.selectors

    def set(self, url: str, selectors: SelectorConfig, success: bool) -> None:
        """Record an attempt.

        Success replaces the selectors and refreshes the timestamp. Failure
        only bumps the failure count; the old selectors stay, since a flaky
        domain may recover before MAX_FAILURES.
        """
        domain = get_domain(url)
        if not domain:
            return
        now = self._clock()
        entry = self._entries.get(domain)

        if entry is None:
            entry = DomainCacheEntry(domain=domain, selectors=selectors, last_updated=now)
            self._entries[domain] = entry
            if success:
                entry.success_count = 1
            else:
                entry.failure_count = 1
        elif success:
            entry.selectors = selectors
            entry.last_updated = now
            entry.success_count += 1
        else:
            entry.failure_count += 1

        logger.debug(
            f"Selector cache {domain}: {entry.success_count} successes, {entry.failure_count} failures"
        )

    def invalidate(self, url: str) -> None:
        self._entries.pop(get_domain(url), None)

    def entry(self, url: str) -> DomainCacheEntry | None:
        """Raw entry without expiry checks."""
        return self._entries.get(get_domain(url))

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "successes": sum(e.success_count for e in self._entries.values()),
            "failures": sum(e.failure_count for e in self._entries.values()),
        }

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class ArticleCacheEntry:
    url: str
    result: ScrapeResult
    cached_at: float


class ArticleCache:
    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ARTICLE_CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: dict[str, ArticleCacheEntry] = {}

    def get(self, url: str) -> ScrapeResult | None:
        entry = self._entries.get(url)
        if entry is None:
            selector_cache_events_total.labels(cache="article", event="miss").inc()
            return None
        if self._clock() - entry.cached_at > self.ttl_seconds:
            del self._entries[url]
            selector_cache_events_total.labels(cache="article", event="expired").inc()
            return None
        selector_cache_events_total.labels(cache="article", event="hit").inc()
        return entry.result

    def set(self, url: str, result: ScrapeResult) -> None:
        self._entries[url] = ArticleCacheEntry(url=url, result=result, cached_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
