"""HTTP-first vs browser-first decision.

Pure lookup: explicit force_method, then the forced-browser domain list, then
the default. Adaptation lives in the caches, not here.
"""

from threatharvest.config import settings
from threatharvest.schemas.scrape import ScrapeMethod, Target
from threatharvest.services.selector_cache import get_domain


class MethodSelector:
    def __init__(
        self,
        forced_browser_domains: list[str] | None = None,
        default_method: ScrapeMethod = ScrapeMethod.HTTP,
    ):
        domains = settings.FORCED_BROWSER_DOMAINS if forced_browser_domains is None else forced_browser_domains
        self.forced_browser_domains = frozenset(d.lower().removeprefix("www.") for d in domains)
        self.default_method = default_method

    def requires_browser(self, url: str) -> bool:
        domain = get_domain(url)
        # Subdomains of a listed site are covered too
        return any(
            domain == listed or domain.endswith(f".{listed}")
            for listed in self.forced_browser_domains
        )

    def decide(self, target: Target) -> ScrapeMethod:
        if target.force_method is not None:
            return target.force_method
        if self.requires_browser(target.url):
            return ScrapeMethod.BROWSER
        return self.default_method
