"""ThreatHarvest: protection-aware scraping of cybersecurity news articles."""

from threatharvest.schemas.scrape import (
    ArticleContent,
    ProtectionInfo,
    ProtectionType,
    ScrapeMethod,
    ScrapeResult,
    SelectorConfig,
    Target,
)
from threatharvest.services.scraper import Orchestrator

__all__ = [
    "ArticleContent",
    "Orchestrator",
    "ProtectionInfo",
    "ProtectionType",
    "ScrapeMethod",
    "ScrapeResult",
    "SelectorConfig",
    "Target",
]
