"""Error taxonomy for the scraping engine.

Everything here is raised below the orchestrator and caught by it. Callers of
`Orchestrator.scrape()` never see these; they branch on `ScrapeResult.error`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from threatharvest.schemas.scrape import ProtectionInfo


class ScraperError(Exception):
    """Base class. `reason` is the short string surfaced on failed results."""

    reason = "scrape_error"

    def __init__(self, message: str = "", reason: str | None = None):
        if reason:
            self.reason = reason
        super().__init__(message or self.reason)


class ValidationError(ScraperError):
    """Malformed target, rejected before any network call."""

    reason = "invalid_url"


class NetworkError(ScraperError):
    """Timeout, DNS, refused connection or an unusable HTTP status."""

    reason = "network_error"

    def __init__(self, message: str, kind: str = "connection", status_code: int = 0):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message, reason=f"network_{kind}")

    @property
    def retryable(self) -> bool:
        # DNS failures won't fix themselves within a retry window
        return self.kind != "dns"


class ProtectionDetected(ScraperError):
    """Routing signal: the response came from a protection vendor."""

    reason = "protection_detected"

    def __init__(self, protection: ProtectionInfo, status_code: int = 0, html: str = ""):
        self.protection = protection
        self.status_code = status_code
        self.html = html
        super().__init__(
            f"{protection.type.value} protection detected ({protection.details})",
            reason=f"protection_{protection.type.value}",
        )


class ChallengeUnresolved(ScraperError):
    """Every challenge attempt plus the last-resort recovery failed."""

    reason = "challenge_unresolved"

    def __init__(self, attempts: int, protection: ProtectionInfo | None = None):
        self.attempts = attempts
        self.protection = protection
        super().__init__(f"Challenge still present after {attempts} attempts")


class ExtractionLowConfidence(ScraperError):
    reason = "low_confidence"

    def __init__(self, confidence: float):
        self.confidence = confidence
        super().__init__(f"Extraction confidence {confidence:.2f} below threshold")


class OracleError(ScraperError):
    """Selector discovery failed or returned malformed data."""

    reason = "oracle_error"


class BrowserUnavailableError(ScraperError):
    reason = "browser_unavailable"
