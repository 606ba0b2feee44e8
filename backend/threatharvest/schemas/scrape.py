from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ScrapeMethod(str, Enum):
    HTTP = "http"
    BROWSER = "browser"


class ProtectionType(str, Enum):
    DATADOME = "datadome"
    CLOUDFLARE = "cloudflare"
    INCAPSULA = "incapsula"
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    COOKIE_CHECK = "cookie_check"
    GENERIC = "generic"
    NONE = "none"


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class Target(BaseModel):
    model_config = {"frozen": True}

    url: str
    is_source_url: bool = False  # listing/index page rather than an article
    is_article_page: bool = True
    force_method: ScrapeMethod | None = None
    custom_headers: dict[str, str] | None = None
    timeout_ms: int | None = None
    # Listing pages only: substring filters and cap for the extracted links
    include_patterns: list[str] | None = None
    exclude_patterns: list[str] | None = None
    max_links: int = 50

    @field_validator("url", mode="before")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip() if isinstance(v, str) else v


class ProtectionInfo(BaseModel):
    model_config = {"frozen": True}

    has_protection: bool
    type: ProtectionType
    confidence: float = Field(ge=0.0, le=1.0)
    details: str = ""


class Viewport(BaseModel):
    model_config = {"frozen": True}

    width: int
    height: int


class BrowserProfile(BaseModel):
    """A browser identity. The JA3 string always matches the user agent's TLS stack."""

    model_config = {"frozen": True}

    name: str
    user_agent: str
    viewport: Viewport
    ja3_fingerprint: str
    impersonate: str  # curl_cffi target for the HTTP/2 + header layer
    headers: dict[str, str]
    device_type: DeviceType = DeviceType.DESKTOP
    locale: str = "en-US"
    timezone: str = "America/New_York"
    hardware_concurrency: int = 8
    device_memory: int = 8
    color_depth: int = 24
    pixel_ratio: float = 1.0
    webgl_vendor: str = "Google Inc. (Intel)"
    webgl_renderer: str = "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)"

    @property
    def is_mobile(self) -> bool:
        return self.device_type != DeviceType.DESKTOP

    @property
    def is_firefox(self) -> bool:
        return "Firefox/" in self.user_agent


class FetchResponse(BaseModel):
    status: int = 0
    body: str = ""
    headers: dict[str, str] = {}  # lowercased names
    url: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 300 and bool(self.body)


class SelectorConfig(BaseModel):
    title_selector: str
    content_selector: str
    author_selector: str | None = None
    date_selector: str | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ArticleContent(BaseModel):
    title: str = ""
    content: str = ""
    author: str | None = None
    publish_date: str | None = None
    confidence: float = 0.0
    selectors_used: SelectorConfig | None = None


class ScrapeResult(BaseModel):
    """Terminal output of one scrape. Always fully populated, even on failure."""

    model_config = {"frozen": True}

    url: str
    html: str = ""
    success: bool = False
    method: ScrapeMethod = ScrapeMethod.HTTP
    response_time_ms: int = 0
    status_code: int = 0
    final_url: str = ""
    protection_detected: ProtectionInfo | None = None
    article: ArticleContent | None = None
    article_links: list[str] = []  # populated for listing pages
    error: str | None = None

    @classmethod
    def failed(
        cls,
        url: str,
        error: str,
        method: ScrapeMethod = ScrapeMethod.HTTP,
        response_time_ms: int = 0,
        status_code: int = 0,
        protection: ProtectionInfo | None = None,
    ) -> "ScrapeResult":
        return cls(
            url=url,
            html="",
            success=False,
            method=method,
            response_time_ms=response_time_ms,
            status_code=status_code,
            final_url=url,
            protection_detected=protection,
            error=error,
        )
