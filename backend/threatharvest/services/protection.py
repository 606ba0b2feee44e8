"""Protection-vendor detection from response metadata and body.

`detect()` walks an ordered table of rules and returns on the first match.
Order encodes specificity: a DataDome page also trips the generic CAPTCHA
phrases, so vendor rules come first. Everything here is pure; no I/O.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from threatharvest.schemas.scrape import ProtectionInfo, ProtectionType

logger = logging.getLogger(__name__)


@dataclass
class ResponseMeta:
    status: int = 0
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in (self.headers or {}).items()}

    def header(self, name: str) -> str:
        return self.headers.get(name, "") or ""


@dataclass
class ProtectionRule:
    name: str
    predicate: Callable[[str, ResponseMeta], bool]
    info: ProtectionInfo


# ---------------------------------------------------------------------------
# Vendor predicates
# ---------------------------------------------------------------------------

_DATADOME_BODY_MARKERS = [
    "captcha-delivery.com",
    "datadome",
    "Please enable JS and disable any ad blocker",
]

_INCAPSULA_BODY_MARKERS = ["/_Incapsula_", "window._icdt", "_Incapsula_Resource"]

_CLOUDFLARE_PHRASES = ["checking your browser", "ddos protection"]
_CF_CLASS_RE = re.compile(r"""class\s*=\s*["'][^"']*\bcf-[\w-]+""", re.IGNORECASE)

_CAPTCHA_PHRASES_RE = re.compile(
    r"\bCAPTCHA\b|are you a human|prove you are human", re.IGNORECASE
)
_CAPTCHA_IFRAME_RE = re.compile(
    r"""<iframe[^>]+src\s*=\s*["'][^"']*(?:re)?captcha""", re.IGNORECASE
)


def _is_datadome(html: str, meta: ResponseMeta) -> bool:
    if meta.header("x-datadome") or meta.header("x-dd-b"):
        return True
    if any(marker in html for marker in _DATADOME_BODY_MARKERS):
        return True
    return meta.status == 401 and "geo.captcha-delivery.com" in html


def _is_incapsula(html: str, meta: ResponseMeta) -> bool:
    if meta.header("x-iinfo") or meta.header("x-cdn") == "Incapsula":
        return True
    return any(marker in html for marker in _INCAPSULA_BODY_MARKERS)


def _is_cloudflare(html: str, meta: ResponseMeta) -> bool:
    if "cloudflare" in meta.header("server").lower():
        return True
    lowered = html.lower()
    if any(phrase in lowered for phrase in _CLOUDFLARE_PHRASES):
        return True
    return bool(_CF_CLASS_RE.search(html))


def _is_rate_limited(html: str, meta: ResponseMeta) -> bool:
    return meta.status == 429 or bool(meta.header("retry-after"))


def _is_cookie_challenge(html: str, meta: ResponseMeta) -> bool:
    set_cookie = meta.header("set-cookie")
    return "challenge" in set_cookie or "verify" in set_cookie


def _is_captcha(html: str, meta: ResponseMeta) -> bool:
    return bool(_CAPTCHA_PHRASES_RE.search(html) or _CAPTCHA_IFRAME_RE.search(html))


PROTECTION_RULES: list[ProtectionRule] = [
    ProtectionRule(
        "datadome",
        _is_datadome,
        ProtectionInfo(
            has_protection=True,
            type=ProtectionType.DATADOME,
            confidence=0.95,
            details="DataDome protection detected, requires JavaScript challenge completion",
        ),
    ),
    ProtectionRule(
        "incapsula",
        _is_incapsula,
        ProtectionInfo(
            has_protection=True,
            type=ProtectionType.INCAPSULA,
            confidence=0.9,
            details="Incapsula protection detected",
        ),
    ),
    ProtectionRule(
        "cloudflare",
        _is_cloudflare,
        ProtectionInfo(
            has_protection=True,
            type=ProtectionType.CLOUDFLARE,
            confidence=0.85,
            details="Cloudflare challenge or DDoS protection detected",
        ),
    ),
    ProtectionRule(
        "rate_limit",
        _is_rate_limited,
        ProtectionInfo(
            has_protection=True,
            type=ProtectionType.RATE_LIMIT,
            confidence=1.0,
            details="Rate limit detected",
        ),
    ),
    ProtectionRule(
        "cookie_check",
        _is_cookie_challenge,
        ProtectionInfo(
            has_protection=True,
            type=ProtectionType.COOKIE_CHECK,
            confidence=0.8,
            details="Cookie challenge detected",
        ),
    ),
    ProtectionRule(
        "captcha",
        _is_captcha,
        ProtectionInfo(
            has_protection=True,
            type=ProtectionType.CAPTCHA,
            confidence=0.9,
            details="CAPTCHA challenge detected",
        ),
    ),
]

NO_PROTECTION = ProtectionInfo(
    has_protection=False,
    type=ProtectionType.NONE,
    confidence=1.0,
    details="No protection detected",
)

# 403 without any vendor fingerprint
GENERIC_PROTECTION = ProtectionInfo(
    has_protection=True,
    type=ProtectionType.GENERIC,
    confidence=0.8,
    details="Access forbidden without a recognizable vendor signature",
)


def detect(
    html: str,
    response_meta: ResponseMeta | None = None,
    rules: list[ProtectionRule] | None = None,
) -> ProtectionInfo:
    """Classify the protection vendor behind a response. First matching rule wins."""
    meta = response_meta or ResponseMeta()
    html = html or ""
    for rule in rules if rules is not None else PROTECTION_RULES:
        if rule.predicate(html, meta):
            logger.debug(f"Protection rule '{rule.name}' matched (status={meta.status})")
            return rule.info
    return NO_PROTECTION


# ---------------------------------------------------------------------------
# Content heuristics
# ---------------------------------------------------------------------------

_BLOCK_PATTERNS = [
    "enable javascript",
    "javascript is required",
    "please enable javascript",
    "verify you are human",
    "verify you're human",
    "are you a robot",
    "not a robot",
    "access denied",
    "unusual traffic",
    "automated access",
    "checking your browser",
    "just a moment",
    "attention required",
    "please wait while we verify",
    "pardon our interruption",
    "press & hold",
    "one more step",
    "your connection needs to be verified",
]

_STRONG_HEAD_PATTERNS = [
    "attention required",
    "just a moment",
    "checking your browser",
    "please wait while we verify",
    "verify you are human",
]

_SCRIPT_STYLE_RE = re.compile(
    r"<(script|style|noscript)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE
)
_TAG_RE = re.compile(r"<[^>]+>")
_BODY_RE = re.compile(r"<body[^>]*>(.*?)</body>", re.DOTALL | re.IGNORECASE)
_LINK_RE = re.compile(r"<a\s[^>]*href", re.IGNORECASE)

_DYNAMIC_INDICATORS = [
    "hx-get=",
    "hx-post=",
    "hx-trigger=",
    "data-hx-get=",
    "htmx.min.js",
    'id="__next"',
    "data-reactroot",
    "window.__initial_state__",
    "window.__preloaded_state__",
    "ng-app=",
    "infinite-scroll",
    "load-more",
]

MIN_CONTENT_LENGTH = 1000
MIN_LINK_COUNT = 5
SUBSTANTIAL_CONTENT_LENGTH = 10000


def visible_text(html: str) -> str:
    body_match = _BODY_RE.search(html)
    body_html = body_match.group(1) if body_match else html
    text = _TAG_RE.sub(" ", _SCRIPT_STYLE_RE.sub(" ", body_html))
    return re.sub(r"\s+", " ", text).strip()


def count_links(html: str) -> int:
    return len(_LINK_RE.findall(html))


def looks_blocked(html: str) -> bool:
    """True when the body is a vendor interstitial rather than a real page."""
    if not html:
        return True

    body_text = visible_text(html).lower()

    # Pages with substantial visible text are never block pages
    if len(body_text) > 3000:
        return False

    if len(body_text) < 800:
        for pattern in _BLOCK_PATTERNS:
            if pattern in body_text:
                logger.debug(f"looks_blocked: matched '{pattern}' ({len(body_text)} chars)")
                return True

    head = html[:5000].lower()
    if any(pattern in head for pattern in _STRONG_HEAD_PATTERNS):
        return True

    return len(body_text) < 300 and "<noscript" in html.lower()


def is_content_valid(html: str) -> bool:
    """Enough markup and navigation to be a real page."""
    if not html or len(html) < MIN_CONTENT_LENGTH:
        return False
    lowered = html.lower()
    if "<article" in lowered or "<main" in lowered:
        return True
    return count_links(html) >= MIN_LINK_COUNT


def requires_browser(html: str, is_article_page: bool = True) -> bool:
    """True when the HTTP body is a JS shell that needs rendering."""
    lowered = html.lower()
    substantial = len(html) > SUBSTANTIAL_CONTENT_LENGTH and any(
        marker in lowered for marker in ("<article", "<main", 'class="content', 'class="post', "<p>")
    )
    if substantial:
        return False
    if any(indicator in lowered for indicator in _DYNAMIC_INDICATORS):
        return True
    # Listing pages are useless without their links
    return not is_article_page and count_links(html) < MIN_LINK_COUNT
