"""CSS and XPath selector-based article extraction.

Selectors come from the domain cache or the discovery oracle. Each field
selector may be a comma-separated CSS list or an XPath expression (leading
"/" or "("). Confidence is scored from how complete the extraction is.
"""
from __future__ import annotations
import logging
import re
from datetime import datetime
from email.utils import parsedate_to_datetime

from bs4 import BeautifulSoup, Tag
from lxml import etree

from threatharvest.schemas.scrape import ArticleContent, SelectorConfig

logger = logging.getLogger(__name__)

GENERIC_SELECTORS = SelectorConfig(
    title_selector="h1, h2, .title, .headline, .post-title, .entry-title, .article-title",
    content_selector=(
        'article, main, [role="main"], .content, .post-content, .entry-content, '
        ".article-content, .post, .entry"
    ),
    author_selector=".author, .byline, .writer",
    date_selector="time, .date, .published",
    confidence=0.2,
)

MAX_AUTHOR_LENGTH = 100
SHORT_CONTENT = 100
LONG_CONTENT = 500

_DATE_FORMATS = [
    "%Y-%m-%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%m/%d/%Y",
]


def _is_xpath(selector: str) -> bool:
    return selector.lstrip().startswith(("/", "("))


def extract_by_css(html: str, selector: str, extract_type: str = "text") -> list[str]:
    """Extract content matching a CSS selector.

    Args:
        html: Raw HTML string
        selector: CSS selector (e.g., "article h1", ".byline")
        extract_type: What to extract - "text", "html", or an attribute name like "datetime"

    Returns:
        List of extracted values
    """
    soup = BeautifulSoup(html, "lxml")
    return _values(soup.select(selector), extract_type)


def _values(elements: list[Tag], extract_type: str) -> list[str]:
    results = []
    for el in elements:
        if extract_type == "text":
            results.append(el.get_text(" ", strip=True))
        elif extract_type == "html":
            results.append(str(el))
        else:
            # Treat as attribute name
            val = el.get(extract_type)
            if val:
                results.append(val if isinstance(val, str) else " ".join(val))
    return results


def extract_by_xpath(html: str, xpath: str) -> list[str]:
    """Extract text content or attribute values matching an XPath expression."""
    try:
        tree = etree.HTML(html)
        if tree is None:
            return []
        results = tree.xpath(xpath)
        out = []
        for r in results:
            if isinstance(r, str):
                out.append(r.strip())
            elif hasattr(r, "text"):
                full_text = etree.tostring(r, method="text", encoding="unicode").strip()
                out.append(re.sub(r"\s+", " ", full_text))
            else:
                out.append(str(r))
        return [x for x in out if x]
    except Exception as e:
        logger.warning(f"XPath extraction failed: {e}")
        return []


def _select(soup: BeautifulSoup, html: str, selector: str) -> list[str]:
    if _is_xpath(selector):
        return extract_by_xpath(html, selector)
    try:
        return _values(soup.select(selector), "text")
    except Exception as e:
        # soupsieve rejects some selectors an oracle may hand back
        logger.warning(f"Invalid CSS selector {selector!r}: {e}")
        return []


def parse_date(text: str) -> str | None:
    """Normalize a date string to ISO 8601, or None if it can't be read."""
    text = text.strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text).isoformat()
    except (TypeError, ValueError):
        pass
    cleaned = re.sub(r"^(published|updated|posted)(\s+on)?:?\s*", "", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", cleaned)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _extract_date(soup: BeautifulSoup, html: str, selector: str) -> str | None:
    if _is_xpath(selector):
        values = extract_by_xpath(html, selector)
        return parse_date(values[0]) if values else None
    try:
        el = soup.select_one(selector)
    except Exception:
        return None
    if el is None:
        return None
    raw = el.get("datetime") or el.get_text(" ", strip=True)
    return parse_date(raw) if raw else None


def extract_article(html: str, selectors: SelectorConfig) -> ArticleContent:
    """Pull title/content/author/date with `selectors` and score the result."""
    soup = BeautifulSoup(html, "lxml")

    titles = _select(soup, html, selectors.title_selector)
    title = next((t for t in titles if t), "")

    # Largest matching block wins
    blocks = _select(soup, html, selectors.content_selector)
    content = max(blocks, key=len, default="")

    author = None
    if selectors.author_selector:
        authors = _select(soup, html, selectors.author_selector)
        if authors and authors[0] and len(authors[0]) < MAX_AUTHOR_LENGTH:
            author = re.sub(r"^by\s+", "", authors[0], flags=re.IGNORECASE).strip() or None

    publish_date = None
    if selectors.date_selector:
        publish_date = _extract_date(soup, html, selectors.date_selector)

    confidence = selectors.confidence
    if not title:
        confidence -= 0.3
    if not content or len(content) < SHORT_CONTENT:
        confidence -= 0.4
    if not author and selectors.author_selector:
        confidence -= 0.1
    if not publish_date and selectors.date_selector:
        confidence -= 0.1
    if title and len(content) > LONG_CONTENT:
        confidence += 0.2
    confidence = min(1.0, max(0.0, confidence))

    return ArticleContent(
        title=title,
        content=content,
        author=author,
        publish_date=publish_date,
        confidence=round(confidence, 3),
        selectors_used=selectors,
    )


def extract_with_fallback(html: str, selectors: SelectorConfig | None, threshold: float) -> ArticleContent:
    """Try `selectors`, then the generic set; keep whichever scores higher.

    Ties go to the generic set, as does any primary result that found
    neither a title nor content.
    """
    primary = extract_article(html, selectors) if selectors else None
    if primary is not None and primary.confidence >= threshold:
        return primary
    generic = extract_article(html, GENERIC_SELECTORS)
    if (
        primary is None
        or not (primary.title or primary.content)
        or generic.confidence >= primary.confidence
    ):
        logger.info(f"Generic selectors used (confidence {generic.confidence:.2f})")
        return generic
    return primary
