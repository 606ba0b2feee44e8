"""Article-link extraction for listing pages (news indexes, category pages)."""
import logging
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_LINKS = 50
MIN_ANCHOR_TEXT = 20  # shorter anchors are navigation, tags, "Read more"


def extract_article_links(
    html: str,
    base_url: str,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
    max_links: int = MAX_LINKS,
    min_text_length: int = MIN_ANCHOR_TEXT,
) -> list[str]:
    """Likely article links on a listing page, absolute and in document order.

    Patterns are plain substrings matched against the absolute URL. A link is
    kept when it matches any include pattern (if given) and no exclude pattern.
    """
    soup = BeautifulSoup(html, "lxml")
    seen: set[str] = set()
    links: list[str] = []

    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:", "data:")):
            continue
        if len(a_tag.get_text(" ", strip=True)) < min_text_length:
            continue

        try:
            parsed = urlparse(urljoin(base_url, href))
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        url = parsed._replace(fragment="").geturl()

        if include_patterns and not any(p in url for p in include_patterns):
            continue
        if exclude_patterns and any(p in url for p in exclude_patterns):
            continue
        if url in seen:
            continue
        seen.add(url)
        links.append(url)

    if len(links) > max_links:
        logger.debug(f"Link list for {base_url} capped at {max_links} (found {len(links)})")
        links = links[:max_links]
    logger.info(f"Extracted {len(links)} article links from {base_url}")
    return links
