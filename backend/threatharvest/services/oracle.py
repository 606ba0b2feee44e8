"""Selector discovery.

The orchestrator treats discovery as opaque: hand over HTML, get back a
SelectorConfig with a confidence. Two backends ship here: a deterministic
structural heuristic (default) and an LLM-backed one via LiteLLM.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod

from bs4 import BeautifulSoup, Tag
from pydantic import ValidationError as PydanticValidationError

from threatharvest.config import settings
from threatharvest.core.exceptions import OracleError
from threatharvest.schemas.scrape import SelectorConfig

logger = logging.getLogger(__name__)


class SelectorOracle(ABC):
    @abstractmethod
    async def discover_selectors(self, html: str, url: str) -> SelectorConfig:
        """Raise OracleError on failure or malformed output."""


# ---------------------------------------------------------------------------
# Heuristic
# ---------------------------------------------------------------------------

_TITLE_CANDIDATES = ["article h1", "main h1", "h1.entry-title", "h1.post-title", "h1"]

_CONTENT_CANDIDATES = [
    ".article-body",
    ".article-content",
    ".entry-content",
    ".post-content",
    ".story-body",
    "[itemprop='articleBody']",
    "article",
    "main",
    "[role='main']",
    "#content",
]

_AUTHOR_CANDIDATES = [
    "[rel='author']",
    "[itemprop='author']",
    ".author-name",
    ".byline",
    ".author",
    ".writer",
]

_DATE_CANDIDATES = [
    "time[datetime]",
    "[itemprop='datePublished']",
    ".published",
    ".post-date",
    ".date",
    "time",
]

_MIN_CONTENT_CHARS = 200


def _text_len(el: Tag) -> int:
    return len(el.get_text(" ", strip=True))


def _css_path(el: Tag) -> str:
    """Short CSS selector for an element: tag#id or tag.class."""
    if el.get("id"):
        return f"{el.name}#{el['id']}"
    classes = [c for c in el.get("class", []) if re.match(r"^[A-Za-z_][\w-]*$", c)]
    if classes:
        return f"{el.name}.{classes[0]}"
    return el.name


class HeuristicSelectorOracle(SelectorOracle):
    """Scores well-known article containers and falls back to the densest <p> parent."""

    async def discover_selectors(self, html: str, url: str) -> SelectorConfig:
        if not html or not html.strip():
            raise OracleError(f"Empty document for {url}")
        soup = BeautifulSoup(html, "lxml")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        title_selector = next((s for s in _TITLE_CANDIDATES if soup.select_one(s)), None)
        content_selector = self._content_selector(soup)
        author_selector = next(
            (
                s
                for s in _AUTHOR_CANDIDATES
                if (el := soup.select_one(s)) is not None and 0 < _text_len(el) < 100
            ),
            None,
        )
        date_selector = next((s for s in _DATE_CANDIDATES if soup.select_one(s)), None)

        if not title_selector and not content_selector:
            raise OracleError(f"No article structure found on {url}")

        confidence = 0.4
        if title_selector:
            confidence += 0.15
        if content_selector:
            confidence += 0.2
        if author_selector:
            confidence += 0.05
        if date_selector:
            confidence += 0.05

        config = SelectorConfig(
            title_selector=title_selector or "h1",
            content_selector=content_selector or "body",
            author_selector=author_selector,
            date_selector=date_selector,
            confidence=round(min(confidence, 0.9), 2),
        )
        logger.debug(f"Heuristic selectors for {url}: {config.model_dump()}")
        return config

    def _content_selector(self, soup: BeautifulSoup) -> str | None:
        for selector in _CONTENT_CANDIDATES:
            el = soup.select_one(selector)
            if el is not None and _text_len(el) >= _MIN_CONTENT_CHARS:
                return selector

        # Densest paragraph container
        best, best_score = None, 0
        for p in soup.find_all("p"):
            parent = p.parent
            if not isinstance(parent, Tag) or parent.name in ("body", "html"):
                continue
            score = sum(len(child.get_text(strip=True)) for child in parent.find_all("p", recursive=False))
            if score > best_score:
                best, best_score = parent, score
        if best is not None and best_score >= _MIN_CONTENT_CHARS:
            return _css_path(best)
        return None


# ---------------------------------------------------------------------------
# LLM-backed
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = (
    "You analyze the HTML of a news article page and return CSS selectors for its parts. "
    "Return ONLY a JSON object with keys: titleSelector, contentSelector, authorSelector, "
    "dateSelector, confidence (0-1). Use null for parts that are not present."
)

MAX_HTML_CHARS = 15000


def _compact_html(html: str) -> str:
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript", "svg", "iframe"]):
        tag.decompose()
    body = soup.body or soup
    return re.sub(r"\s+", " ", str(body))[:MAX_HTML_CHARS]


def parse_oracle_response(text: str) -> SelectorConfig:
    """Turn the model's JSON into a SelectorConfig. Malformed output raises OracleError."""
    raw = text.strip()
    if raw.startswith("```"):
        raw = raw.split("```")[1]
        if raw.startswith("json"):
            raw = raw[4:]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise OracleError(f"Oracle returned non-JSON output: {e}") from e
    if not isinstance(data, dict):
        raise OracleError("Oracle output is not a JSON object")
    try:
        return SelectorConfig(
            title_selector=data.get("titleSelector") or data.get("title_selector"),
            content_selector=data.get("contentSelector") or data.get("content_selector"),
            author_selector=data.get("authorSelector") or data.get("author_selector"),
            date_selector=data.get("dateSelector") or data.get("date_selector"),
            confidence=float(data.get("confidence", 0.5)),
        )
    except (PydanticValidationError, TypeError, ValueError) as e:
        raise OracleError(f"Oracle output failed validation: {e}") from e


class LLMSelectorOracle(SelectorOracle):
    def __init__(self, model: str | None = None, api_key: str | None = None, timeout: int | None = None):
        self.model = model or settings.ORACLE_MODEL
        self.api_key = api_key or settings.ORACLE_API_KEY or None
        self.timeout = timeout or settings.ORACLE_TIMEOUT

    async def discover_selectors(self, html: str, url: str) -> SelectorConfig:
        import litellm

        user_prompt = f"URL: {url}\n\nHTML:\n{_compact_html(html)}"
        try:
            response = await asyncio.wait_for(
                litellm.acompletion(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": _SYSTEM_PROMPT},
                        {"role": "user", "content": user_prompt},
                    ],
                    api_key=self.api_key,
                    response_format={"type": "json_object"},
                    temperature=0.1,
                    max_tokens=512,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Selector discovery timed out for model={self.model}")
            raise OracleError(f"Selector discovery timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Selector discovery failed (model={self.model}): {type(e).__name__}: {e}")
            raise OracleError(f"Selector discovery failed: {type(e).__name__}: {e}") from e

        return parse_oracle_response(response.choices[0].message.content or "")


def default_oracle() -> SelectorOracle:
    if settings.ORACLE_MODEL:
        return LLMSelectorOracle()
    return HeuristicSelectorOracle()
