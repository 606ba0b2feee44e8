"""Tests for selector discovery: heuristic oracle, LLM response parsing, LLM oracle."""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from threatharvest.core.exceptions import OracleError
from threatharvest.services.oracle import (
    MAX_HTML_CHARS,
    HeuristicSelectorOracle,
    LLMSelectorOracle,
    _compact_html,
    parse_oracle_response,
)
from threatharvest.services.selector_extraction import extract_article

PARAGRAPH = "Researchers disclosed a supply-chain compromise affecting a popular package. " * 6

ARTICLE_HTML = f"""
<html><body>
  <header><a href="/">Home</a></header>
  <article>
    <h1 class="entry-title">Supply-chain attack hits package registry</h1>
    <a rel="author" href="/author/sam">Sam Writer</a>
    <time datetime="2024-06-01">June 1, 2024</time>
    <div class="entry-content"><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p></div>
  </article>
  <script>var tracking = true;</script>
</body></html>
"""

DIV_SOUP_HTML = f"""
<html><body>
  <div id="page">
    <div class="sidebar"><p>Subscribe</p></div>
    <div class="story-text"><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p><p>{PARAGRAPH}</p></div>
  </div>
</body></html>
"""


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestHeuristicOracle:
    @pytest.mark.asyncio
    async def test_finds_article_structure(self):
        config = await HeuristicSelectorOracle().discover_selectors(ARTICLE_HTML, "https://x.test/a")
        assert config.title_selector == "article h1"
        assert config.content_selector == ".entry-content"
        assert config.author_selector == "[rel='author']"
        assert config.date_selector == "time[datetime]"
        assert config.confidence == pytest.approx(0.85)

    @pytest.mark.asyncio
    async def test_selectors_extract_the_article(self):
        config = await HeuristicSelectorOracle().discover_selectors(ARTICLE_HTML, "https://x.test/a")
        article = extract_article(ARTICLE_HTML, config)
        assert article.title == "Supply-chain attack hits package registry"
        assert article.author == "Sam Writer"
        assert article.publish_date == "2024-06-01T00:00:00"
        assert article.confidence >= 0.5

    @pytest.mark.asyncio
    async def test_densest_paragraph_container(self):
        config = await HeuristicSelectorOracle().discover_selectors(DIV_SOUP_HTML, "https://x.test/b")
        assert config.content_selector == "div.story-text"
        assert config.title_selector == "h1"  # placeholder when no heading exists

    @pytest.mark.asyncio
    async def test_empty_document(self):
        with pytest.raises(OracleError):
            await HeuristicSelectorOracle().discover_selectors("   ", "https://x.test/c")

    @pytest.mark.asyncio
    async def test_no_structure(self):
        with pytest.raises(OracleError):
            await HeuristicSelectorOracle().discover_selectors(
                "<html><body><span>hi</span></body></html>", "https://x.test/d"
            )


class TestParseOracleResponse:
    def test_camel_case_keys(self):
        config = parse_oracle_response(
            '{"titleSelector": "h1", "contentSelector": ".body", "authorSelector": null,'
            ' "dateSelector": "time", "confidence": 0.8}'
        )
        assert config.title_selector == "h1"
        assert config.content_selector == ".body"
        assert config.author_selector is None
        assert config.date_selector == "time"
        assert config.confidence == 0.8

    def test_code_fence_stripped(self):
        config = parse_oracle_response('```json\n{"titleSelector": "h1", "contentSelector": "main"}\n```')
        assert config.content_selector == "main"
        assert config.confidence == 0.5

    def test_not_json(self):
        with pytest.raises(OracleError):
            parse_oracle_response("I think the title is in the h1")

    def test_not_an_object(self):
        with pytest.raises(OracleError):
            parse_oracle_response('["h1", "main"]')

    def test_missing_required_selector(self):
        with pytest.raises(OracleError):
            parse_oracle_response('{"titleSelector": "h1"}')

    def test_confidence_out_of_range(self):
        with pytest.raises(OracleError):
            parse_oracle_response('{"titleSelector": "h1", "contentSelector": "main", "confidence": 7}')


class TestLLMOracle:
    @pytest.mark.asyncio
    async def test_discover_selectors(self):
        oracle = LLMSelectorOracle(model="openai/gpt-4o-mini", api_key="sk-test", timeout=5)
        response = _completion('{"titleSelector": "h1", "contentSelector": ".entry-content", "confidence": 0.9}')
        with patch("litellm.acompletion", new=AsyncMock(return_value=response)) as mock_completion:
            config = await oracle.discover_selectors(ARTICLE_HTML, "https://x.test/a")
        assert config.content_selector == ".entry-content"
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "var tracking" not in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_provider_error_becomes_oracle_error(self):
        oracle = LLMSelectorOracle(model="openai/gpt-4o-mini", timeout=5)
        with patch("litellm.acompletion", new=AsyncMock(side_effect=RuntimeError("quota exceeded"))):
            with pytest.raises(OracleError):
                await oracle.discover_selectors(ARTICLE_HTML, "https://x.test/a")

    @pytest.mark.asyncio
    async def test_timeout_becomes_oracle_error(self):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        oracle = LLMSelectorOracle(model="openai/gpt-4o-mini", timeout=0.05)
        with patch("litellm.acompletion", new=slow):
            with pytest.raises(OracleError):
                await oracle.discover_selectors(ARTICLE_HTML, "https://x.test/a")

    @pytest.mark.asyncio
    async def test_malformed_output(self):
        oracle = LLMSelectorOracle(model="openai/gpt-4o-mini", timeout=5)
        with patch("litellm.acompletion", new=AsyncMock(return_value=_completion("nope"))):
            with pytest.raises(OracleError):
                await oracle.discover_selectors(ARTICLE_HTML, "https://x.test/a")


def test_compact_html_truncates_and_strips_scripts():
    html = "<html><body><script>evil()</script>" + "<p>word</p>" * 5000 + "</body></html>"
    compact = _compact_html(html)
    assert "evil()" not in compact
    assert len(compact) <= MAX_HTML_CHARS
