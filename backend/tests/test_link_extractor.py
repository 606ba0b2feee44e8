"""Tests for article-link extraction from listing pages."""
from threatharvest.services.link_extractor import extract_article_links

BASE = "https://www.securityweek.com/category/malware/"
HEADLINE = "Botnet operators pivot to exposed routers"  # long enough to count


def page(*anchors: str) -> str:
    return "<html><body><main>" + "".join(anchors) + "</main></body></html>"


class TestExtractArticleLinks:
    def test_relative_links_resolved_against_page(self):
        html = page(
            f'<a href="/botnet-routers/">{HEADLINE}</a>',
            f'<a href="follow-up/">{HEADLINE} (follow-up)</a>',
        )
        assert extract_article_links(html, BASE) == [
            "https://www.securityweek.com/botnet-routers/",
            "https://www.securityweek.com/category/malware/follow-up/",
        ]

    def test_absolute_links_kept_as_is(self):
        html = page(f'<a href="https://partner.example.org/story?id=7&amp;ref=sw">{HEADLINE}</a>')
        assert extract_article_links(html, BASE) == ["https://partner.example.org/story?id=7&ref=sw"]

    def test_short_anchor_text_is_navigation(self):
        html = page(
            '<a href="/news/">News</a>',
            '<a href="/botnet-routers/">Read more</a>',
            f'<a href="/botnet-routers/">{HEADLINE}</a>',
        )
        assert extract_article_links(html, BASE) == ["https://www.securityweek.com/botnet-routers/"]

    def test_duplicates_and_fragments_collapse(self):
        html = page(
            f'<a href="/botnet-routers/">{HEADLINE}</a>',
            f'<a href="/botnet-routers/#comments">{HEADLINE}: 12 comments</a>',
            f'<a href="https://www.securityweek.com/botnet-routers/">{HEADLINE}</a>',
        )
        assert extract_article_links(html, BASE) == ["https://www.securityweek.com/botnet-routers/"]

    def test_non_http_schemes_skipped(self):
        html = page(
            f'<a href="mailto:tips@securityweek.com">{HEADLINE}</a>',
            f'<a href="javascript:void(0)">{HEADLINE}</a>',
            f'<a href="#top">{HEADLINE}</a>',
            f'<a href="ftp://files.example.com/ioc.csv">{HEADLINE}</a>',
        )
        assert extract_article_links(html, BASE) == []

    def test_include_and_exclude_patterns(self):
        html = page(
            f'<a href="/2024/05/botnet-routers/">{HEADLINE}</a>',
            f'<a href="/2024/05/sponsored-webinar/">{HEADLINE} webinar</a>',
            f'<a href="/author/jane-analyst/">{HEADLINE} by Jane</a>',
        )
        links = extract_article_links(html, BASE, include_patterns=["/2024/"], exclude_patterns=["sponsored"])
        assert links == ["https://www.securityweek.com/2024/05/botnet-routers/"]

    def test_capped_at_max_links_in_document_order(self):
        html = page(*[f'<a href="/story-{i}/">{HEADLINE} part {i}</a>' for i in range(80)])
        links = extract_article_links(html, BASE)
        assert len(links) == 50
        assert links[0] == "https://www.securityweek.com/story-0/"
        assert links[-1] == "https://www.securityweek.com/story-49/"
        assert len(extract_article_links(html, BASE, max_links=5)) == 5

    def test_anchor_text_includes_nested_markup(self):
        html = page('<a href="/botnet-routers/"><span>Botnet operators</span> <em>pivot to routers</em></a>')
        assert extract_article_links(html, BASE) == ["https://www.securityweek.com/botnet-routers/"]

    def test_malformed_href_skipped(self):
        html = page(
            f'<a href="http://[broken/path">{HEADLINE}</a>',
            f'<a href="/botnet-routers/">{HEADLINE}</a>',
        )
        assert extract_article_links(html, BASE) == ["https://www.securityweek.com/botnet-routers/"]

    def test_empty_page(self):
        assert extract_article_links("", BASE) == []
