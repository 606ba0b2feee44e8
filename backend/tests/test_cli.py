"""Tests for the command-line entry point."""
import json
import sys
from unittest.mock import patch

import pytest

from threatharvest import cli
from threatharvest.schemas.scrape import ArticleContent, ScrapeMethod, ScrapeResult, Target

URL = "https://www.bleepingcomputer.com/news/security/some-article/"


class FakeOrchestrator:
    instances: list["FakeOrchestrator"] = []

    def __init__(self, max_concurrency=None):
        self.max_concurrency = max_concurrency
        self.targets = []
        FakeOrchestrator.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def scrape(self, target):
        self.targets.append(target)
        return ScrapeResult(
            url=target.url,
            html="<html>ok</html>",
            success=True,
            method=ScrapeMethod.BROWSER if target.force_method == ScrapeMethod.BROWSER else ScrapeMethod.HTTP,
            status_code=200,
            final_url=target.url,
            article=ArticleContent(title="Headline", content="Body", confidence=0.9),
        )

    async def scrape_batch(self, urls):
        self.targets.extend(urls)
        return [
            ScrapeResult.failed(url, error="network_dns") if "bad" in url else await self.scrape(Target(url=url))
            for url in urls
        ]


@pytest.fixture(autouse=True)
def fake_orchestrator():
    FakeOrchestrator.instances = []
    with patch("threatharvest.services.scraper.Orchestrator", FakeOrchestrator), patch.object(
        cli, "configure_logging"
    ):
        yield FakeOrchestrator


def _run(argv) -> int:
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return exc.value.code


class TestScrapeCommand:
    def test_prints_result_json(self, capsys):
        assert _run(["scrape", URL]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["success"] is True
        assert data["article"]["title"] == "Headline"
        assert data["html_length"] == len("<html>ok</html>")
        assert "html" not in data

    def test_include_html(self, capsys):
        _run(["--html", "scrape", URL])
        assert json.loads(capsys.readouterr().out)["html"] == "<html>ok</html>"

    def test_flags_build_target(self, fake_orchestrator):
        _run(["scrape", URL, "--method", "browser", "--listing", "--timeout", "10"])
        target = fake_orchestrator.instances[0].targets[0]
        assert target.force_method == ScrapeMethod.BROWSER
        assert target.is_source_url is True
        assert target.is_article_page is False
        assert target.timeout_ms == 10000

    def test_listing_link_filters(self, fake_orchestrator):
        _run(["scrape", URL, "--listing", "--include", "/news/", "--include", "/2024/",
              "--exclude", "sponsored", "--max-links", "10"])
        target = fake_orchestrator.instances[0].targets[0]
        assert target.include_patterns == ["/news/", "/2024/"]
        assert target.exclude_patterns == ["sponsored"]
        assert target.max_links == 10

    def test_no_link_filters_by_default(self, fake_orchestrator, capsys):
        _run(["scrape", URL])
        target = fake_orchestrator.instances[0].targets[0]
        assert target.include_patterns is None
        assert target.exclude_patterns is None
        assert json.loads(capsys.readouterr().out)["article_links"] == []

    def test_logs_go_to_stderr(self):
        _run(["-v", "--log-format", "text", "scrape", URL])
        args, kwargs = cli.configure_logging.call_args
        assert args == ("text", "DEBUG")
        assert kwargs["stream"] is sys.stderr

    def test_version(self, capsys):
        assert _run(["--version"]) == 0
        assert "ThreatHarvest" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert _run([]) == 1
        assert "usage" in capsys.readouterr().out.lower()


class TestBatchCommand:
    def test_urls_and_file(self, tmp_path, fake_orchestrator, capsys):
        url_file = tmp_path / "urls.txt"
        url_file.write_text("https://c.example/3\n# comment\n\nhttps://d.example/4\n")

        code = _run(["batch", "https://a.example/1", "--file", str(url_file), "--concurrency", "2"])

        assert code == 0
        orchestrator = fake_orchestrator.instances[0]
        assert orchestrator.max_concurrency == 2
        assert orchestrator.targets[:3] == ["https://a.example/1", "https://c.example/3", "https://d.example/4"]
        captured = capsys.readouterr()
        assert len(json.loads(captured.out)) == 3
        assert "3/3 succeeded" in captured.err

    def test_any_failure_sets_exit_code(self, capsys):
        assert _run(["batch", "https://a.example/1", "https://bad.example/2"]) == 1
        assert "1/2 succeeded" in capsys.readouterr().err

    def test_no_urls(self, capsys):
        assert _run(["batch"]) == 1
        assert "No URLs given" in capsys.readouterr().err
