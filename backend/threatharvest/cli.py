"""CLI tool for ThreatHarvest: scrape security news articles from the shell.

Usage:
    python -m threatharvest.cli scrape https://www.bleepingcomputer.com/news/security/some-article/
    python -m threatharvest.cli scrape https://example.com/news --listing
    python -m threatharvest.cli scrape https://example.com/post --method browser --html
    python -m threatharvest.cli batch https://a.example/1 https://b.example/2 --concurrency 3
"""

import argparse
import asyncio
import json
import sys

from threatharvest.config import settings
from threatharvest.core.logging_config import configure_logging


def _result_to_dict(result, include_html: bool = False) -> dict:
    data = result.model_dump(mode="json", exclude={"html"})
    if include_html:
        data["html"] = result.html
    else:
        data["html_length"] = len(result.html)
    return data


async def _cmd_scrape(args):
    """Scrape a single URL."""
    from threatharvest.schemas.scrape import ScrapeMethod, Target
    from threatharvest.services.scraper import Orchestrator

    target = Target(
        url=args.url,
        is_article_page=not args.listing,
        is_source_url=args.listing,
        force_method=ScrapeMethod(args.method) if args.method else None,
        timeout_ms=args.timeout * 1000,
        include_patterns=args.include or None,
        exclude_patterns=args.exclude or None,
        max_links=args.max_links,
    )

    async with Orchestrator() as orchestrator:
        result = await orchestrator.scrape(target)

    print(json.dumps(_result_to_dict(result, args.html), indent=2, ensure_ascii=False))
    return 0 if result.success else 1


async def _cmd_batch(args):
    """Scrape several URLs with bounded concurrency."""
    from threatharvest.services.scraper import Orchestrator

    urls = list(args.urls)
    if args.file:
        with open(args.file) as f:
            urls.extend(line.strip() for line in f if line.strip().startswith("http"))
    if not urls:
        print("No URLs given", file=sys.stderr)
        return 1

    async with Orchestrator(max_concurrency=args.concurrency) as orchestrator:
        results = await orchestrator.scrape_batch(urls)

    print(json.dumps([_result_to_dict(r, args.html) for r in results], indent=2, ensure_ascii=False))
    ok = sum(1 for r in results if r.success)
    print(f"\n{ok}/{len(results)} succeeded", file=sys.stderr)
    return 0 if ok == len(results) else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="threatharvest",
        description="ThreatHarvest CLI: scrape cybersecurity news behind bot protection",
    )
    parser.add_argument("--version", action="version", version=f"{settings.APP_NAME} {settings.APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--log-format", default=settings.LOG_FORMAT, choices=["json", "text"],
        help="Log format on stderr (default: LOG_FORMAT setting)",
    )
    parser.add_argument("--html", action="store_true", help="Include the full HTML in the output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- scrape ---
    scrape_parser = subparsers.add_parser("scrape", help="Scrape a single URL")
    scrape_parser.add_argument("url", help="URL to scrape")
    scrape_parser.add_argument(
        "--method", default=None, choices=["http", "browser"],
        help="Force a fetch method instead of letting the selector decide",
    )
    scrape_parser.add_argument(
        "--listing", action="store_true",
        help="Treat the URL as a listing/source page (no article extraction)",
    )
    scrape_parser.add_argument(
        "--include", action="append", default=[], metavar="PATTERN",
        help="Listing pages: keep only links containing PATTERN (repeatable)",
    )
    scrape_parser.add_argument(
        "--exclude", action="append", default=[], metavar="PATTERN",
        help="Listing pages: drop links containing PATTERN (repeatable)",
    )
    scrape_parser.add_argument("--max-links", type=int, default=50, help="Listing pages: link cap")
    scrape_parser.add_argument("--timeout", type=int, default=30, help="Timeout in seconds")

    # --- batch ---
    batch_parser = subparsers.add_parser("batch", help="Scrape several URLs")
    batch_parser.add_argument("urls", nargs="*", help="URLs to scrape")
    batch_parser.add_argument("--file", default=None, help="File with one URL per line")
    batch_parser.add_argument(
        "--concurrency", type=int, default=settings.MAX_CONCURRENT_SCRAPES,
        help="Max URLs in flight at once",
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # stdout carries the result JSON
    configure_logging(args.log_format, "DEBUG" if args.verbose else settings.LOG_LEVEL, stream=sys.stderr)

    if args.command == "scrape":
        sys.exit(asyncio.run(_cmd_scrape(args)))
    elif args.command == "batch":
        sys.exit(asyncio.run(_cmd_batch(args)))


if __name__ == "__main__":
    main()
