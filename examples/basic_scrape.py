"""Basic scrape example: pull one article and print the extracted fields."""

import asyncio

from threatharvest import Orchestrator, Target
from threatharvest.core.logging_config import configure_logging

URL = "https://www.bleepingcomputer.com/news/security/"


async def main():
    configure_logging("text", "INFO")

    async with Orchestrator() as orchestrator:
        # Listing pages are fetched for their links only
        listing = await orchestrator.scrape(
            Target(url=URL, is_source_url=True, is_article_page=False, include_patterns=["/news/security/"])
        )
        print(f"Listing: success={listing.success} method={listing.method.value} links={len(listing.article_links)}")
        for link in listing.article_links[:5]:
            print(f"  {link}")

        article_url = listing.article_links[0] if listing.article_links else "https://krebsonsecurity.com/"
        result = await orchestrator.scrape(article_url)
        if result.success and result.article:
            print("=== Article ===")
            print(f"Title:  {result.article.title}")
            print(f"Author: {result.article.author}")
            print(f"Date:   {result.article.publish_date}")
            print(f"Confidence: {result.article.confidence:.2f}")
            print(result.article.content[:500])
        else:
            print(f"Scrape failed: {result.error}")
        if result.protection_detected:
            print(f"Protection: {result.protection_detected.type.value} ({result.protection_detected.confidence})")


if __name__ == "__main__":
    asyncio.run(main())
