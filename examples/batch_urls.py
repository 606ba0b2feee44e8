"""Batch-scrape a list of URLs from a CSV file."""

import asyncio
import csv
import json
import sys

from threatharvest import Orchestrator

# Read URLs from a CSV file (one URL per line, or first column)
csv_path = sys.argv[1] if len(sys.argv) > 1 else "urls.csv"

urls = []
try:
    with open(csv_path) as f:
        reader = csv.reader(f)
        for row in reader:
            if row and row[0].strip().startswith("http"):
                urls.append(row[0].strip())
except FileNotFoundError:
    print(f"File not found: {csv_path}")
    print("Usage: python batch_urls.py [urls.csv]")
    print("CSV format: one URL per line (or URL in first column)")
    sys.exit(1)

print(f"Loaded {len(urls)} URLs from {csv_path}")


async def run():
    async with Orchestrator(max_concurrency=5) as orchestrator:
        return await orchestrator.scrape_batch(urls)


results = asyncio.run(run())
ok = sum(1 for r in results if r.success)
print(f"Completed: {ok}/{len(results)}")

# Results line up with the input order
rows = []
for url, result in zip(urls, results):
    rows.append({
        "url": url,
        "success": result.success,
        "method": result.method.value,
        "error": result.error,
        "protection": result.protection_detected.type.value if result.protection_detected else None,
        "title": result.article.title if result.article else None,
        "content_preview": (result.article.content if result.article else "")[:200],
    })

output_path = "batch_results.json"
with open(output_path, "w") as f:
    json.dump(rows, f, indent=2)
print(f"Saved {len(rows)} results to {output_path}")
