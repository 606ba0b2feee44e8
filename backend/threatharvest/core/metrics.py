from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
)

# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
scrape_requests_total = Counter(
    "scrape_requests_total",
    "Total number of scrape calls by outcome",
    ["status"],
)
scrape_duration_seconds = Histogram(
    "scrape_duration_seconds",
    "Wall time of a full scrape by the method that produced the result",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 30, 60, 120],
)

# ---------------------------------------------------------------------------
# Fetch tiers (http, tls, browser)
# ---------------------------------------------------------------------------
fetch_attempts_total = Counter(
    "fetch_attempts_total",
    "Fetch attempts by tier and outcome",
    ["tier", "outcome"],
)
protection_detected_total = Counter(
    "protection_detected_total",
    "Responses classified as protected, by vendor type",
    ["type"],
)
challenge_outcomes_total = Counter(
    "challenge_outcomes_total",
    "Browser challenge loop outcomes",
    ["outcome"],
)

# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------
selector_cache_events_total = Counter(
    "selector_cache_events_total",
    "Domain/article cache hits, misses and evictions",
    ["cache", "event"],
)

# ---------------------------------------------------------------------------
# Browser
# ---------------------------------------------------------------------------
active_browser_contexts = Gauge(
    "active_browser_contexts",
    "Number of currently open browser contexts",
)
