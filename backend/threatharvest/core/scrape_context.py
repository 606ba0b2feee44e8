"""Per-scrape identifier for log correlation.

The orchestrator opens a scrape scope for every `scrape()` call. The ID is
stored in a contextvars.ContextVar so every log line emitted while that scrape
runs (HTTP tier, browser, challenge solver) carries the same value, even when
several scrapes interleave inside one batch.
"""

import contextvars
import uuid
from contextlib import contextmanager

# Context variable accessible from anywhere in the same async task
scrape_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "scrape_id", default=""
)


@contextmanager
def scrape_scope(scrape_id: str | None = None):
    sid = scrape_id or uuid.uuid4().hex[:12]
    token = scrape_id_var.set(sid)
    try:
        yield sid
    finally:
        scrape_id_var.reset(token)


def get_scrape_id() -> str:
    """Get the current scrape ID (empty string outside a scrape)."""
    return scrape_id_var.get()
