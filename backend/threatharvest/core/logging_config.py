"""Structured logging configuration.

Supports two modes via LOG_FORMAT env var:
- "json" (default for production): JSON-formatted log lines with scrape_id
- "text" (for development): Human-readable log lines
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from threatharvest.core.scrape_context import get_scrape_id


class ScrapeIDFilter(logging.Filter):
    """Inject scrape_id into every log record."""

    def filter(self, record):
        record.scrape_id = get_scrape_id()
        return True


class PlaywrightPipeFilter(logging.Filter):
    """Suppress Playwright's noisy 'pipe closed by peer' warnings.

    A dying browser context makes Playwright log this once per pending write.
    """

    def filter(self, record):
        msg = record.getMessage() if hasattr(record, "getMessage") else str(record.msg)
        return "pipe closed by peer" not in msg


def configure_logging(log_format: str = "json", log_level: str = "INFO", stream=None):
    """Configure root logger with the specified format.

    Args:
        log_format: "json" or "text"
        log_level: Python log level name
        stream: Output stream, stdout by default
    """
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(ScrapeIDFilter())
    handler.addFilter(PlaywrightPipeFilter())

    if log_format == "json":
        formatter = JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s %(scrape_id)s",
            rename_fields={
                "levelname": "level",
                "name": "logger",
                "asctime": "timestamp",
            },
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(scrape_id)s] %(message)s"
        )

    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    logging.getLogger("playwright").setLevel(logging.ERROR)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
