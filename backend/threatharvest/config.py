from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # App
    APP_NAME: str = "ThreatHarvest"
    APP_VERSION: str = "0.1.0"

    # Scraping
    DEFAULT_TIMEOUT: int = 30000  # ms
    TLS_TIMEOUT: int = 30000  # ms
    MAX_CONCURRENT_SCRAPES: int = 5  # batch worker concurrency

    # HTTP retries
    HTTP_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 10000
    # One cookie jar shared across every domain the HTTP tier talks to
    SHARED_COOKIE_JAR: bool = True

    # Browser
    BROWSER_HEADLESS: bool = True
    BROWSER_POOL_SIZE: int = 3

    # Challenge solving
    CHALLENGE_MAX_ATTEMPTS: int = 3
    CHALLENGE_CHECK_INTERVAL_MS: int = 2000
    CHALLENGE_TIMEOUT_MS: int = 25000  # hard ceiling for the whole loop
    CHALLENGE_CONTENT_TEXT_THRESHOLD: int = 5000  # body chars
    CHALLENGE_CONTENT_LINK_THRESHOLD: int = 50
    CHALLENGE_STRUCTURE_LINK_THRESHOLD: int = 10

    # Domains that never render usable content without a real browser
    FORCED_BROWSER_DOMAINS: List[str] = [
        "cybersecuritydive.com",
        "securityweek.com",
        "darkreading.com",
        "bleepingcomputer.com",
    ]

    # Cache
    DOMAIN_CACHE_TTL_SECONDS: int = 86400  # 24 hours
    DOMAIN_CACHE_MAX_FAILURES: int = 3
    ARTICLE_CACHE_TTL_SECONDS: int = 3600
    CACHE_CONFIDENCE_THRESHOLD: float = 0.5

    # Selector discovery (empty model = heuristic oracle)
    ORACLE_MODEL: str = ""
    ORACLE_API_KEY: str = ""
    ORACLE_TIMEOUT: int = 60  # seconds

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
