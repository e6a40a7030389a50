"""Runtime configuration loaded from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_SCRAPER_BASE_URL = "http://localhost:3001"
CRAWL_PATH = "/scrap"
DEFAULT_CRAWL_TIMEOUT_MS = 180_000
DEFAULT_CRAWL_MAX_RETRIES = 3
DEFAULT_MAX_PAGES = 100


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _clean_base_url(value: str) -> str:
    # Stray leading '=' characters show up when .env files are written as KEY==value
    return value.strip().lstrip("=").rstrip("/")


@dataclass
class Settings:
    """Service settings.

    ``crawl_endpoints`` is the ordered failover list: the primary scraper
    first, then every fallback base URL.
    """

    scraper_base_url: str = DEFAULT_SCRAPER_BASE_URL
    scraper_fallback_urls: List[str] = field(default_factory=list)
    scraper_api_key: Optional[str] = None
    pagespeed_api_key: Optional[str] = None
    link_check_endpoint: str = "http://localhost:8000/api/check-link"
    link_check_token: Optional[str] = None
    enabled_features: FrozenSet[str] = frozenset()
    crawl_timeout_ms: int = DEFAULT_CRAWL_TIMEOUT_MS
    crawl_max_retries: int = DEFAULT_CRAWL_MAX_RETRIES
    origin_scheme: Optional[str] = None

    @property
    def crawl_endpoints(self) -> List[str]:
        bases = [self.scraper_base_url, *self.scraper_fallback_urls]
        return [f"{_clean_base_url(base)}{CRAWL_PATH}" for base in bases]

    def has_feature(self, feature_id: str) -> bool:
        return feature_id in self.enabled_features

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            scraper_base_url=_clean_base_url(
                os.environ.get("SCRAPER_API_BASE_URL", DEFAULT_SCRAPER_BASE_URL)
            ),
            scraper_fallback_urls=[
                _clean_base_url(url) for url in _split_csv(os.environ.get("SCRAPER_FALLBACK_URLS", ""))
            ],
            scraper_api_key=os.environ.get("SCRAPER_API_KEY") or None,
            pagespeed_api_key=os.environ.get("PAGESPEED_API_KEY") or None,
            link_check_endpoint=os.environ.get(
                "LINK_CHECK_ENDPOINT", "http://localhost:8000/api/check-link"
            ),
            link_check_token=os.environ.get("LINK_CHECK_TOKEN") or None,
            enabled_features=frozenset(_split_csv(os.environ.get("ENABLED_FEATURES", ""))),
            crawl_timeout_ms=int(os.environ.get("CRAWL_TIMEOUT_MS", DEFAULT_CRAWL_TIMEOUT_MS)),
            crawl_max_retries=int(os.environ.get("CRAWL_MAX_RETRIES", DEFAULT_CRAWL_MAX_RETRIES)),
            origin_scheme=os.environ.get("ORIGIN_SCHEME") or None,
        )
        logger.info(
            "Loaded settings: %d crawl endpoint(s), features=%s",
            len(settings.crawl_endpoints),
            sorted(settings.enabled_features),
        )
        return settings
