"""Short-lived, process-local cache of project and page state."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from app.models.page import ScrapedPage
from app.models.project import AuditProject

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 120


@dataclass
class CacheEntry:
    project: AuditProject
    scraped_pages: List[ScrapedPage] = field(default_factory=list)
    last_fetch_time: float = 0.0


class AnalysisCache:
    """Remember the last fetched project state for ``ttl`` seconds.

    The cache never refreshes itself.  Readers call :meth:`should_refresh`
    and go back to persistence when it returns True.
    """

    def __init__(self, ttl: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, project_id: str) -> Optional[CacheEntry]:
        return self._entries.get(project_id)

    def set(self, project_id: str, project: AuditProject, pages: List[ScrapedPage]) -> CacheEntry:
        entry = CacheEntry(project=project, scraped_pages=list(pages), last_fetch_time=self._clock())
        self._entries[project_id] = entry
        return entry

    def is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.last_fetch_time > self.ttl

    def should_refresh(self, project_id: str) -> bool:
        entry = self.get(project_id)
        return entry is None or self.is_stale(entry)

    def invalidate(self, project_id: str) -> None:
        if self._entries.pop(project_id, None) is not None:
            logger.debug("Invalidated cache entry for project %s", project_id)

    def clear(self) -> None:
        self._entries.clear()
