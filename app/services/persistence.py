"""Persistence collaborator.

The pipeline only relies on the ``PersistenceResult(data, error)`` contract
of these verbs, never on a storage engine.  :class:`InMemoryPersistence` is the
reference store used by the API and the tests.
"""

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, NamedTuple, Optional, Protocol, Set

from app.models.page import LinkRecord, ScrapedPage
from app.models.project import AuditProject

logger = logging.getLogger(__name__)


class PersistenceResult(NamedTuple):
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Persistence(Protocol):
    async def create_audit_project(self, project: AuditProject) -> PersistenceResult: ...

    async def get_audit_project(self, project_id: str) -> PersistenceResult: ...

    async def update_audit_project(
        self, project_id: str, patch: Dict[str, Any], *, reset: bool = False
    ) -> PersistenceResult: ...

    async def create_scraped_pages(self, rows: List[ScrapedPage]) -> PersistenceResult: ...

    async def replace_scraped_pages(self, project_id: str, rows: List[ScrapedPage]) -> PersistenceResult: ...

    async def get_scraped_pages(self, project_id: str) -> PersistenceResult: ...

    async def update_scraped_page_links(
        self, page_id: str, links: List[LinkRecord]
    ) -> PersistenceResult: ...


class InMemoryPersistence:
    """Process-local store keyed by project and page id.

    Returned objects are copies, so callers cannot mutate stored state.
    ``fail_on`` names verbs that should report an error instead of writing;
    it lets callers exercise the "computed but not saved" paths.
    """

    def __init__(self, fail_on: Optional[Set[str]] = None):
        self._projects: Dict[str, AuditProject] = {}
        self._pages: Dict[str, ScrapedPage] = {}
        self._lock = asyncio.Lock()
        self.fail_on: Set[str] = set(fail_on or ())
        self.calls: List[str] = []

    def _failure(self, verb: str) -> Optional[PersistenceResult]:
        self.calls.append(verb)
        if verb in self.fail_on:
            logger.warning("Persistence verb %s configured to fail", verb)
            return PersistenceResult(error=f"{verb} failed")
        return None

    async def create_audit_project(self, project: AuditProject) -> PersistenceResult:
        failure = self._failure("create_audit_project")
        if failure:
            return failure
        async with self._lock:
            if project.id in self._projects:
                return PersistenceResult(error=f"Project {project.id} already exists")
            self._projects[project.id] = project.model_copy(deep=True)
        return PersistenceResult(project.model_copy(deep=True))

    async def get_audit_project(self, project_id: str) -> PersistenceResult:
        failure = self._failure("get_audit_project")
        if failure:
            return failure
        project = self._projects.get(project_id)
        if project is None:
            return PersistenceResult(error=f"Project {project_id} not found")
        return PersistenceResult(project.model_copy(deep=True))

    async def update_audit_project(
        self, project_id: str, patch: Dict[str, Any], *, reset: bool = False
    ) -> PersistenceResult:
        """Merge *patch* into the stored project.

        Status changes follow :meth:`AuditProject.can_transition`; ``reset``
        permits the retry reset back to ``pending``.
        """
        failure = self._failure("update_audit_project")
        if failure:
            return failure
        async with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return PersistenceResult(error=f"Project {project_id} not found")
            try:
                updated = project.apply(copy.deepcopy(patch), reset=reset)
            except ValueError as exc:
                return PersistenceResult(error=f"Invalid project patch: {exc}")
            self._projects[project_id] = updated
        return PersistenceResult(updated.model_copy(deep=True))

    async def create_scraped_pages(self, rows: List[ScrapedPage]) -> PersistenceResult:
        failure = self._failure("create_scraped_pages")
        if failure:
            return failure
        created: List[ScrapedPage] = []
        async with self._lock:
            for row in rows:
                stored = row.model_copy(update={"id": row.id or uuid.uuid4().hex}, deep=True)
                self._pages[stored.id] = stored
                created.append(stored.model_copy(deep=True))
        return PersistenceResult(created)

    async def replace_scraped_pages(self, project_id: str, rows: List[ScrapedPage]) -> PersistenceResult:
        """Store *rows* as the complete page set of *project_id*, dropping earlier rows."""
        failure = self._failure("replace_scraped_pages")
        if failure:
            return failure
        created: List[ScrapedPage] = []
        async with self._lock:
            stale = [page_id for page_id, page in self._pages.items() if page.audit_project_id == project_id]
            for page_id in stale:
                del self._pages[page_id]
            for row in rows:
                stored = row.model_copy(
                    update={"id": row.id or uuid.uuid4().hex, "audit_project_id": project_id}, deep=True
                )
                self._pages[stored.id] = stored
                created.append(stored.model_copy(deep=True))
        if stale:
            logger.info("Replaced %d stored page(s) for project %s", len(stale), project_id)
        return PersistenceResult(created)

    async def get_scraped_pages(self, project_id: str) -> PersistenceResult:
        failure = self._failure("get_scraped_pages")
        if failure:
            return failure
        pages = [
            page.model_copy(deep=True)
            for page in self._pages.values()
            if page.audit_project_id == project_id
        ]
        return PersistenceResult(pages)

    async def update_scraped_page_links(
        self, page_id: str, links: List[LinkRecord]
    ) -> PersistenceResult:
        failure = self._failure("update_scraped_page_links")
        if failure:
            return failure
        async with self._lock:
            page = self._pages.get(page_id)
            if page is None:
                return PersistenceResult(error=f"Page {page_id} not found")
            updated = page.model_copy(update={"links": [link.model_copy() for link in links]})
            self._pages[page_id] = updated
        return PersistenceResult(updated.model_copy(deep=True))
