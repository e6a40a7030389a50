"""One crawl run per audit project.

A run moves a per-project :class:`CrawlToken` through
``pending → dispatching → normalizing → completed`` (or ``failed``).  Tokens
live in a :class:`CrawlRegistry` keyed by project id, so two projects can be
crawled concurrently in the same process while a second run for the *same*
project is rejected.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx
from pydantic import ValidationError

from app.config import DEFAULT_MAX_PAGES, Settings
from app.models.crawl_request import CrawlPayload
from app.models.crawl_response import CrawlResult
from app.models.page import ScrapedPage
from app.models.project import AuditProject, ProjectStatus
from app.services.errors import (
    CrawlRejected,
    MixedContentError,
    NetworkError,
    PersistenceError,
    SerializationError,
)
from app.services.fetcher import request_with_failover
from app.services.normalizer import build_page_rows, build_project_summary
from app.services.pagespeed import fetch_pagespeed_insights
from app.services.persistence import Persistence, PersistenceResult
from app.services.seo import SEOScorer, analyze_seo, placeholder_html

logger = logging.getLogger(__name__)

PageSpeedFetcher = Callable[[str, Optional[str]], Awaitable[PersistenceResult]]

# Keys probed in the raw crawl payload when no page carries HTML.
ALTERNATE_HTML_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("html",),
    ("content",),
    ("body",),
    ("page", "html"),
    ("homepage", "html"),
    ("main_page", "html"),
)


class CrawlState(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    NORMALIZING = "normalizing"
    COMPLETED = "completed"
    FAILED = "failed"


_LIVE_STATES = {CrawlState.DISPATCHING, CrawlState.NORMALIZING}


@dataclass
class CrawlToken:
    project_id: str
    owner_id: str
    state: CrawlState = CrawlState.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def live(self) -> bool:
        return self.state in _LIVE_STATES


class CrawlRegistry:
    """Per-project crawl tokens."""

    def __init__(self) -> None:
        self._tokens: Dict[str, CrawlToken] = {}

    def get(self, project_id: str) -> Optional[CrawlToken]:
        return self._tokens.get(project_id)

    def is_live(self, project_id: str) -> bool:
        token = self._tokens.get(project_id)
        return token is not None and token.live

    def acquire(self, project_id: str, owner_id: str) -> CrawlToken:
        if self.is_live(project_id):
            token = self._tokens[project_id]
            raise CrawlRejected(
                f"Crawl already running for project {project_id}.",
                {"owner_id": token.owner_id, "state": token.state.value},
            )
        token = CrawlToken(project_id=project_id, owner_id=owner_id, state=CrawlState.DISPATCHING)
        self._tokens[project_id] = token
        return token

    def advance(self, project_id: str, state: CrawlState) -> None:
        self._tokens[project_id].state = state

    def release(self, project_id: str, state: CrawlState) -> None:
        token = self._tokens.get(project_id)
        if token is not None:
            token.state = state

    def discard(self, project_id: str) -> None:
        self._tokens.pop(project_id, None)


@dataclass
class CrawlOutcome:
    """Result of :meth:`CrawlDispatcher.run`.

    ``persisted`` is False when the crawl itself succeeded but at least one
    durable write failed; ``project`` and ``pages`` still hold the computed
    state.
    """

    project: AuditProject
    pages: List[ScrapedPage]
    persisted: bool = True
    errors: List[str] = field(default_factory=list)


HtmlResolver = Callable[[AuditProject, List[ScrapedPage]], Awaitable[Optional[str]]]


def _dig(data: Any, path: Tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _primary_html(pages: List[ScrapedPage]) -> Optional[str]:
    for page in pages:
        if page.html_content:
            return page.html_content
    return None


class CrawlDispatcher:
    def __init__(
        self,
        settings: Settings,
        persistence: Persistence,
        *,
        registry: Optional[CrawlRegistry] = None,
        scorer: SEOScorer = analyze_seo,
        pagespeed: Optional[PageSpeedFetcher] = fetch_pagespeed_insights,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.settings = settings
        self.persistence = persistence
        self.registry = registry or CrawlRegistry()
        self.scorer = scorer
        self.pagespeed = pagespeed
        self._client = client
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()
        self.html_resolvers: List[Tuple[str, HtmlResolver]] = [
            ("memory", self._html_from_memory),
            ("storage", self._html_from_storage),
            ("scraping_data", self._html_from_scraping_data),
            ("alternate_paths", self._html_from_alternate_paths),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, project: AuditProject, owner_id: Optional[str] = None) -> CrawlOutcome:
        """Crawl *project*'s site and persist the normalized results.

        Raises:
            CrawlRejected: the project is not pending or already being
                crawled.  No network call is made.
            NetworkError, MixedContentError: the crawl request failed.  The
                project is put back to ``pending`` with ``scraping_error`` set.
            SerializationError: the crawl response could not be turned into
                storable records.  The project is marked ``failed``.
        """
        if project.status is not ProjectStatus.PENDING:
            raise CrawlRejected(
                f"Project {project.id} is {project.status.value}, not pending.",
                {"status": project.status.value},
            )
        owner_id = owner_id or uuid.uuid4().hex
        self.registry.acquire(project.id, owner_id)
        logger.info("Starting crawl", extra={"project_id": project.id, "url": project.site_url})

        try:
            return await self._run(project)
        finally:
            token = self.registry.get(project.id)
            if token is not None and token.live:
                # Unexpected exception: never leave a live token behind.
                self.registry.release(project.id, CrawlState.FAILED)

    async def reset_for_retry(self, project: AuditProject) -> AuditProject:
        """Put a failed or interrupted project back to ``pending``.

        Raises:
            CrawlRejected: the project is completed or a crawl is running.
            PersistenceError: the reset could not be saved.
        """
        if not project.can_transition(ProjectStatus.PENDING, reset=True) or self.registry.is_live(project.id):
            raise CrawlRejected(f"Project {project.id} cannot be retried in its current state.")
        patch = {"status": ProjectStatus.PENDING.value, "progress": 0, "scraping_error": None}
        result = await self.persistence.update_audit_project(project.id, patch, reset=True)
        if result.error:
            raise PersistenceError(result.error, {"project_id": project.id})
        self.registry.discard(project.id)
        logger.info("Project %s reset for retry", project.id)
        return result.data

    async def wait_for_background(self) -> None:
        """Wait for outstanding PageSpeed tasks."""
        if self._background:
            await asyncio.gather(*list(self._background))

    async def resolve_seo_html(
        self, project: AuditProject, pages: List[ScrapedPage]
    ) -> Tuple[str, str]:
        """Return ``(html, source)`` from the first resolver that finds HTML."""
        for source, resolver in self.html_resolvers:
            html = await resolver(project, pages)
            if html:
                return html, source
        logger.warning("No crawled HTML for project %s – using placeholder document", project.id)
        return placeholder_html(project.site_url), "placeholder"

    # ------------------------------------------------------------------
    # Run steps
    # ------------------------------------------------------------------

    async def _run(self, project: AuditProject) -> CrawlOutcome:
        errors: List[str] = []

        start_patch = {
            "status": ProjectStatus.IN_PROGRESS.value,
            "progress": 10,
            "scraping_error": None,
            "pagespeed_insights_loading": self.pagespeed is not None,
        }
        project = project.apply(start_patch)
        await self._save(project.id, start_patch, errors)
        self._start_pagespeed(project)

        try:
            response = await request_with_failover(
                self.settings.crawl_endpoints,
                self._payload(project),
                self.settings.crawl_timeout_ms,
                self.settings.crawl_max_retries,
                origin_scheme=self.settings.origin_scheme,
                headers=self._headers(),
                client=self._client,
                sleep=self._sleep,
            )
        except (NetworkError, MixedContentError) as exc:
            self.registry.release(project.id, CrawlState.PENDING)
            patch = {"status": ProjectStatus.PENDING.value, "progress": 0, "scraping_error": exc.user_message}
            await self._save(project.id, patch, errors, reset=True)
            logger.error("Crawl failed for project %s: %s", project.id, exc.message)
            raise

        self.registry.advance(project.id, CrawlState.NORMALIZING)
        try:
            result = self._parse(response)
            pages = build_page_rows(project.id, result, project.site_url)
            summary = build_project_summary(result, project.site_url)
        except SerializationError as exc:
            self.registry.release(project.id, CrawlState.FAILED)
            patch = {"status": ProjectStatus.FAILED.value, "scraping_error": exc.user_message}
            await self._save(project.id, patch, errors)
            logger.error("Could not normalize crawl for project %s: %s", project.id, exc.message)
            raise

        pages = await self._save_pages(project, pages, summary, errors)
        project = project.apply(
            {**summary, "status": ProjectStatus.COMPLETED.value, "progress": 100}
        )
        project = await self._run_seo(project, pages, errors)

        self.registry.release(project.id, CrawlState.COMPLETED)
        logger.info(
            "Crawl completed",
            extra={"project_id": project.id, "pages": len(pages), "persisted": not errors},
        )
        return CrawlOutcome(project=project, pages=pages, persisted=not errors, errors=errors)

    def _payload(self, project: AuditProject) -> Dict[str, Any]:
        payload = CrawlPayload(
            url=project.site_url,
            mode=project.page_type,
            max_pages=1 if project.page_type == "single" else DEFAULT_MAX_PAGES,
        )
        return payload.model_dump(by_alias=True)

    def _headers(self) -> Dict[str, str]:
        if self.settings.scraper_api_key:
            return {"X-API-Key": self.settings.scraper_api_key}
        return {}

    @staticmethod
    def _parse(response: httpx.Response) -> CrawlResult:
        try:
            data = response.json()
        except ValueError as exc:
            raise SerializationError("Crawl response is not valid JSON.") from exc
        if not isinstance(data, dict):
            raise SerializationError("Crawl response must be a JSON object.")
        try:
            return CrawlResult.parse(data)
        except ValidationError as exc:
            raise SerializationError(
                "Crawl response does not match the expected shape.",
                {"error_count": exc.error_count()},
            ) from exc

    async def _save(
        self, project_id: str, patch: Dict[str, Any], errors: List[str], *, reset: bool = False
    ) -> bool:
        result = await self.persistence.update_audit_project(project_id, patch, reset=reset)
        if result.error:
            logger.error("Failed to update project %s: %s", project_id, result.error)
            errors.append(result.error)
            return False
        return True

    async def _save_pages(
        self,
        project: AuditProject,
        pages: List[ScrapedPage],
        summary: Dict[str, Any],
        errors: List[str],
    ) -> List[ScrapedPage]:
        """Replace the project's page rows, then write the project summary.

        When the rows cannot be stored the summary is not written either;
        the stored project goes back to ``pending`` so it can be retried.
        """
        created = await self.persistence.replace_scraped_pages(project.id, pages)
        if created.error:
            logger.error("Failed to save %d page(s) for project %s: %s", len(pages), project.id, created.error)
            errors.append(created.error)
            await self._save(
                project.id,
                {
                    "status": ProjectStatus.PENDING.value,
                    "progress": 0,
                    "scraping_error": PersistenceError.user_message,
                },
                errors,
                reset=True,
            )
            return pages

        await self._save(
            project.id,
            {**summary, "status": ProjectStatus.COMPLETED.value, "progress": 100},
            errors,
        )
        return created.data

    async def _run_seo(
        self, project: AuditProject, pages: List[ScrapedPage], errors: List[str]
    ) -> AuditProject:
        html, source = await self.resolve_seo_html(project, pages)
        try:
            analysis = self.scorer(html, project.site_url)
        except Exception:
            logger.exception("SEO analysis failed for project %s", project.id)
            return project

        score = max(0, min(100, int(analysis.get("score") or 0)))
        patch = {"seo_analysis": {**analysis, "html_source": source}, "score": score}
        project = project.apply(patch)
        await self._save(project.id, patch, errors)
        logger.info("SEO analysis for project %s scored %d (html from %s)", project.id, score, source)
        return project

    # ------------------------------------------------------------------
    # HTML resolvers
    # ------------------------------------------------------------------

    async def _html_from_memory(self, project: AuditProject, pages: List[ScrapedPage]) -> Optional[str]:
        return _primary_html(pages)

    async def _html_from_storage(self, project: AuditProject, pages: List[ScrapedPage]) -> Optional[str]:
        result = await self.persistence.get_scraped_pages(project.id)
        if result.error:
            logger.warning("Could not re-fetch pages for project %s: %s", project.id, result.error)
            return None
        return _primary_html(result.data or [])

    async def _html_from_scraping_data(
        self, project: AuditProject, pages: List[ScrapedPage]
    ) -> Optional[str]:
        raw_pages = _dig(project.scraping_data, ("pages",))
        if isinstance(raw_pages, list) and raw_pages and isinstance(raw_pages[0], dict):
            html = raw_pages[0].get("html")
            return html if isinstance(html, str) else None
        return None

    async def _html_from_alternate_paths(
        self, project: AuditProject, pages: List[ScrapedPage]
    ) -> Optional[str]:
        for path in ALTERNATE_HTML_PATHS:
            html = _dig(project.scraping_data, path)
            if isinstance(html, str) and html:
                return html
        return None

    # ------------------------------------------------------------------
    # PageSpeed
    # ------------------------------------------------------------------

    def _start_pagespeed(self, project: AuditProject) -> None:
        if self.pagespeed is None:
            return
        task = asyncio.create_task(self._run_pagespeed(project.id, project.site_url))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_pagespeed(self, project_id: str, url: str) -> None:
        result = await self.pagespeed(url, self.settings.pagespeed_api_key)
        patch = {
            "pagespeed_insights_data": result.data,
            "pagespeed_insights_loading": False,
            "pagespeed_insights_error": result.error,
        }
        saved = await self.persistence.update_audit_project(project_id, patch)
        if saved.error:
            logger.error("Failed to save PageSpeed results for project %s: %s", project_id, saved.error)
