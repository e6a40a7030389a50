import asyncio
import logging
import math
import uuid
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.dependencies import Services, get_services
from app.models.page import LinkRecord, ScrapedPage
from app.models.project import AuditProject
from app.models.request import CreateProjectRequest
from app.models.response import CrawlResponse, LinkCheckSnapshot, ProjectResponse
from app.services.errors import (
    AuditPipelineError,
    CrawlRejected,
    FeatureUnavailable,
    MixedContentError,
    NetworkError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)
router = APIRouter(prefix="/projects", tags=["projects"])


def _http_error(exc: AuditPipelineError) -> HTTPException:
    """Translate a pipeline error into the HTTP error returned to the dashboard."""
    if isinstance(exc, NetworkError):
        status = 504 if exc.timed_out else 502
    elif isinstance(exc, MixedContentError):
        status = 400
    elif isinstance(exc, FeatureUnavailable):
        status = 403
    elif isinstance(exc, CrawlRejected):
        status = 409
    else:
        status = 500
    return HTTPException(status_code=status, detail=exc.user_message)


async def _load_project(services: Services, project_id: str) -> AuditProject:
    result = await services.persistence.get_audit_project(project_id)
    if result.error or result.data is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found.")
    return result.data


async def _load_pages(services: Services, project_id: str) -> List[ScrapedPage]:
    result = await services.persistence.get_scraped_pages(project_id)
    if result.error:
        logger.error("Failed to load pages for project %s: %s", project_id, result.error)
        raise HTTPException(status_code=500, detail="Could not load the crawled pages.")
    return result.data or []


@router.post("", response_model=AuditProject, status_code=201, summary="Create an audit project")
@limiter.limit("10/minute")
async def create_project(
    request: Request,
    body: CreateProjectRequest,
    services: Services = Depends(get_services),
) -> AuditProject:
    project = AuditProject(id=uuid.uuid4().hex, site_url=str(body.site_url), page_type=body.page_type)
    result = await services.persistence.create_audit_project(project)
    if result.error:
        logger.error("Failed to create project for %s: %s", project.site_url, result.error)
        raise HTTPException(status_code=500, detail=PersistenceError.user_message)
    logger.info("Project created", extra={"project_id": project.id, "url": project.site_url})
    return result.data


@router.get(
    "/{project_id}",
    response_model=ProjectResponse,
    summary="Read a project and its crawled pages",
    description=(
        "Served from the in-process cache while the cached entry is younger "
        "than two minutes; otherwise re-read from storage and re-cached."
    ),
)
@limiter.limit("60/minute")
async def get_project(
    request: Request,
    project_id: str,
    services: Services = Depends(get_services),
) -> ProjectResponse:
    entry = services.cache.get(project_id)
    if entry is not None and not services.cache.is_stale(entry):
        return ProjectResponse(project=entry.project, pages=entry.scraped_pages, cached=True)

    project = await _load_project(services, project_id)
    pages = await _load_pages(services, project_id)
    services.cache.set(project_id, project, pages)
    return ProjectResponse(project=project, pages=pages, cached=False)


@router.post("/{project_id}/crawl", response_model=CrawlResponse, summary="Crawl a pending project")
@limiter.limit("5/minute")
async def crawl_project(
    request: Request,
    project_id: str,
    services: Services = Depends(get_services),
) -> CrawlResponse:
    project = await _load_project(services, project_id)
    logger.info("Crawl request received", extra={"project_id": project_id, "url": project.site_url})

    try:
        outcome = await services.dispatcher.run(project)
    except AuditPipelineError as exc:
        logger.warning("Crawl for project %s did not complete: %s", project_id, exc.message)
        raise _http_error(exc)
    finally:
        services.cache.invalidate(project_id)

    return CrawlResponse(
        project=outcome.project,
        pages_count=len(outcome.pages),
        persisted=outcome.persisted,
        errors=outcome.errors,
    )


@router.post("/{project_id}/retry", response_model=AuditProject, summary="Reset a project for another crawl")
@limiter.limit("10/minute")
async def retry_project(
    request: Request,
    project_id: str,
    services: Services = Depends(get_services),
) -> AuditProject:
    project = await _load_project(services, project_id)
    try:
        project = await services.dispatcher.reset_for_retry(project)
    except (CrawlRejected, PersistenceError) as exc:
        raise _http_error(exc)
    services.cache.invalidate(project_id)
    return project


def _links_of(pages: List[ScrapedPage]) -> List[LinkRecord]:
    return [link for page in pages for link in page.links]


@router.post(
    "/{project_id}/links/check",
    summary="Check every crawled link",
    description=(
        "Streams one NDJSON line per batch of 50 links with the status of "
        "every link checked so far.  Requires the `broken_links_check` feature."
    ),
)
@limiter.limit("5/minute")
async def check_project_links(
    request: Request,
    project_id: str,
    services: Services = Depends(get_services),
) -> StreamingResponse:
    await _load_project(services, project_id)
    pages = await _load_pages(services, project_id)
    links = _links_of(pages)

    checker = services.link_checker
    cancel = asyncio.Event()
    try:
        snapshots = checker.check_all(links, pages, cancel)
    except FeatureUnavailable as exc:
        logger.info("Link check refused for project %s: %s", project_id, exc.message)
        raise _http_error(exc)

    total_batches = math.ceil(len(links) / checker.batch_size)

    async def _stream() -> AsyncIterator[str]:
        batch = 0
        try:
            async for statuses in snapshots:
                batch += 1
                line = LinkCheckSnapshot(
                    batch=batch,
                    total_batches=total_batches,
                    checked=len(statuses),
                    statuses=statuses,
                )
                yield line.model_dump_json() + "\n"
        finally:
            # Reached early when the client disconnects mid-stream.
            cancel.set()
            await snapshots.aclose()
            services.cache.invalidate(project_id)

    return StreamingResponse(_stream(), media_type="application/x-ndjson")
