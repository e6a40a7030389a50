from typing import Dict, List, Optional

from pydantic import BaseModel

from app.models.page import LinkStatus, ScrapedPage
from app.models.project import AuditProject


class ProjectResponse(BaseModel):
    project: AuditProject
    pages: List[ScrapedPage]
    cached: bool = False
    """True when the data came from the in-process cache instead of storage."""


class CrawlResponse(BaseModel):
    project: AuditProject
    pages_count: int
    persisted: bool
    """False when the crawl succeeded but some results could not be saved."""
    errors: List[str] = []


class LinkCheckSnapshot(BaseModel):
    """One line of the link-check NDJSON stream."""

    batch: int
    total_batches: int
    checked: int
    statuses: Dict[str, LinkStatus]


class CheckLinkResponse(BaseModel):
    isBroken: bool
    status: str
    httpStatus: Optional[int] = None
    statusText: Optional[str] = None
    error: Optional[str] = None
