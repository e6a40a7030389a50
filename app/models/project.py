from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from app.models.detection import CMSComponentRecord, TechnologyRecord


class ProjectStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward transitions.  The retry reset back to PENDING is a separate path,
# see AuditProject.can_transition.
ALLOWED_TRANSITIONS = {
    ProjectStatus.PENDING: {ProjectStatus.IN_PROGRESS},
    ProjectStatus.IN_PROGRESS: {ProjectStatus.COMPLETED, ProjectStatus.FAILED},
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.FAILED: set(),
}


class AuditProject(BaseModel):
    """An audited site and every summary the pipeline derives for it."""

    id: str
    site_url: str
    page_type: Literal["single", "multipage"] = "multipage"
    status: ProjectStatus = ProjectStatus.PENDING
    progress: int = 0
    score: Optional[int] = Field(default=None, ge=0, le=100)

    total_pages: int = 0
    total_links: int = 0
    total_images: int = 0
    total_meta_tags: int = 0
    technologies_found: int = 0
    cms_detected: bool = False

    cms_type: Optional[str] = None
    cms_version: Optional[str] = None
    cms_plugins: Optional[List[CMSComponentRecord]] = None
    cms_themes: Optional[List[CMSComponentRecord]] = None
    cms_components: Optional[List[CMSComponentRecord]] = None
    cms_confidence: float = 0
    cms_detection_method: Optional[str] = None
    cms_metadata: Dict[str, Any] = Field(default_factory=dict)

    technologies: Optional[List[TechnologyRecord]] = None
    technologies_confidence: float = 0
    technologies_detection_method: Optional[str] = None
    technologies_metadata: Dict[str, Any] = Field(default_factory=dict)

    total_html_content: int = 0
    average_html_per_page: float = 0
    pages_per_second: float = 0
    total_response_time: float = 0

    scraping_data: Optional[Dict[str, Any]] = None
    scraping_completed_at: Optional[datetime] = None
    scraping_error: Optional[str] = None

    seo_analysis: Optional[Dict[str, Any]] = None
    pagespeed_insights_data: Optional[Dict[str, Any]] = None
    pagespeed_insights_loading: bool = False
    pagespeed_insights_error: Optional[str] = None

    def apply(self, patch: Dict[str, Any], *, reset: bool = False) -> "AuditProject":
        """Return a new project with *patch* merged in and re-validated.

        A status change must be allowed by :meth:`can_transition`; pass
        ``reset=True`` for the retry reset back to ``pending``.

        Raises:
            ValueError: the patch does not validate or the status change is
                not allowed.
        """
        updated = AuditProject.model_validate({**self.model_dump(), **patch})
        if updated.status is not self.status and not self.can_transition(updated.status, reset=reset):
            raise ValueError(
                f"Project {self.id} cannot move from {self.status.value} to {updated.status.value}."
            )
        return updated

    def can_transition(self, target: ProjectStatus, *, reset: bool = False) -> bool:
        if target in ALLOWED_TRANSITIONS[self.status]:
            return True
        # Retry reset: anything not yet completed may start over.
        return reset and target is ProjectStatus.PENDING and self.status is not ProjectStatus.COMPLETED
