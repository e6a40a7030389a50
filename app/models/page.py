from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LinkType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class LinkStatus(str, Enum):
    WORKING = "working"
    BROKEN = "broken"
    UNKNOWN = "unknown"


class ImageType(str, Enum):
    JPEG = "JPEG"
    PNG = "PNG"
    GIF = "GIF"
    WEBP = "WebP"
    SVG = "SVG"
    BMP = "BMP"
    ICO = "ICO"
    TIFF = "TIFF"
    UNKNOWN = "Unknown"


class LinkRecord(BaseModel):
    """One link discovered on a page.

    ``isBroken`` always mirrors ``status == "broken"``; the validator below
    overrides any inconsistent value supplied by the caller.  Unknown keys are
    kept so that write-backs preserve whatever the crawler attached.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    url: str
    text: str = ""
    title: Optional[str] = None
    type: LinkType = LinkType.EXTERNAL
    status: LinkStatus = LinkStatus.UNKNOWN
    is_broken: bool = Field(default=False, alias="isBroken")

    @model_validator(mode="after")
    def _sync_broken_flag(self) -> "LinkRecord":
        self.is_broken = self.status is LinkStatus.BROKEN
        return self

    def with_status(self, status: LinkStatus) -> "LinkRecord":
        """Return a copy with *status* and ``isBroken`` updated; other fields untouched."""
        return self.model_copy(update={"status": status, "is_broken": status is LinkStatus.BROKEN})


class ImageRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    alt: Optional[str] = None
    title: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    type: ImageType = ImageType.UNKNOWN
    page_url: Optional[str] = None


class ScrapedPage(BaseModel):
    """A single crawled page belonging to one audit project."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    audit_project_id: str
    url: str
    status_code: Optional[int] = None
    title: str = ""
    description: Optional[str] = None
    html_content: str = ""
    html_content_length: int = 0
    links_count: int = 0
    images_count: int = 0
    meta_tags_count: int = 0
    technologies_count: int = 0
    technologies: List[str] = Field(default_factory=list)
    links: List[LinkRecord] = Field(default_factory=list)
    images: List[ImageRecord] = Field(default_factory=list)
    social_meta_tags: Dict[str, str] = Field(default_factory=dict)
    social_meta_tags_count: int = 0
    is_external: bool = False
    response_time: Optional[float] = None
    performance_analysis: Optional[Dict[str, Any]] = None
