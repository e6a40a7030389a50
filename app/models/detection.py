from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CONFIDENCE = 0.8


class DetectionRecord(BaseModel):
    """Fields shared by every confidence-tagged detection."""

    model_config = ConfigDict(extra="allow")

    name: str
    version: Optional[str] = None
    confidence: float = Field(default=DEFAULT_CONFIDENCE, ge=0, le=1)
    detection_method: str = "unknown"
    active: bool = True
    description: Optional[str] = None
    author: Optional[str] = None
    path: Optional[str] = None


class CMSComponentRecord(DetectionRecord):
    """A CMS plugin, theme or component; ``type`` is only set for components."""

    type: Optional[str] = None


class TechnologyRecord(DetectionRecord):
    category: str = "unknown"
    website: Optional[str] = None
    icon: Optional[str] = None
