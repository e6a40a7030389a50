from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CrawlPayload(BaseModel):
    """Body POSTed to the external scraping service.

    Serialize with ``model_dump(by_alias=True)`` to get the camelCase keys the
    service expects.
    """

    model_config = ConfigDict(populate_by_name=True)

    url: str
    mode: Literal["single", "multipage"] = "single"
    max_pages: int = Field(default=100, ge=1, alias="maxPages")
    extract_images: bool = Field(default=True, alias="extractImagesFlag")
    extract_links: bool = Field(default=True, alias="extractLinksFlag")
    detect_technologies: bool = Field(default=True, alias="detectTechnologiesFlag")
