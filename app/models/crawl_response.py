"""Boundary schema for the scraping service's JSON response.

The crawler is loose about shapes: links arrive as bare strings or as objects
keyed ``url`` or ``href``, images as ``src`` or ``url``, HTML as ``html`` or
``htmlContent``, meta tags as a list or a mapping.  The ``mode="before"``
validators below fold every accepted variant into one canonical shape so
nothing downstream has to inspect aliases.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _first(data: Dict[str, Any], *keys: str) -> Any:
    """Return the first truthy value among *keys* in *data*."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        digits = value.strip().removesuffix("px")
        if digits.isdigit():
            return int(digits)
    return None


class RawLink(BaseModel):
    href: str = ""
    text: str = ""
    title: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"href": data}
        if isinstance(data, dict):
            return {
                "href": str(_first(data, "url", "href") or "").strip(),
                "text": str(_first(data, "text", "anchorText") or "").strip(),
                "title": _first(data, "title"),
            }
        return data


class RawImage(BaseModel):
    src: str = ""
    alt: Optional[str] = None
    title: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    full_tag: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"src": data}
        if isinstance(data, dict):
            return {
                "src": str(_first(data, "src", "url", "original_url") or "").strip(),
                "alt": _first(data, "alt", "altText", "alt_text"),
                "title": _first(data, "title", "titleText", "title_text"),
                "width": _to_int(data.get("width")),
                "height": _to_int(data.get("height")),
                "full_tag": _first(data, "fullTag", "full_tag"),
            }
        return data


class RawMetaTag(BaseModel):
    name: Optional[str] = None
    # `<meta property=...>`, used by Open Graph tags
    property_name: Optional[str] = None
    http_equiv: Optional[str] = None
    content: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                "name": data.get("name"),
                "property_name": _first(data, "property", "property_name"),
                "http_equiv": _first(data, "httpEquiv", "http-equiv", "http_equiv"),
                "content": str(data.get("content") or ""),
            }
        return data

    @property
    def key(self) -> Optional[str]:
        return self.name or self.property_name or self.http_equiv


class RawPage(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str = ""
    status_code: Optional[int] = None
    title: str = ""
    meta_description: Optional[str] = None
    html: str = ""
    html_content_length: Optional[int] = None
    links: List[RawLink] = Field(default_factory=list)
    images: List[RawImage] = Field(default_factory=list)
    meta_tags: List[RawMetaTag] = Field(default_factory=list)
    technologies: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    social_meta_tags: Dict[str, str] = Field(default_factory=dict)
    is_external: bool = False
    response_time: Optional[float] = None
    performance_analysis: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            **data,
            "url": str(data.get("url") or ""),
            "status_code": _first(data, "statusCode", "status_code"),
            "title": str(data.get("title") or ""),
            "meta_description": _first(data, "metaDescription", "description"),
            "html": str(_first(data, "html", "htmlContent", "html_content") or ""),
            "html_content_length": _first(data, "htmlContentLength", "html_content_length"),
            "links": [link for link in data.get("links") or [] if link is not None],
            "images": [image for image in data.get("images") or [] if image is not None],
            "meta_tags": data.get("metaTags") or data.get("meta_tags") or [],
            "technologies": data.get("technologies") or [],
            "social_meta_tags": _first(data, "socialMetaTags", "social_meta_tags") or {},
            "is_external": bool(_first(data, "isExternal", "is_external")),
            "response_time": _first(data, "responseTime", "response_time"),
            "performance_analysis": _first(data, "performanceAnalysis", "performance_analysis"),
        }

    @field_validator("meta_tags", mode="before")
    @classmethod
    def _meta_mapping_to_list(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [{"name": key, "content": content} for key, content in value.items()]
        return value

    @field_validator("social_meta_tags", mode="before")
    @classmethod
    def _stringify_social(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items() if v is not None}
        return {}

    @property
    def technology_names(self) -> List[str]:
        names = []
        for tech in self.technologies:
            name = tech if isinstance(tech, str) else tech.get("name")
            if name:
                names.append(str(name))
        return names


class CrawlSummary(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    total_pages: int = Field(default=0, alias="totalPages")
    total_links: int = Field(default=0, alias="totalLinks")
    total_images: int = Field(default=0, alias="totalImages")
    total_meta_tags: int = Field(default=0, alias="totalMetaTags")
    technologies_found: int = Field(default=0, alias="technologiesFound")
    cms_detected: bool = Field(default=False, alias="cmsDetected")
    total_html_content: int = Field(default=0, alias="totalHtmlContent")
    average_html_per_page: float = Field(default=0, alias="averageHtmlPerPage")
    technologies: List[str] = Field(default_factory=list)


class CrawlPerformance(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    pages_per_second: float = Field(default=0, alias="pagesPerSecond")
    total_time: float = Field(default=0, alias="totalTime")


class ExtractedData(BaseModel):
    model_config = ConfigDict(extra="allow")

    cms: Optional[Dict[str, Any]] = None
    technologies: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)


class CrawlResult(BaseModel):
    """Validated crawl response.  ``raw`` keeps the untouched JSON for fallbacks."""

    model_config = ConfigDict(populate_by_name=True)

    pages: List[RawPage]
    summary: CrawlSummary = Field(default_factory=CrawlSummary)
    performance: CrawlPerformance = Field(default_factory=CrawlPerformance)
    extracted_data: ExtractedData = Field(default_factory=ExtractedData, alias="extractedData")
    response_time: Optional[float] = Field(default=None, alias="responseTime")
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "CrawlResult":
        present = {key: value for key, value in data.items() if value is not None}
        return cls.model_validate({**present, "raw": data})
