"""Deduplication of detections and assembly of persisted records.

Crawlers report the same plugin, theme or technology many times, once per
page or detection method.  :func:`merge_tagged` collapses those repeats into
one record per identity, keeping the values reported with the highest
confidence.
"""

import json
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Union

from app.models.crawl_response import CrawlResult, RawPage
from app.models.detection import DEFAULT_CONFIDENCE, CMSComponentRecord, TechnologyRecord
from app.models.page import ImageRecord, LinkRecord, ScrapedPage
from app.services.errors import SerializationError
from app.services.extractor import (
    extract_images,
    extract_links,
    extract_meta_tags,
    images_by_page,
    links_by_page,
    meta_description,
    social_meta_tags,
)

logger = logging.getLogger(__name__)

TaggedItem = Dict[str, Any]
KeyFn = Callable[[TaggedItem], Hashable]

# Fields never overwritten by a later, higher-confidence duplicate.
_IDENTITY_FIELDS = ("name",)

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5


def by_name(item: TaggedItem) -> Hashable:
    return item.get("name")


def by_name_and_type(item: TaggedItem) -> Hashable:
    return item.get("name"), item.get("type")


def by_name_and_category(item: TaggedItem) -> Hashable:
    return item.get("name"), item.get("category")


_TEXT_FIELDS = (
    "name",
    "version",
    "category",
    "type",
    "detection_method",
    "description",
    "author",
    "path",
    "website",
    "icon",
)


def _confidence(value: Any) -> float:
    """Coerce a reported confidence to [0, 1]; percentages are scaled down."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if confidence > 1:
        confidence = confidence / 100 if confidence <= 100 else 1.0
    return max(confidence, 0.0) or DEFAULT_CONFIDENCE


def _with_defaults(item: TaggedItem, default_name: str, extra_defaults: Dict[str, Any]) -> TaggedItem:
    record = {key: value for key, value in item.items() if value is not None}
    for field in _TEXT_FIELDS:
        if field in record and not isinstance(record[field], str):
            record[field] = str(record[field])
    record["name"] = record.get("name") or default_name
    record["confidence"] = _confidence(item.get("confidence"))
    record["active"] = item.get("active") is not False
    record["detection_method"] = record.get("detection_method") or "unknown"
    for key, value in extra_defaults.items():
        if not record.get(key):
            record[key] = value
    return record


def merge_tagged(
    items: Iterable[TaggedItem],
    key_fn: KeyFn = by_name,
    default_name: str = "Unknown",
    extra_defaults: Optional[Dict[str, Any]] = None,
) -> List[TaggedItem]:
    """Collapse duplicate detections into one record per ``key_fn`` identity.

    The first occurrence of a key is emitted with defaults applied
    (``confidence`` 0.8, ``active`` True unless explicitly False,
    ``detection_method`` ``"unknown"``).  A later occurrence only overwrites
    the stored record when its confidence is strictly greater, and then only
    with the fields it actually carries.  Output order follows first
    appearance.  Running the merge on its own output returns it unchanged.
    """
    extra_defaults = extra_defaults or {}
    merged: "OrderedDict[Hashable, TaggedItem]" = OrderedDict()

    for item in items:
        if isinstance(item, str):
            item = {"name": item}
        if not isinstance(item, dict):
            continue
        candidate = _with_defaults(item, default_name, extra_defaults)
        key = key_fn(candidate)
        existing = merged.get(key)
        if existing is None:
            merged[key] = candidate
            continue
        if candidate["confidence"] > existing["confidence"]:
            for field, value in candidate.items():
                if field in _IDENTITY_FIELDS:
                    continue
                if field == "active" or value:
                    existing[field] = value

    return list(merged.values())


def _text(value: Any) -> Optional[str]:
    return str(value) if value else None


def _now_iso(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def process_cms_data(cms: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the ``cms_*`` project fields for the crawler's CMS block."""
    if not cms:
        return {
            "cms_type": None,
            "cms_version": None,
            "cms_plugins": None,
            "cms_themes": None,
            "cms_components": None,
            "cms_confidence": 0,
            "cms_detection_method": None,
            "cms_metadata": {},
        }

    def _merge(items: Any, key_fn: KeyFn, default_name: str, **extra: Any) -> Optional[List[TaggedItem]]:
        if not items:
            return None
        merged = merge_tagged(items, key_fn, default_name, extra)
        return [CMSComponentRecord.model_validate(record).model_dump() for record in merged]

    plugins = _merge(cms.get("plugins"), by_name, "Unknown Plugin")
    themes = _merge(cms.get("themes"), by_name, "Unknown Theme")
    components = _merge(cms.get("components"), by_name_and_type, "Unknown Component", type="unknown")

    def _count(records: Optional[List[TaggedItem]], active_only: bool = False) -> int:
        if not records:
            return 0
        return sum(1 for r in records if r["active"]) if active_only else len(records)

    return {
        "cms_type": _text(cms.get("type")),
        "cms_version": _text(cms.get("version")),
        "cms_plugins": plugins,
        "cms_themes": themes,
        "cms_components": components,
        "cms_confidence": _confidence(cms["confidence"]) if cms.get("confidence") else 0,
        "cms_detection_method": _text(cms.get("detection_method")),
        "cms_metadata": {
            "detection_timestamp": _now_iso(now),
            "total_plugins": _count(plugins),
            "total_themes": _count(themes),
            "total_components": _count(components),
            "active_plugins": _count(plugins, active_only=True),
            "active_themes": _count(themes, active_only=True),
            "active_components": _count(components, active_only=True),
            **(cms["metadata"] if isinstance(cms.get("metadata"), dict) else {}),
        },
    }


def _technology_items(
    detailed: Iterable[Union[str, Dict[str, Any]]],
    summary_names: Iterable[str],
) -> List[TaggedItem]:
    items: List[TaggedItem] = []
    for tech in detailed or []:
        if isinstance(tech, str):
            items.append(
                {"name": tech, "category": "unknown", "confidence": 0.9, "detection_method": "extracted_data"}
            )
        elif isinstance(tech, dict):
            items.append(tech)
    for name in summary_names or []:
        items.append(
            {"name": name, "category": "unknown", "confidence": 0.9, "detection_method": "summary"}
        )
    return items


def process_technologies(
    detailed: Iterable[Union[str, Dict[str, Any]]],
    summary_names: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Return the ``technologies*`` project fields.

    *detailed* may mix bare names and detection objects; *summary_names* are
    the plain names from the crawl summary.  Both are merged on
    ``(name, category)``.
    """
    items = _technology_items(detailed, summary_names)
    if not items:
        return {
            "technologies": None,
            "technologies_confidence": 0,
            "technologies_detection_method": None,
            "technologies_metadata": {},
        }

    merged = merge_tagged(items, by_name_and_category, "Unknown Technology", {"category": "unknown"})
    technologies = [TechnologyRecord.model_validate(record).model_dump() for record in merged]

    by_category: Dict[str, List[Dict[str, Any]]] = {}
    for tech in technologies:
        by_category.setdefault(tech["category"], []).append(tech)

    confidences = [tech["confidence"] for tech in technologies]
    return {
        "technologies": technologies,
        "technologies_confidence": sum(confidences) / len(confidences),
        "technologies_detection_method": "mixed",
        "technologies_metadata": {
            "detection_timestamp": _now_iso(now),
            "total_technologies": len(technologies),
            "categories": list(by_category),
            "technologies_by_category": by_category,
            "high_confidence_technologies": sum(1 for c in confidences if c >= HIGH_CONFIDENCE),
            "medium_confidence_technologies": sum(
                1 for c in confidences if MEDIUM_CONFIDENCE <= c < HIGH_CONFIDENCE
            ),
            "low_confidence_technologies": sum(1 for c in confidences if c < MEDIUM_CONFIDENCE),
        },
    }


def ensure_json_safe(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Round-trip *patch* through JSON and return the decoded copy.

    Raises:
        SerializationError: if any value cannot be represented as JSON.
    """
    try:
        return json.loads(json.dumps(patch, allow_nan=False))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Project summary is not JSON-serializable: {exc}") from exc


def build_project_summary(
    result: CrawlResult,
    site_url: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Assemble the AuditProject patch for a finished crawl.

    Counters prefer the crawler's own summary and fall back to what was
    extracted from the pages.  The patch is validated with a JSON round trip
    before it is returned.
    """
    now = now or datetime.now(timezone.utc)
    summary = result.summary
    links = extract_links(result.pages, site_url)
    images = extract_images(result.pages, site_url)

    patch: Dict[str, Any] = {
        "total_pages": len(result.pages),
        "total_links": summary.total_links or len(links),
        "total_images": summary.total_images or len(images),
        "total_meta_tags": summary.total_meta_tags or sum(len(p.meta_tags) for p in result.pages),
        "technologies_found": summary.technologies_found,
        "cms_detected": summary.cms_detected,
        **process_cms_data(result.extracted_data.cms, now),
        **process_technologies(result.extracted_data.technologies, summary.technologies, now),
        "total_html_content": summary.total_html_content,
        "average_html_per_page": summary.average_html_per_page,
        "pages_per_second": result.performance.pages_per_second,
        "total_response_time": result.performance.total_time,
        "scraping_completed_at": now.isoformat(),
        "scraping_data": result.raw,
    }
    return ensure_json_safe(patch)


def _page_row(
    project_id: str,
    page: RawPage,
    links: List[LinkRecord],
    images: List[ImageRecord],
    response_time: Optional[float],
) -> ScrapedPage:
    meta_tags = page.meta_tags or extract_meta_tags(page.html)
    social = page.social_meta_tags or social_meta_tags(meta_tags)
    technologies = page.technology_names
    return ScrapedPage(
        audit_project_id=project_id,
        url=page.url,
        status_code=page.status_code or 200,
        title=page.title,
        description=page.meta_description or meta_description(meta_tags),
        html_content=page.html,
        html_content_length=page.html_content_length or len(page.html),
        links_count=len(links),
        images_count=len(images),
        meta_tags_count=len(meta_tags),
        technologies_count=len(technologies),
        technologies=technologies,
        links=links,
        images=images,
        social_meta_tags=social,
        social_meta_tags_count=len(social),
        is_external=page.is_external,
        response_time=page.response_time if page.response_time is not None else response_time,
        performance_analysis=page.performance_analysis,
    )


def build_page_rows(project_id: str, result: CrawlResult, site_url: str) -> List[ScrapedPage]:
    """Return one :class:`ScrapedPage` per crawled page, in crawl order."""
    rows = [
        _page_row(project_id, page, links, images, result.response_time)
        for page, links, images in zip(
            result.pages,
            links_by_page(result.pages, site_url),
            images_by_page(result.pages, site_url),
        )
    ]
    logger.debug("Built %d page rows for project %s", len(rows), project_id)
    return rows
