"""Link, image and meta-tag extraction from crawl results.

Links and images come from one of two tiers.  Tier 1 is the structured
``links`` / ``images`` arrays the crawler attached to each page.  Tier 2 is
only used when tier 1 is empty across *all* pages: each page's HTML is parsed
for ``<a href>`` and ``<img>`` elements.  Both tiers go through the same
filtering, URL resolution and classification rules.
"""

import logging
import posixpath
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from app.models.crawl_response import RawImage, RawLink, RawMetaTag, RawPage
from app.models.page import ImageRecord, ImageType, LinkRecord, LinkType

logger = logging.getLogger(__name__)

_BLOCKED_HOSTS = ("localhost", "127.0.0.1")
_SKIP_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")
_SOCIAL_PREFIXES = ("og:", "twitter:", "article:", "fb:")

_IMAGE_TYPES: Dict[str, ImageType] = {
    "jpg": ImageType.JPEG,
    "jpeg": ImageType.JPEG,
    "png": ImageType.PNG,
    "gif": ImageType.GIF,
    "webp": ImageType.WEBP,
    "svg": ImageType.SVG,
    "bmp": ImageType.BMP,
    "ico": ImageType.ICO,
    "tif": ImageType.TIFF,
    "tiff": ImageType.TIFF,
}


def classify_image_type(url: str) -> ImageType:
    """Map the file extension of *url* to an :class:`ImageType` (case-insensitive)."""
    path = urlparse(url or "").path
    _, ext = posixpath.splitext(posixpath.basename(path))
    return _IMAGE_TYPES.get(ext.lstrip(".").lower(), ImageType.UNKNOWN)


def _is_blocked(target: str) -> bool:
    """Return True for empty, fragment-only, non-web or loopback targets."""
    target = target.strip()
    if not target or target.lower().startswith(_SKIP_PREFIXES):
        return True
    lowered = target.lower()
    return any(host in lowered for host in _BLOCKED_HOSTS)


def _origin(site_url: str) -> str:
    parsed = urlparse(site_url)
    if not parsed.scheme or not parsed.netloc:
        return site_url.rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc}"


def resolve_url(target: str, site_url: str) -> str:
    """Return an absolute ``https://`` URL for *target*.

    ``/path`` is joined to the site origin, protocol-relative ``//host/path``
    gets a scheme, and any other relative target is appended to *site_url*
    with a ``/`` separator.
    """
    target = target.strip()
    if target.startswith("http"):
        absolute = target
    elif target.startswith("//"):
        absolute = f"https:{target}"
    elif target.startswith("/"):
        absolute = f"{_origin(site_url)}{target}"
    else:
        absolute = f"{site_url.rstrip('/')}/{target}"

    if absolute.startswith("http://"):
        absolute = "https://" + absolute[len("http://"):]
    return absolute


def classify_link(href: str, site_url: str) -> LinkType:
    """Internal when *href* is root-relative or points at the site's own host."""
    href = href.strip()
    if href.startswith("/") and not href.startswith("//"):
        return LinkType.INTERNAL
    if href.startswith("http"):
        site_host = (urlparse(site_url).hostname or "").lower()
        if site_host and (urlparse(href).hostname or "").lower() == site_host:
            return LinkType.INTERNAL
    return LinkType.EXTERNAL


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------

def _link_record(raw: RawLink, site_url: str) -> Optional[LinkRecord]:
    if _is_blocked(raw.href):
        return None
    url = resolve_url(raw.href, site_url)
    if _is_blocked(url):
        return None
    return LinkRecord(
        url=url,
        text=raw.text,
        title=raw.title,
        type=classify_link(raw.href, site_url),
    )


def _apply_full_tag(raw: RawImage) -> RawImage:
    """Override loose image fields with the attributes of the raw ``<img>`` tag."""
    if not raw.full_tag:
        return raw
    tag = BeautifulSoup(raw.full_tag, "lxml").find("img")
    if tag is None:
        return raw
    parsed = RawImage.model_validate(
        {
            "src": tag.get("src") or tag.get("data-src") or "",
            "alt": tag.get("alt"),
            "title": tag.get("title"),
            "width": tag.get("width"),
            "height": tag.get("height"),
        }
    )
    return raw.model_copy(
        update={
            "src": parsed.src or raw.src,
            "alt": parsed.alt if parsed.alt is not None else raw.alt,
            "title": parsed.title if parsed.title is not None else raw.title,
            "width": parsed.width if parsed.width is not None else raw.width,
            "height": parsed.height if parsed.height is not None else raw.height,
        }
    )


def _image_record(raw: RawImage, site_url: str, page_url: Optional[str]) -> Optional[ImageRecord]:
    raw = _apply_full_tag(raw)
    if _is_blocked(raw.src):
        return None
    url = resolve_url(raw.src, site_url)
    if _is_blocked(url):
        return None
    return ImageRecord(
        url=url,
        alt=raw.alt,
        title=raw.title,
        width=raw.width,
        height=raw.height,
        type=classify_image_type(raw.src),
        page_url=page_url,
    )


# ---------------------------------------------------------------------------
# HTML parsing (tier 2)
# ---------------------------------------------------------------------------

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def _links_from_html(html: str) -> List[RawLink]:
    links: List[RawLink] = []
    for a in _soup(html).find_all("a", href=True):
        links.append(
            RawLink(
                href=str(a["href"]).strip(),
                text=a.get_text(strip=True),
                title=a.get("title"),
            )
        )
    return links


def _images_from_html(html: str) -> List[RawImage]:
    images: List[RawImage] = []
    for img in _soup(html).find_all("img"):
        images.append(
            RawImage.model_validate(
                {
                    "src": img.get("src") or img.get("data-src") or "",
                    "alt": img.get("alt"),
                    "title": img.get("title"),
                    "width": img.get("width"),
                    "height": img.get("height"),
                }
            )
        )
    return images


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _collect_links(raw_links: Iterable[RawLink], site_url: str) -> List[LinkRecord]:
    records = (_link_record(raw, site_url) for raw in raw_links)
    return [record for record in records if record is not None]


def _collect_images(
    raw_images: Iterable[RawImage], site_url: str, page_url: Optional[str]
) -> List[ImageRecord]:
    records = (_image_record(raw, site_url, page_url) for raw in raw_images)
    return [record for record in records if record is not None]


def links_by_page(pages: Sequence[RawPage], site_url: str) -> List[List[LinkRecord]]:
    """Return each page's usable links, aligned with *pages*.

    The tier is chosen once for the whole crawl: HTML is parsed only when no
    page carries a structured link.
    """
    structured = [_collect_links(page.links, site_url) for page in pages]
    if any(structured):
        return structured

    parsed = [
        _collect_links(_links_from_html(page.html), site_url) if page.html else []
        for page in pages
    ]
    found = sum(len(links) for links in parsed)
    if found:
        logger.info("Extracted %d links from HTML fallback", found)
    return parsed


def images_by_page(pages: Sequence[RawPage], site_url: str) -> List[List[ImageRecord]]:
    """Return each page's usable images, aligned with *pages*, with the same tier rule as links."""
    structured = [_collect_images(page.images, site_url, page.url or None) for page in pages]
    if any(structured):
        return structured

    parsed = [
        _collect_images(_images_from_html(page.html), site_url, page.url or None) if page.html else []
        for page in pages
    ]
    found = sum(len(images) for images in parsed)
    if found:
        logger.info("Extracted %d images from HTML fallback", found)
    return parsed


def extract_links(pages: Sequence[RawPage], site_url: str) -> List[LinkRecord]:
    """Return every usable link across *pages*, structured data first, HTML second."""
    return [link for links in links_by_page(pages, site_url) for link in links]


def extract_images(pages: Sequence[RawPage], site_url: str) -> List[ImageRecord]:
    """Return every usable image across *pages*, structured data first, HTML second."""
    return [image for images in images_by_page(pages, site_url) for image in images]


def extract_meta_tags(html: str) -> List[RawMetaTag]:
    """Return every ``<meta>`` tag in *html* that carries content."""
    tags: List[RawMetaTag] = []
    if not html:
        return tags
    for meta in _soup(html).find_all("meta"):
        tag = RawMetaTag.model_validate(
            {
                "name": meta.get("name"),
                "property": meta.get("property"),
                "http-equiv": meta.get("http-equiv"),
                "content": meta.get("content"),
            }
        )
        if tag.key and tag.content:
            tags.append(tag)
    return tags


def meta_description(meta_tags: Sequence[RawMetaTag]) -> Optional[str]:
    for tag in meta_tags:
        if (tag.name or "").lower() == "description" and tag.content:
            return tag.content
    return None


def social_meta_tags(meta_tags: Sequence[RawMetaTag]) -> Dict[str, str]:
    """Return Open Graph / Twitter card tags keyed by property name."""
    social: Dict[str, str] = {}
    for tag in meta_tags:
        key = (tag.property_name or tag.name or "").lower()
        if key.startswith(_SOCIAL_PREFIXES) and tag.content:
            social[key] = tag.content
    return social
