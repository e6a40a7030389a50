"""Baseline on-page SEO scorer.

Starts from 100 and deducts points for each rule the page breaks.  The
dispatcher accepts any callable with the same ``(html, url) -> dict``
signature, so a richer scorer can be swapped in without touching the crawl.
"""

import html as html_lib
import logging
import re
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

SEOScorer = Callable[[str, str], Dict[str, Any]]

MIN_WORDS = 300


def _issue(kind: str, category: str, title: str, description: str, fix: str, impact: str) -> Dict[str, str]:
    return {
        "type": kind,
        "category": category,
        "title": title,
        "description": description,
        "fix": fix,
        "impact": impact,
    }


def _check_title(soup: BeautifulSoup) -> List[tuple]:
    tag = soup.find("title")
    text = tag.get_text(strip=True) if tag else ""
    if not text:
        return [(20, _issue("error", "Title", "Missing Title Tag",
                            "The page is missing a title tag or it is empty.",
                            "Add a descriptive title tag between 50-60 characters.", "high"))]
    if len(text) < 30:
        return [(5, _issue("warning", "Title", "Title Too Short",
                           f"Title is only {len(text)} characters. Recommended length is 50-60 characters.",
                           "Expand the title to be more descriptive and include relevant keywords.", "medium"))]
    if len(text) > 60:
        return [(3, _issue("warning", "Title", "Title Too Long",
                           f"Title is {len(text)} characters. Recommended length is 50-60 characters.",
                           "Shorten the title to avoid truncation in search results.", "medium"))]
    return []


def _check_description(soup: BeautifulSoup) -> List[tuple]:
    tag = soup.find("meta", attrs={"name": re.compile("^description$", re.I)})
    content = (tag.get("content") or "").strip() if tag else ""
    if not content:
        return [(15, _issue("error", "Meta Description", "Missing Meta Description",
                            "The page is missing a meta description tag.",
                            "Add a compelling meta description between 150-160 characters.", "high"))]
    if len(content) < 120:
        return [(5, _issue("warning", "Meta Description", "Meta Description Too Short",
                           f"Meta description is only {len(content)} characters. "
                           "Recommended length is 150-160 characters.",
                           "Expand the meta description to be more descriptive.", "medium"))]
    if len(content) > 160:
        return [(3, _issue("warning", "Meta Description", "Meta Description Too Long",
                           f"Meta description is {len(content)} characters. "
                           "Recommended length is 150-160 characters.",
                           "Shorten the meta description to avoid truncation.", "medium"))]
    return []


def _check_headings(soup: BeautifulSoup) -> List[tuple]:
    found = []
    h1_count = len(soup.find_all("h1"))
    if h1_count == 0:
        found.append((15, _issue("error", "Headings", "Missing H1 Tag",
                                 "The page is missing an H1 tag.",
                                 "Add a single, descriptive H1 tag that summarizes the main content.", "high")))
    elif h1_count > 1:
        found.append((8, _issue("warning", "Headings", "Multiple H1 Tags",
                                f"Found {h1_count} H1 tags. Only one H1 should be used per page.",
                                "Use only one H1 tag per page and structure other headings with H2-H6.",
                                "medium")))

    previous = 0
    for heading in soup.find_all(re.compile("^h[1-6]$")):
        level = int(heading.name[1])
        if level > previous + 1:
            found.append((5, _issue("warning", "Headings", "Improper Heading Hierarchy",
                                    "Headings are not properly structured (e.g., H1 → H3 without H2).",
                                    "Ensure headings follow a logical hierarchy: H1 → H2 → H3, etc.",
                                    "medium")))
            break
        previous = level
    return found


def _check_images(soup: BeautifulSoup) -> List[tuple]:
    missing = [img for img in soup.find_all("img") if not img.get("alt")]
    if not missing:
        return []
    return [(min(len(missing) * 3, 15), _issue("error", "Images", "Images Missing Alt Text",
                                               f"{len(missing)} image(s) are missing alt text.",
                                               "Add descriptive alt text to all images for accessibility and SEO.",
                                               "high"))]


def _split_links(soup: BeautifulSoup, url: str):
    host = urlparse(url).hostname or ""
    internal, external = [], []
    for a in soup.find_all("a", href=True):
        href = a["href"]
        if href.startswith("/") or (host and host in href):
            internal.append(a)
        elif href.startswith("http"):
            external.append(a)
    return internal, external


def _check_links(soup: BeautifulSoup, url: str) -> List[tuple]:
    found = []
    internal, external = _split_links(soup, url)
    if not internal:
        found.append((5, _issue("warning", "Links", "No Internal Links",
                                "The page has no internal links to other pages on the site.",
                                "Add relevant internal links to improve site structure and user navigation.",
                                "medium")))
    followed = [a for a in external if "nofollow" not in (a.get("rel") or [])]
    if followed:
        found.append((2, _issue("info", "Links", "External Links Without nofollow",
                                f"{len(followed)} external link(s) don't have rel=\"nofollow\".",
                                "Consider adding rel=\"nofollow\" to external links to control link equity.",
                                "low")))
    return found


def _check_head(soup: BeautifulSoup) -> List[tuple]:
    found = []
    if soup.find("meta", attrs={"name": "viewport"}) is None:
        found.append((15, _issue("error", "Mobile", "Missing Viewport Meta Tag",
                                 "The page is missing a viewport meta tag for mobile responsiveness.",
                                 'Add <meta name="viewport" content="width=device-width, initial-scale=1.0"> '
                                 "to the head.", "high")))
    if soup.find("link", rel="canonical") is None:
        found.append((8, _issue("warning", "URL Structure", "Missing Canonical URL",
                                "The page is missing a canonical URL to prevent duplicate content issues.",
                                "Add a canonical link tag pointing to the preferred version of the page.",
                                "medium")))
    og = [soup.find("meta", attrs={"property": prop}) for prop in ("og:title", "og:description", "og:image")]
    if not all(og):
        found.append((5, _issue("warning", "Social Media", "Incomplete Open Graph Tags",
                                "Missing some Open Graph meta tags for social media sharing.",
                                "Add og:title, og:description, and og:image meta tags.", "medium")))
    if not soup.find_all("script", attrs={"type": "application/ld+json"}):
        found.append((3, _issue("info", "Structured Data", "No Structured Data",
                                "The page has no structured data markup.",
                                "Consider adding JSON-LD structured data to help search engines "
                                "understand your content.", "low")))
    return found


def _word_count(soup: BeautifulSoup) -> int:
    body = soup.body or soup
    return len(body.get_text(" ", strip=True).split())


def analyze_seo(html: str, url: str) -> Dict[str, Any]:
    """Score *html* served at *url* and list what to fix.

    Returns ``score`` (0-100), ``issues``, ``highlights`` (checks that
    passed), ``recommendations`` and a ``summary`` of issue counts.
    """
    soup = BeautifulSoup(html or "", "lxml")
    words = _word_count(soup)
    internal, _ = _split_links(soup, url)

    checks = {
        "title": _check_title(soup),
        "meta description": _check_description(soup),
        "headings": _check_headings(soup),
        "images": _check_images(soup),
        "links": _check_links(soup, url),
        "head tags": _check_head(soup),
    }
    if words < MIN_WORDS:
        checks["content"] = [(10, _issue("warning", "Content", "Content Too Short",
                                         f"Page content is only {words} words. "
                                         f"Recommended minimum is {MIN_WORDS} words.",
                                         "Add more valuable, relevant content to improve SEO and user experience.",
                                         "medium"))]
    else:
        checks["content"] = []

    score = 100
    issues: List[Dict[str, str]] = []
    highlights: List[str] = []
    for name, found in checks.items():
        if not found:
            highlights.append(f"No {name} issues found.")
        for penalty, issue in found:
            score -= penalty
            issues.append(issue)

    recommendations: List[str] = []
    if score < 70:
        recommendations.append(
            "Focus on fixing high-impact issues first, especially missing title tags and meta descriptions."
        )
    if any(issue["category"] == "Images" for issue in issues):
        recommendations.append("Add alt text to all images to improve accessibility and SEO.")
    if words < 500:
        recommendations.append(
            "Expand your content with valuable, relevant information to improve search rankings."
        )
    if len(internal) < 3:
        recommendations.append("Add more internal links to improve site structure and user navigation.")

    result = {
        "score": max(0, score),
        "issues": issues,
        "highlights": highlights,
        "recommendations": recommendations,
        "summary": {
            "totalIssues": len(issues),
            "errors": sum(1 for issue in issues if issue["type"] == "error"),
            "warnings": sum(1 for issue in issues if issue["type"] == "warning"),
            "info": sum(1 for issue in issues if issue["type"] == "info"),
        },
    }
    logger.debug("SEO analysis for %s scored %d with %d issue(s)", url, result["score"], len(issues))
    return result


def placeholder_html(url: str, title: Optional[str] = None) -> str:
    """Minimal document used when no crawled HTML is available for *url*."""
    host = html_lib.escape(urlparse(url).hostname or url)
    title = html_lib.escape(title) if title else host
    return (
        "<!DOCTYPE html><html><head>"
        f"<title>{title}</title>"
        "</head><body>"
        f"<h1>{host}</h1>"
        "</body></html>"
    )
