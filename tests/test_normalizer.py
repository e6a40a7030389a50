"""Tests for app.services.normalizer."""

import math
import random
from datetime import datetime, timezone

import pytest

from app.models.crawl_response import CrawlResult
from app.services.errors import SerializationError
from app.services.normalizer import (
    build_page_rows,
    build_project_summary,
    by_name_and_category,
    by_name_and_type,
    ensure_json_safe,
    merge_tagged,
    process_cms_data,
    process_technologies,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SITE = "https://ex.com"


class TestMergeTagged:
    def test_higher_confidence_duplicate_wins(self):
        merged = merge_tagged(
            [
                {"name": "WordPress", "confidence": 0.6},
                {"name": "WordPress", "confidence": 0.95, "version": "6.2"},
            ]
        )

        assert len(merged) == 1
        assert merged[0]["confidence"] == 0.95
        assert merged[0]["version"] == "6.2"

    def test_lower_or_equal_confidence_keeps_first_values(self):
        merged = merge_tagged(
            [
                {"name": "Yoast", "confidence": 0.9, "version": "1.0"},
                {"name": "Yoast", "confidence": 0.9, "version": "2.0"},
                {"name": "Yoast", "confidence": 0.3, "version": "3.0"},
            ]
        )

        assert merged == [
            {
                "name": "Yoast",
                "confidence": 0.9,
                "version": "1.0",
                "active": True,
                "detection_method": "unknown",
            }
        ]

    def test_falsy_new_value_keeps_old_one(self):
        merged = merge_tagged(
            [
                {"name": "Elementor", "confidence": 0.5, "version": "3.1"},
                {"name": "Elementor", "confidence": 0.9, "version": ""},
            ]
        )
        assert merged[0]["version"] == "3.1"
        assert merged[0]["confidence"] == 0.9

    def test_defaults_applied_to_first_occurrence(self):
        merged = merge_tagged([{}, {"name": "Akismet", "active": False}], default_name="Unknown Plugin")

        assert merged[0]["name"] == "Unknown Plugin"
        assert merged[0]["confidence"] == 0.8
        assert merged[0]["active"] is True
        assert merged[1]["active"] is False
        assert merged[1]["detection_method"] == "unknown"

    def test_output_follows_first_appearance(self):
        merged = merge_tagged([{"name": "b"}, {"name": "a"}, {"name": "b", "confidence": 0.99}])
        assert [item["name"] for item in merged] == ["b", "a"]

    def test_composite_keys(self):
        components = merge_tagged(
            [
                {"name": "Header", "type": "block"},
                {"name": "Header", "type": "widget"},
                {"name": "Header", "type": "block", "confidence": 0.95},
            ],
            by_name_and_type,
        )
        assert [(c["name"], c["type"]) for c in components] == [("Header", "block"), ("Header", "widget")]

        techs = merge_tagged(
            [{"name": "React", "category": "js"}, {"name": "React", "category": "ui"}],
            by_name_and_category,
        )
        assert len(techs) == 2

    def test_percent_confidence_scaled(self):
        merged = merge_tagged([{"name": "PHP", "confidence": 95}])
        assert merged[0]["confidence"] == pytest.approx(0.95)

    @pytest.mark.parametrize(
        "items",
        [
            [],
            [{"name": "A"}, {"name": "A", "confidence": 0.9, "version": "2"}],
            [{}, {"name": "Unknown"}, {"confidence": 0.2}],
            [{"name": "X", "confidence": 0}, {"name": "Y", "active": False}, "Z"],
            [{"name": "Q", "confidence": 150, "version": 3}],
        ],
    )
    def test_idempotent(self, items):
        once = merge_tagged(items)
        assert merge_tagged(once) == once

    def test_merge_order_does_not_change_winning_values(self):
        items = [
            {"name": "WordPress", "category": "cms", "version": "6.1", "confidence": 0.6, "detection_method": "meta"},
            {"name": "WordPress", "category": "cms", "version": "6.4", "confidence": 0.95, "detection_method": "html"},
            {"name": "WordPress", "category": "cms", "version": "5.0", "confidence": 0.3, "detection_method": "url"},
            {"name": "jQuery", "category": "js", "version": "3.6", "confidence": 0.7, "detection_method": "script"},
            {"name": "jQuery", "category": "js", "version": "3.7", "confidence": 0.9, "detection_method": "script"},
            {"name": "Nginx", "category": "server", "version": "1.25", "confidence": 0.5, "detection_method": "header"},
        ]
        rng = random.Random(7)

        def by_identity(merged):
            return {(item["name"], item["category"]): item for item in merged}

        expected = by_identity(merge_tagged(items, by_name_and_category))
        for _ in range(25):
            shuffled = items[:]
            rng.shuffle(shuffled)
            assert by_identity(merge_tagged(shuffled, by_name_and_category)) == expected

        assert expected[("WordPress", "cms")]["version"] == "6.4"
        assert expected[("WordPress", "cms")]["confidence"] == 0.95
        assert expected[("jQuery", "js")]["version"] == "3.7"


class TestProcessCmsData:
    def test_empty_cms(self):
        patch = process_cms_data(None, NOW)
        assert patch["cms_type"] is None
        assert patch["cms_plugins"] is None
        assert patch["cms_metadata"] == {}

    def test_dedup_and_metadata(self):
        cms = {
            "type": "WordPress",
            "version": 6.2,
            "confidence": 0.9,
            "detection_method": "meta_generator",
            "plugins": [
                {"name": "Yoast SEO", "confidence": 0.7},
                {"name": "Yoast SEO", "confidence": 0.95, "version": "21.0"},
                {"name": "Akismet", "active": False},
            ],
            "themes": [{"name": "Astra"}],
            "components": [{"name": "Gallery"}, {"name": "Gallery", "type": "block"}],
            "metadata": {"source": "crawler"},
        }

        patch = process_cms_data(cms, NOW)

        assert patch["cms_type"] == "WordPress"
        assert patch["cms_version"] == "6.2"
        assert [p["name"] for p in patch["cms_plugins"]] == ["Yoast SEO", "Akismet"]
        assert patch["cms_plugins"][0]["version"] == "21.0"
        assert [(c["name"], c["type"]) for c in patch["cms_components"]] == [
            ("Gallery", "unknown"),
            ("Gallery", "block"),
        ]
        meta = patch["cms_metadata"]
        assert meta["detection_timestamp"] == NOW.isoformat()
        assert meta["total_plugins"] == 2
        assert meta["active_plugins"] == 1
        assert meta["total_themes"] == 1
        assert meta["total_components"] == 2
        assert meta["source"] == "crawler"


class TestProcessTechnologies:
    def test_merges_detailed_and_summary_names(self):
        patch = process_technologies(
            [
                "jQuery",
                {"name": "WordPress", "category": "cms", "confidence": 0.6},
                {"name": "WordPress", "category": "cms", "confidence": 0.95, "version": "6.2"},
                {"name": "Hotjar", "category": "analytics", "confidence": 0.3},
            ],
            ["jQuery", "Cloudflare"],
            NOW,
        )

        techs = {(t["name"], t["category"]): t for t in patch["technologies"]}
        assert set(techs) == {
            ("jQuery", "unknown"),
            ("WordPress", "cms"),
            ("Hotjar", "analytics"),
            ("Cloudflare", "unknown"),
        }
        assert techs[("WordPress", "cms")]["version"] == "6.2"
        assert techs[("jQuery", "unknown")]["detection_method"] == "extracted_data"
        assert techs[("Cloudflare", "unknown")]["detection_method"] == "summary"
        assert patch["technologies_detection_method"] == "mixed"

        meta = patch["technologies_metadata"]
        assert meta["total_technologies"] == 4
        assert meta["high_confidence_technologies"] == 3
        assert meta["medium_confidence_technologies"] == 0
        assert meta["low_confidence_technologies"] == 1
        assert set(meta["categories"]) == {"unknown", "cms", "analytics"}
        expected_mean = (0.9 + 0.95 + 0.3 + 0.9) / 4
        assert patch["technologies_confidence"] == pytest.approx(expected_mean)

    def test_no_technologies(self):
        patch = process_technologies([], [])
        assert patch["technologies"] is None
        assert patch["technologies_confidence"] == 0


class TestEnsureJsonSafe:
    def test_round_trip(self):
        assert ensure_json_safe({"a": [1, "b", None]}) == {"a": [1, "b", None]}

    def test_nan_rejected(self):
        with pytest.raises(SerializationError):
            ensure_json_safe({"bad": math.nan})

    def test_unserializable_object_rejected(self):
        with pytest.raises(SerializationError):
            ensure_json_safe({"bad": object()})


def _crawl_result(**overrides):
    data = {
        "pages": [
            {
                "url": "https://ex.com",
                "statusCode": 200,
                "title": "Home",
                "html": (
                    '<html><head><meta name="description" content="Welcome">'
                    '<meta property="og:title" content="Home"></head>'
                    "<body><a href='/a'>A</a><img src='/logo.png'></body></html>"
                ),
                "technologies": ["WordPress"],
            },
            {
                "url": "https://ex.com/a",
                "title": "A",
                "links": [{"url": "https://ex.com/"}, {"url": "https://out.com/"}],
                "images": [{"src": "/a.jpg", "alt": "a"}],
                "metaTags": {"description": "Page A"},
            },
        ],
        "summary": {"totalPages": 2, "totalLinks": 0, "technologies": ["PHP"]},
        "performance": {"pagesPerSecond": 1.5, "totalTime": 1200},
        "extractedData": {
            "cms": {"type": "WordPress", "plugins": [{"name": "Yoast"}]},
            "technologies": [{"name": "WordPress", "category": "cms", "confidence": 0.9}],
        },
        "responseTime": 850,
    }
    data.update(overrides)
    return CrawlResult.parse(data)


class TestBuildProjectSummary:
    def test_counts_and_patches(self):
        result = _crawl_result()

        summary = build_project_summary(result, SITE, NOW)

        assert summary["total_pages"] == 2
        # Structured links exist on page two, so they are counted instead of HTML ones.
        assert summary["total_links"] == 2
        assert summary["total_images"] == 1
        assert summary["cms_type"] == "WordPress"
        assert [t["name"] for t in summary["technologies"]] == ["WordPress", "PHP"]
        assert summary["pages_per_second"] == 1.5
        assert summary["scraping_completed_at"] == NOW.isoformat()
        assert summary["scraping_data"]["responseTime"] == 850

    def test_serialization_failure_raises(self):
        result = _crawl_result()
        result.raw["broken"] = math.inf

        with pytest.raises(SerializationError):
            build_project_summary(result, SITE, NOW)


class TestBuildPageRows:
    def test_rows_per_page(self):
        rows = build_page_rows("proj-1", _crawl_result(), SITE)

        assert [row.url for row in rows] == ["https://ex.com", "https://ex.com/a"]
        home, page_a = rows
        assert home.audit_project_id == "proj-1"
        assert home.status_code == 200
        assert home.description == "Welcome"
        assert home.social_meta_tags == {"og:title": "Home"}
        # Page two carries structured links and images, so no page falls back to HTML.
        assert home.links == []
        assert home.images == []
        assert home.links_count == home.images_count == 0
        assert home.technologies == ["WordPress"]
        assert home.technologies_count == 1
        assert home.html_content_length == len(home.html_content)
        assert home.response_time == 850

        assert page_a.description == "Page A"
        assert page_a.links_count == 2
        assert page_a.links[1].type.value == "external"
        assert page_a.images[0].alt == "a"

    def test_html_fallback_applies_to_every_page_when_nothing_structured(self):
        result = _crawl_result(
            pages=[
                {"url": "https://ex.com", "html": "<a href='/a'>A</a><img src='/logo.png'>"},
                {"url": "https://ex.com/a", "html": "<a href='https://out.com/'>Out</a>"},
                {"url": "https://ex.com/b"},
            ]
        )

        rows = build_page_rows("proj-1", result, SITE)

        assert [[link.url for link in row.links] for row in rows] == [
            ["https://ex.com/a"],
            ["https://out.com/"],
            [],
        ]
        assert [image.url for image in rows[0].images] == ["https://ex.com/logo.png"]

    @pytest.mark.parametrize(
        "pages",
        [
            [
                {"url": "https://ex.com", "html": "<a href='/x'>X</a><a href='/y'>Y</a>"},
                {"url": "https://ex.com/a", "links": [{"url": "/"}, {"url": "https://partner.com"}]},
            ],
            [
                {"url": "https://ex.com", "html": "<a href='/x'>X</a><img src='/x.png'>"},
                {"url": "https://ex.com/a", "html": "<img src='/y.gif'>"},
            ],
            [
                {"url": "https://ex.com", "images": [{"src": "/a.jpg"}]},
                {"url": "https://ex.com/a", "html": "<img src='/b.jpg'><a href='/z'>Z</a>"},
            ],
        ],
    )
    def test_row_counts_agree_with_summary(self, pages):
        result = _crawl_result(pages=pages, summary={})

        rows = build_page_rows("proj-1", result, SITE)
        summary = build_project_summary(result, SITE, NOW)

        assert summary["total_pages"] == len(rows)
        assert summary["total_links"] == sum(row.links_count for row in rows)
        assert summary["total_images"] == sum(row.images_count for row in rows)
