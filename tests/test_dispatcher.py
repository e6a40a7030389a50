"""Tests for app.services.dispatcher.CrawlDispatcher."""

import asyncio
import json

import httpx
import pytest

from app.config import Settings
from app.models.page import ScrapedPage
from app.models.project import AuditProject, ProjectStatus
from app.services.dispatcher import CrawlDispatcher, CrawlRegistry, CrawlState
from app.services.errors import (
    CrawlRejected,
    MixedContentError,
    NetworkError,
    PersistenceError,
    SerializationError,
)
from app.services.persistence import InMemoryPersistence, PersistenceResult

SITE = "https://ex.com"

_HOME_HTML = (
    "<html><head><title>Example Domain Home Page For Testing Purposes</title>"
    '<meta name="description" content="Example description">'
    "</head><body><h1>Example</h1><a href='/about'>About</a>"
    "<img src='/logo.png' alt='Logo'></body></html>"
)

CRAWL_RESPONSE = {
    "pages": [
        {"url": SITE, "statusCode": 200, "title": "Home", "html": _HOME_HTML},
        {
            "url": f"{SITE}/about",
            "statusCode": 200,
            "title": "About",
            "html": "<html><body><p>About us</p></body></html>",
            "links": [{"url": "/"}, {"url": "https://partner.com"}],
        },
    ],
    "summary": {"totalPages": 2, "totalLinks": 2, "technologies": ["Nginx"]},
    "performance": {"pagesPerSecond": 2.0, "totalTime": 1000},
    "extractedData": {
        "cms": {"type": "WordPress", "version": "6.2", "plugins": [{"name": "Yoast"}]},
        "technologies": [{"name": "WordPress", "category": "cms", "confidence": 0.95}],
    },
    "responseTime": 420,
}


class _Sleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class _Crawler:
    """MockTransport handler that records calls and replays canned responses.

    Each response is a ``(status_code, kwargs)`` pair; the last one repeats.
    """

    def __init__(self, *responses):
        self.responses = list(responses) or [(200, {"json": CRAWL_RESPONSE})]
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status, kwargs = self.responses[min(len(self.requests), len(self.responses)) - 1]
        return httpx.Response(status, **kwargs)


def _settings(**overrides):
    values = {
        "scraper_base_url": "https://scraper.example",
        "scraper_fallback_urls": ["https://backup.example"],
    }
    values.update(overrides)
    return Settings(**values)


async def _setup(crawler=None, store=None, settings=None, status=ProjectStatus.PENDING, **kwargs):
    store = store or InMemoryPersistence()
    project = AuditProject(id="p1", site_url=SITE, status=status)
    await store.create_audit_project(project)
    store.calls.clear()
    crawler = crawler or _Crawler()
    kwargs.setdefault("pagespeed", None)
    dispatcher = CrawlDispatcher(
        settings or _settings(),
        store,
        client=httpx.AsyncClient(transport=httpx.MockTransport(crawler)),
        sleep=_Sleep(),
        **kwargs,
    )
    return dispatcher, store, project, crawler


class _FailSummaryOnce(InMemoryPersistence):
    """Store whose first summary write (the patch carrying ``total_pages``) fails."""

    def __init__(self):
        super().__init__()
        self.summary_failed = False

    async def update_audit_project(self, project_id, patch, *, reset=False):
        if "total_pages" in patch and not self.summary_failed:
            self.summary_failed = True
            self.calls.append("update_audit_project")
            return PersistenceResult(error="summary write failed")
        return await super().update_audit_project(project_id, patch, reset=reset)


async def _stored(store, project_id="p1"):
    return (await store.get_audit_project(project_id)).data


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_in_progress_project_rejected_without_network(self):
        dispatcher, _, project, crawler = await _setup(status=ProjectStatus.IN_PROGRESS)

        with pytest.raises(CrawlRejected):
            await dispatcher.run(project)

        assert crawler.requests == []

    @pytest.mark.asyncio
    async def test_second_run_on_completed_project_is_rejected(self):
        dispatcher, store, project, crawler = await _setup()
        outcome = await dispatcher.run(project)
        assert outcome.project.status is ProjectStatus.COMPLETED

        with pytest.raises(CrawlRejected):
            await dispatcher.run(outcome.project)
        with pytest.raises(CrawlRejected):
            await dispatcher.run(await _stored(store))

        assert len(crawler.requests) == 1

    @pytest.mark.asyncio
    async def test_live_token_blocks_same_project(self):
        registry = CrawlRegistry()
        registry.acquire("p1", owner_id="someone-else")
        dispatcher, _, project, crawler = await _setup(registry=registry)

        with pytest.raises(CrawlRejected) as excinfo:
            await dispatcher.run(project)

        assert excinfo.value.details["owner_id"] == "someone-else"
        assert crawler.requests == []


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_pages_and_summary_persisted_in_order(self):
        dispatcher, store, project, _ = await _setup()

        outcome = await dispatcher.run(project)

        assert outcome.persisted is True
        assert store.calls == [
            "update_audit_project",  # in_progress
            "replace_scraped_pages",
            "update_audit_project",  # summary
            "update_audit_project",  # seo
        ]
        stored = await _stored(store)
        pages = (await store.get_scraped_pages("p1")).data
        assert stored.status is ProjectStatus.COMPLETED
        assert stored.progress == 100
        assert stored.total_pages == len(pages) == 2
        assert stored.cms_type == "WordPress"
        assert [t.name for t in stored.technologies] == ["WordPress", "Nginx"]
        assert stored.scraping_completed_at is not None
        assert stored.scraping_data["responseTime"] == 420
        assert dispatcher.registry.get("p1").state is CrawlState.COMPLETED

    @pytest.mark.asyncio
    async def test_request_payload_and_api_key(self):
        crawler = _Crawler()
        dispatcher, _, project, _ = await _setup(crawler=crawler, settings=_settings(scraper_api_key="k-123"))

        await dispatcher.run(project)

        request = crawler.requests[0]
        assert str(request.url) == "https://scraper.example/scrap"
        assert request.headers["x-api-key"] == "k-123"
        assert json.loads(request.content) == {
            "url": SITE,
            "mode": "multipage",
            "maxPages": 100,
            "extractImagesFlag": True,
            "extractLinksFlag": True,
            "detectTechnologiesFlag": True,
        }

    @pytest.mark.asyncio
    async def test_seo_analysis_uses_primary_page_html(self):
        seen = {}

        def scorer(html, url):
            seen["html"], seen["url"] = html, url
            return {"score": 87, "issues": [], "highlights": [], "recommendations": [], "summary": {}}

        dispatcher, store, project, _ = await _setup(scorer=scorer)

        outcome = await dispatcher.run(project)

        assert seen == {"html": _HOME_HTML, "url": SITE}
        stored = await _stored(store)
        assert stored.score == outcome.project.score == 87
        assert stored.seo_analysis["html_source"] == "memory"

    @pytest.mark.asyncio
    async def test_concurrent_runs_for_different_projects(self):
        store = InMemoryPersistence()
        await store.create_audit_project(AuditProject(id="p2", site_url="https://two.example"))
        dispatcher, store, project, _ = await _setup(store=store)
        other = await _stored(store, "p2")

        first, second = await asyncio.gather(dispatcher.run(project), dispatcher.run(other))

        assert first.project.status is ProjectStatus.COMPLETED
        assert second.project.status is ProjectStatus.COMPLETED


class TestFailures:
    @pytest.mark.asyncio
    async def test_network_failure_leaves_project_retryable(self):
        crawler = _Crawler((503, {}))
        dispatcher, store, project, _ = await _setup(crawler=crawler)

        with pytest.raises(NetworkError):
            await dispatcher.run(project)

        stored = await _stored(store)
        assert stored.status is ProjectStatus.PENDING
        assert "internet connection" in stored.scraping_error
        assert not dispatcher.registry.is_live("p1")
        # 3 attempts x 2 endpoints
        assert len(crawler.requests) == 6

        crawler.responses = [(200, {"json": CRAWL_RESPONSE})]
        outcome = await dispatcher.run(stored)
        assert outcome.project.status is ProjectStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_mixed_content_rejected_before_network(self):
        settings = _settings(scraper_base_url="http://scraper.example", origin_scheme="https")
        dispatcher, store, project, crawler = await _setup(settings=settings)

        with pytest.raises(MixedContentError):
            await dispatcher.run(project)

        assert crawler.requests == []
        assert (await _stored(store)).status is ProjectStatus.PENDING

    @pytest.mark.asyncio
    async def test_malformed_endpoint_leaves_project_retryable(self):
        def crawler(request):
            raise httpx.InvalidURL("Invalid port: 'abc'")

        dispatcher, store, project, _ = await _setup(crawler=crawler)

        with pytest.raises(NetworkError):
            await dispatcher.run(project)

        stored = await _stored(store)
        assert stored.status is ProjectStatus.PENDING
        assert stored.scraping_error
        assert not dispatcher.registry.is_live("p1")

    @pytest.mark.asyncio
    async def test_non_json_safe_response_fails_without_partial_write(self):
        crawler = _Crawler((200, {"content": b'{"pages": [], "ratio": NaN}'}))
        dispatcher, store, project, _ = await _setup(crawler=crawler)

        with pytest.raises(SerializationError):
            await dispatcher.run(project)

        assert "replace_scraped_pages" not in store.calls
        stored = await _stored(store)
        assert stored.status is ProjectStatus.FAILED
        assert stored.total_pages == 0
        assert dispatcher.registry.get("p1").state is CrawlState.FAILED

    @pytest.mark.asyncio
    async def test_malformed_response_is_a_serialization_error(self):
        crawler = _Crawler((200, {"json": ["not", "an", "object"]}))
        dispatcher, store, project, _ = await _setup(crawler=crawler)

        with pytest.raises(SerializationError):
            await dispatcher.run(project)

    @pytest.mark.asyncio
    async def test_page_write_failure_is_reported_not_raised(self):
        store = InMemoryPersistence(fail_on={"replace_scraped_pages"})
        dispatcher, store, project, _ = await _setup(store=store)

        outcome = await dispatcher.run(project)

        assert outcome.persisted is False
        assert outcome.errors == ["replace_scraped_pages failed"]
        assert outcome.project.status is ProjectStatus.COMPLETED
        assert len(outcome.pages) == 2
        stored = await _stored(store)
        assert stored.status is ProjectStatus.PENDING
        assert stored.scraping_error == PersistenceError.user_message
        assert stored.total_pages == 0

    @pytest.mark.asyncio
    async def test_project_write_failure_keeps_in_memory_state(self):
        store = InMemoryPersistence(fail_on={"update_audit_project"})
        dispatcher, store, project, _ = await _setup(store=store)

        outcome = await dispatcher.run(project)

        assert outcome.persisted is False
        assert outcome.project.status is ProjectStatus.COMPLETED
        assert outcome.project.total_pages == 2
        assert len((await store.get_scraped_pages("p1")).data) == 2

    @pytest.mark.asyncio
    async def test_scorer_failure_does_not_fail_the_crawl(self):
        def scorer(html, url):
            raise RuntimeError("scorer crashed")

        dispatcher, store, project, _ = await _setup(scorer=scorer)

        outcome = await dispatcher.run(project)

        assert outcome.project.status is ProjectStatus.COMPLETED
        assert outcome.project.seo_analysis is None


class TestSeoHtmlResolution:
    @pytest.mark.asyncio
    async def test_storage_is_second_source(self):
        dispatcher, store, project, _ = await _setup()
        await store.create_scraped_pages(
            [ScrapedPage(audit_project_id="p1", url=SITE, html_content="<p>stored</p>")]
        )

        html, source = await dispatcher.resolve_seo_html(project, [])

        assert (html, source) == ("<p>stored</p>", "storage")

    @pytest.mark.asyncio
    async def test_scraping_data_first_page(self):
        dispatcher, _, project, _ = await _setup()
        project = project.apply({"scraping_data": {"pages": [{"html": "<p>raw</p>"}]}})

        assert await dispatcher.resolve_seo_html(project, []) == ("<p>raw</p>", "scraping_data")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "scraping_data",
        [
            {"html": "<p>alt</p>"},
            {"content": "<p>alt</p>"},
            {"body": "<p>alt</p>"},
            {"page": {"html": "<p>alt</p>"}},
            {"homepage": {"html": "<p>alt</p>"}},
            {"main_page": {"html": "<p>alt</p>"}},
        ],
    )
    async def test_alternate_paths(self, scraping_data):
        dispatcher, _, project, _ = await _setup()
        project = project.apply({"scraping_data": scraping_data})

        assert await dispatcher.resolve_seo_html(project, []) == ("<p>alt</p>", "alternate_paths")

    @pytest.mark.asyncio
    async def test_placeholder_when_nothing_found(self):
        dispatcher, _, project, _ = await _setup()

        html, source = await dispatcher.resolve_seo_html(project, [])

        assert source == "placeholder"
        assert "ex.com" in html

    @pytest.mark.asyncio
    async def test_in_memory_pages_win(self):
        dispatcher, _, project, _ = await _setup()
        pages = [
            ScrapedPage(audit_project_id="p1", url=SITE),
            ScrapedPage(audit_project_id="p1", url=f"{SITE}/b", html_content="<p>b</p>"),
        ]
        project = project.apply({"scraping_data": {"html": "<p>alt</p>"}})

        assert await dispatcher.resolve_seo_html(project, pages) == ("<p>b</p>", "memory")


class TestResetForRetry:
    @pytest.mark.asyncio
    async def test_failed_project_back_to_pending(self):
        dispatcher, store, project, _ = await _setup(status=ProjectStatus.FAILED)
        await store.update_audit_project("p1", {"scraping_error": "boom"})

        reset = await dispatcher.reset_for_retry(await _stored(store))

        assert reset.status is ProjectStatus.PENDING
        assert reset.scraping_error is None
        assert reset.progress == 0

    @pytest.mark.asyncio
    async def test_retry_after_summary_write_failure_replaces_rows(self):
        store = _FailSummaryOnce()
        dispatcher, store, project, _ = await _setup(store=store)

        first = await dispatcher.run(project)
        assert first.persisted is False
        assert (await _stored(store)).status is ProjectStatus.IN_PROGRESS
        assert len((await store.get_scraped_pages("p1")).data) == 2

        reset = await dispatcher.reset_for_retry(await _stored(store))
        second = await dispatcher.run(reset)

        assert second.persisted is True
        stored = await _stored(store)
        rows = (await store.get_scraped_pages("p1")).data
        assert stored.status is ProjectStatus.COMPLETED
        assert stored.total_pages == len(rows) == 2

    @pytest.mark.asyncio
    async def test_in_progress_project_with_live_token_cannot_be_reset(self):
        registry = CrawlRegistry()
        registry.acquire("p1", owner_id="runner")
        dispatcher, _, project, _ = await _setup(status=ProjectStatus.IN_PROGRESS, registry=registry)

        with pytest.raises(CrawlRejected):
            await dispatcher.reset_for_retry(project)

    @pytest.mark.asyncio
    async def test_completed_project_cannot_be_reset(self):
        dispatcher, _, project, _ = await _setup(status=ProjectStatus.COMPLETED)

        with pytest.raises(CrawlRejected):
            await dispatcher.reset_for_retry(project)


class TestPageSpeed:
    @pytest.mark.asyncio
    async def test_results_stored_in_background(self):
        async def pagespeed(url, api_key):
            return PersistenceResult({"lighthouseResult": {"categories": {}}})

        dispatcher, store, project, _ = await _setup(pagespeed=pagespeed)

        await dispatcher.run(project)
        await dispatcher.wait_for_background()

        stored = await _stored(store)
        assert stored.pagespeed_insights_data == {"lighthouseResult": {"categories": {}}}
        assert stored.pagespeed_insights_loading is False
        assert stored.pagespeed_insights_error is None

    @pytest.mark.asyncio
    async def test_failure_recorded_and_crawl_unaffected(self):
        async def pagespeed(url, api_key):
            return PersistenceResult(error="PageSpeed API key not configured.")

        dispatcher, store, project, _ = await _setup(pagespeed=pagespeed)

        outcome = await dispatcher.run(project)
        await dispatcher.wait_for_background()

        assert outcome.project.status is ProjectStatus.COMPLETED
        stored = await _stored(store)
        assert stored.pagespeed_insights_error == "PageSpeed API key not configured."
        assert stored.pagespeed_insights_loading is False
