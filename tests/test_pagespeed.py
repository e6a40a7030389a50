"""Tests for app.services.pagespeed."""

import httpx
import pytest

from app.services.pagespeed import fetch_pagespeed_insights


class _Sleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchPageSpeedInsights:
    @pytest.mark.asyncio
    async def test_missing_key_returns_error(self):
        result = await fetch_pagespeed_insights("https://ex.com", None)
        assert result.data is None
        assert "not configured" in result.error

    @pytest.mark.asyncio
    async def test_desktop_strategy_and_all_categories(self):
        seen = {}

        def handler(request):
            seen["params"] = request.url.params
            return httpx.Response(200, json={"lighthouseResult": {"categories": {}}})

        async with _client(handler) as client:
            result = await fetch_pagespeed_insights("ex.com", "key", client=client)

        assert result.error is None
        assert result.data == {"lighthouseResult": {"categories": {}}}
        assert seen["params"]["url"] == "https://ex.com"
        assert seen["params"]["strategy"] == "desktop"
        assert seen["params"].get_list("category") == [
            "performance",
            "accessibility",
            "best-practices",
            "seo",
        ]

    @pytest.mark.asyncio
    async def test_retries_three_times_with_backoff(self):
        calls = []
        sleep = _Sleep()

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"error": {"reason": "lighthouseError"}})

        async with _client(handler) as client:
            result = await fetch_pagespeed_insights("https://ex.com", "key", client=client, sleep=sleep)

        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert result.data is None
        assert result.error.startswith("Failed to fetch PageSpeed Insights")

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("blip", request=request)
            return httpx.Response(200, json={"ok": True})

        async with _client(handler) as client:
            result = await fetch_pagespeed_insights("https://ex.com", "key", client=client, sleep=_Sleep())

        assert result.data == {"ok": True}
