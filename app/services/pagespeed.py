import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from app.services.persistence import PersistenceResult
from app.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

PAGESPEED_ENDPOINT = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_TIMEOUT = 180  # seconds
PAGESPEED_ATTEMPTS = 3
PAGESPEED_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")

_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "WebAudit/1.0",
}


async def fetch_pagespeed_insights(
    url: str,
    api_key: Optional[str],
    *,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> PersistenceResult:
    """Run a desktop PageSpeed Insights audit for *url*.

    Never raises: the result's ``error`` is set when the key is missing or
    every attempt failed.
    """
    if not api_key:
        return PersistenceResult(error="PageSpeed API key not configured.")

    target = url if url.startswith("http") else f"https://{url}"
    params = [
        ("url", target),
        ("key", api_key),
        ("strategy", "desktop"),
        *(("category", category) for category in PAGESPEED_CATEGORIES),
    ]
    policy = RetryPolicy(attempts=PAGESPEED_ATTEMPTS, retry_on=(httpx.HTTPError,))

    async def _run(http: httpx.AsyncClient) -> Dict[str, Any]:
        async def _attempt(attempt: int) -> Dict[str, Any]:
            response = await http.get(PAGESPEED_ENDPOINT, params=params, headers=_HEADERS)
            response.raise_for_status()
            return response.json()

        return await policy.run(_attempt, sleep=sleep)

    try:
        if client is not None:
            data = await _run(client)
        else:
            async with httpx.AsyncClient(timeout=PAGESPEED_TIMEOUT) as http:
                data = await _run(http)
    except httpx.TimeoutException:
        logger.error("PageSpeed request timed out for %s", url)
        return PersistenceResult(error="PageSpeed request timed out after 3 minutes")
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("PageSpeed Insights fetch failed for %s: %s", url, exc)
        return PersistenceResult(error=f"Failed to fetch PageSpeed Insights: {exc}")

    logger.info("PageSpeed Insights completed for %s", url)
    return PersistenceResult(data)
