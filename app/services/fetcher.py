import asyncio
import ipaddress
import logging
import socket
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence
from urllib.parse import urlparse

import httpx

from app.services.errors import (
    CONNECTION_MESSAGE,
    TIMEOUT_MESSAGE,
    MixedContentError,
    NetworkError,
)
from app.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

CRAWL_TIMEOUT_MS = 180_000
CRAWL_MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
PROBE_TIMEOUT = 10  # seconds
ALLOWED_SCHEMES = {"http", "https"}

_JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "WebAudit/1.0",
}
_PROBE_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
}


def _is_private_address(hostname: str) -> bool:
    """Return True if *hostname* resolves to a private, loopback, or link-local address."""
    try:
        infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return False

    for info in infos:
        raw_ip = info[4][0]
        # Strip IPv6 zone IDs (e.g. "::1%eth0" → "::1")
        raw_ip = raw_ip.split("%")[0]
        try:
            addr = ipaddress.ip_address(raw_ip)
        except ValueError:
            continue
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return True
    return False


def _validate_url(url: str) -> None:
    """Raise ValueError if *url* fails SSRF / scheme validation."""
    parsed = urlparse(url)

    if parsed.scheme not in ALLOWED_SCHEMES:
        raise ValueError(f"Scheme '{parsed.scheme}' is not allowed. Use http or https.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname.")

    if _is_private_address(hostname):
        raise ValueError("Requests to private/internal addresses are not allowed.")


def _check_secure_context(endpoints: Sequence[str], origin_scheme: Optional[str]) -> None:
    """Raise MixedContentError when a secure origin would call a plain-HTTP endpoint."""
    if origin_scheme != "https":
        return
    insecure = [endpoint for endpoint in endpoints if urlparse(endpoint).scheme == "http"]
    if insecure:
        raise MixedContentError(
            "Blocked insecure endpoint from a secure origin.",
            {"endpoints": insecure},
        )


class _AttemptFailed(Exception):
    """Every endpoint tried during one outer attempt failed."""

    def __init__(self, last_error: BaseException):
        self.last_error = last_error
        super().__init__(str(last_error) or type(last_error).__name__)


def _is_timeout(exc: Optional[BaseException]) -> bool:
    return isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError))


async def request_with_failover(
    endpoints: Sequence[str],
    payload: Dict[str, Any],
    timeout_ms: int = CRAWL_TIMEOUT_MS,
    max_retries: int = CRAWL_MAX_RETRIES,
    *,
    origin_scheme: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    expand_fallbacks: bool = False,
) -> httpx.Response:
    """POST *payload* to *endpoints* with failover and exponential backoff.

    Every outer attempt walks the endpoint list in order (primary first).
    With *expand_fallbacks* set, attempt ``i`` only tries the first
    ``min(i + 1, len(endpoints))`` endpoints, so each fallback joins one
    attempt later.  A 2xx response is returned as soon as it is seen.
    Between failed outer attempts the call sleeps ``1s * 2 ** i``.  Each
    HTTP attempt is hard-aborted after *timeout_ms*.

    Raises:
        ValueError: if *endpoints* is empty or *max_retries* is below 1.
        MixedContentError: if *origin_scheme* is ``"https"`` and any endpoint
            is plain HTTP.  Raised before any request is made.
        NetworkError: when every attempt failed.  The message is
            ``"request timed out"`` if the last failure was a timeout and
            ``"network connection failed"`` otherwise.
    """
    endpoints = list(endpoints)
    if not endpoints:
        raise ValueError("At least one endpoint is required.")
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1.")

    _check_secure_context(endpoints, origin_scheme)

    timeout_s = timeout_ms / 1000
    request_headers = {**_JSON_HEADERS, **(headers or {})}
    policy = RetryPolicy(
        attempts=max_retries,
        base_delay=BACKOFF_BASE_SECONDS,
        retry_on=(_AttemptFailed,),
    )

    async def _post(http: httpx.AsyncClient, endpoint: str) -> httpx.Response:
        response = await asyncio.wait_for(
            http.post(endpoint, json=payload, headers=request_headers),
            timeout=timeout_s,
        )
        if not response.is_success:
            raise httpx.HTTPStatusError(
                f"Endpoint returned HTTP {response.status_code}.",
                request=response.request,
                response=response,
            )
        return response

    async def _run(http: httpx.AsyncClient) -> httpx.Response:
        async def _attempt(attempt: int) -> httpx.Response:
            last_error: Optional[BaseException] = None
            tried = min(attempt + 1, len(endpoints)) if expand_fallbacks else len(endpoints)
            for endpoint in endpoints[:tried]:
                try:
                    response = await _post(http, endpoint)
                # InvalidURL is not an HTTPError; a malformed endpoint counts as unreachable.
                except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as exc:
                    logger.warning(
                        "Crawl attempt %d failed for %s – %s",
                        attempt + 1,
                        endpoint,
                        str(exc) or type(exc).__name__,
                    )
                    last_error = exc
                    continue
                logger.info("Crawl request succeeded via %s on attempt %d", endpoint, attempt + 1)
                return response
            raise _AttemptFailed(last_error)

        return await policy.run(_attempt, sleep=sleep)

    try:
        if client is not None:
            return await _run(client)
        async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True) as http:
            return await _run(http)
    except _AttemptFailed as exc:
        message = TIMEOUT_MESSAGE if _is_timeout(exc.last_error) else CONNECTION_MESSAGE
        logger.error("All crawl endpoints failed: %s (%s)", message, exc.last_error)
        raise NetworkError(message, endpoints, exc.last_error) from exc.last_error


async def probe_url(url: str, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """Check whether *url* is reachable.

    Sends a HEAD request first and falls back to GET when HEAD raises.
    Redirects are followed; any final 2xx or 3xx status counts as working.

    Raises:
        ValueError: if the URL fails SSRF / scheme validation.
    """
    _validate_url(url)

    async def _check(http: httpx.AsyncClient) -> Dict[str, Any]:
        try:
            response = await http.head(url, headers=_PROBE_HEADERS)
        except httpx.HTTPError as head_exc:
            logger.debug("HEAD failed for %s (%s) – retrying with GET", url, head_exc)
            try:
                response = await http.get(url, headers=_PROBE_HEADERS)
            except httpx.HTTPError as exc:
                logger.info("Link probe failed for %s – %s", url, exc)
                return {"isBroken": True, "status": "error", "error": "Failed to fetch URL"}

        working = 200 <= response.status_code < 400
        return {
            "isBroken": not working,
            "status": "working" if working else "broken",
            "httpStatus": response.status_code,
            "statusText": response.reason_phrase,
        }

    if client is not None:
        return await _check(client)
    async with httpx.AsyncClient(timeout=PROBE_TIMEOUT, follow_redirects=True) as http:
        return await _check(http)

