import logging
from urllib.parse import urlparse

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.models.request import CheckLinkRequest
from app.models.response import CheckLinkResponse
from app.services.fetcher import ALLOWED_SCHEMES, probe_url

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)
router = APIRouter()


def _rejected(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": message, "isBroken": True})


@router.post(
    "/api/check-link",
    response_model=CheckLinkResponse,
    response_model_exclude_none=True,
    summary="Check whether a URL is reachable",
    description=(
        "Sends a HEAD request (falling back to GET) with redirects followed.  "
        "Any final 2xx or 3xx status counts as working."
    ),
)
@limiter.limit("120/minute")
async def check_link(request: Request, body: CheckLinkRequest):
    url = body.url.strip()
    if not url:
        return _rejected("URL is required")

    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return _rejected("Invalid URL format")
    if parsed.scheme not in ALLOWED_SCHEMES:
        return _rejected("Only HTTP/HTTPS URLs are allowed")

    try:
        result = await probe_url(url)
    except ValueError as exc:
        logger.warning("Invalid or blocked URL: %s – %s", url, exc)
        return _rejected(str(exc))

    logger.info("Link checked", extra={"url": url, "link_status": result["status"]})
    return CheckLinkResponse(**result)
