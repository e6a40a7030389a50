"""Feature-gated, batched link health checking.

Links are probed in fixed-size batches through the server-mediated
``/api/check-link`` endpoint.  After every batch the running status map is
yielded to the caller and the affected pages are written back in the
background, so progress is visible incrementally.
"""

import asyncio
import logging
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

import httpx

from app.models.page import LinkRecord, LinkStatus, ScrapedPage
from app.services.errors import FeatureUnavailable, PersistenceError
from app.services.persistence import Persistence

logger = logging.getLogger(__name__)

FEATURE_ID = "broken_links_check"
BATCH_SIZE = 50
BATCH_DELAY = 0.1  # seconds
LINK_PROBE_TIMEOUT = 30  # seconds

StatusMap = Dict[str, LinkStatus]


class LinkProbe:
    """Client for the link-check endpoint.

    Missing credentials, non-2xx responses and transport errors all count as
    broken.  ``forbidden_status`` is what an HTTP 403 (feature access denied
    by the endpoint) maps to.
    """

    def __init__(
        self,
        endpoint: str,
        token: Optional[str],
        *,
        client: Optional[httpx.AsyncClient] = None,
        forbidden_status: LinkStatus = LinkStatus.BROKEN,
    ):
        self.endpoint = endpoint
        self.token = token
        self.forbidden_status = forbidden_status
        self._client = client

    async def check(self, url: str) -> LinkStatus:
        if not self.token:
            logger.warning("No auth token for link check of %s – assuming broken", url)
            return LinkStatus.BROKEN

        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        try:
            if self._client is not None:
                response = await self._client.post(self.endpoint, json={"url": url}, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=LINK_PROBE_TIMEOUT) as http:
                    response = await http.post(self.endpoint, json={"url": url}, headers=headers)
            if response.status_code == 403:
                logger.info("Link check for %s denied (403)", url)
                return self.forbidden_status
            if not response.is_success:
                return LinkStatus.BROKEN
            is_broken = bool(response.json().get("isBroken", True))
        except Exception as exc:
            # Any failure to get an answer is reported as a broken link.
            logger.warning("Link check failed for %s – %s", url, str(exc) or type(exc).__name__)
            return LinkStatus.BROKEN
        return LinkStatus.BROKEN if is_broken else LinkStatus.WORKING

    async def check_link_broken(self, url: str) -> bool:
        return await self.check(url) is LinkStatus.BROKEN


def batched(items: Sequence[LinkRecord], size: int) -> List[Sequence[LinkRecord]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class LinkHealthChecker:
    def __init__(
        self,
        persistence: Persistence,
        probe: LinkProbe,
        has_feature: Callable[[str], bool],
        *,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1.")
        self.persistence = persistence
        self.probe = probe
        self.has_feature = has_feature
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep or asyncio.sleep

    def check_all(
        self,
        links: Iterable[LinkRecord],
        pages: Iterable[ScrapedPage] = (),
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StatusMap]:
        """Return an async iterator of ``{url: status}`` snapshots, one per batch.

        *pages* are the owning pages of *links*; their link arrays are
        rewritten with the new ``status``/``isBroken`` values after every
        batch.  Setting *cancel* stops the run before the next batch.

        Raises:
            FeatureUnavailable: immediately, before any probe, when the
                ``broken_links_check`` feature is not enabled.
        """
        if not self.has_feature(FEATURE_ID):
            raise FeatureUnavailable(FEATURE_ID)
        return self._run(list(links), list(pages), cancel)

    async def _run(
        self,
        links: List[LinkRecord],
        pages: List[ScrapedPage],
        cancel: Optional[asyncio.Event],
    ) -> AsyncIterator[StatusMap]:
        statuses: StatusMap = {}
        page_links: Dict[str, List[LinkRecord]] = {
            page.id: list(page.links) for page in pages if page.id
        }
        writes: List[asyncio.Task] = []
        batches = batched(links, self.batch_size)
        logger.info("Checking %d link(s) in %d batch(es)", len(links), len(batches))

        try:
            for index, batch in enumerate(batches):
                if cancel is not None and cancel.is_set():
                    logger.info("Link check cancelled before batch %d/%d", index + 1, len(batches))
                    return

                results = await asyncio.gather(*(self.probe.check(link.url) for link in batch))
                batch_statuses = {link.url: status for link, status in zip(batch, results)}
                statuses.update(batch_statuses)

                writes.extend(
                    asyncio.create_task(self._persist_page(page_id, snapshot, index))
                    for page_id, snapshot in self._apply(page_links, batch_statuses)
                )
                yield dict(statuses)

                if index < len(batches) - 1:
                    await self._sleep(self.batch_delay)
        finally:
            if writes:
                await asyncio.gather(*writes)

    @staticmethod
    def _apply(
        page_links: Dict[str, List[LinkRecord]], batch_statuses: StatusMap
    ) -> List[Tuple[str, List[LinkRecord]]]:
        """Update each affected page's links in place; return ``(page_id, links)`` snapshots."""
        touched = []
        for page_id, records in page_links.items():
            hit = False
            for i, record in enumerate(records):
                status = batch_statuses.get(record.url)
                if status is not None:
                    records[i] = record.with_status(status)
                    hit = True
            if hit:
                touched.append((page_id, list(records)))
        return touched

    async def _persist_page(self, page_id: str, links: List[LinkRecord], batch_index: int) -> None:
        try:
            result = await self.persistence.update_scraped_page_links(page_id, links)
            if result.error:
                raise PersistenceError(result.error, {"page_id": page_id})
        except PersistenceError as exc:
            logger.error(
                "Failed to save link statuses for page %s (batch %d): %s",
                page_id,
                batch_index + 1,
                exc.message,
            )
