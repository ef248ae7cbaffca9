"""CrawlOrchestrator - depth-bounded, de-duplicated, fan-out/fan-in site crawl.

Lifecycle of a crawl process:

  start_crawl()   create pending -> mark processing -> claim root in the
                  shared state -> dispatch the root unit of work.
  crawl_page()    one unit of work per URL, run by a background worker:
                    1. skip if the process is gone or already terminal,
                       or this URL already finished (redelivery); a
                       failed lookup is retried, and on the last try
                       the unit is counted as finished
                    2. fetch the page; a failed fetch is logged and skipped
                    3. store one PageResult (title from the markdown)
                    4. if remaining_depth > 1, claim unvisited same-site
                       links and dispatch them with remaining_depth - 1;
                       a claimed link that cannot be enqueued is counted
                       as finished
                    5. always record completion; whichever unit sees
                       completed >= expected marks the process completed
                       and clears the shared state
  expire_stale()  periodic; fails processes still processing after
                  CRAWL_TIMEOUT_MINUTES.

Depth is carried as a parameter on each dispatched job, never as a call
stack.  depth=1 fetches the root only.  Individual page failures never
fail the process.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

from config import settings
from src.crawling.state import CrawlState
from src.errors import TransientIOError, ValidationError
from src.ingestion import service as fetch_service
from src.ingestion.links import normalize_link, normalize_root_url
from src.ingestion.service import PageFetch, extract_title
from src.storage.models import CrawlProcess, ProcessStatus

logger = logging.getLogger(__name__)

FetchFn = Callable[[str], Awaitable[PageFetch]]

CRAWL_PAGE_JOB = "crawl_page"
SYNC_PAGE_JOB = "sync_page_result"


class CrawlOrchestrator:
    """Owns the crawl state machine; persistence, fetching and dispatch are injected."""

    def __init__(
        self,
        repository: Any,
        state: CrawlState,
        queue: Any,
        fetch: FetchFn = fetch_service.fetch,
        auto_sync: bool | None = None,
    ) -> None:
        self._repository = repository
        self._state = state
        self._queue = queue
        self._fetch = fetch
        self._auto_sync = settings.crawl_auto_sync if auto_sync is None else auto_sync

    # ── Entry point ───────────────────────────────────────────

    async def start_crawl(
        self, url: str, depth: int | None = None, user_id: int = 0
    ) -> CrawlProcess:
        depth = settings.crawl_default_depth if depth is None else depth
        if depth < 1:
            raise ValidationError(f"Crawl depth must be at least 1, got {depth}")
        root_url = normalize_root_url(url)

        process = await self._repository.create_crawl_process(root_url, user_id)
        await self._repository.mark_process_processing(process.id)
        process.status = ProcessStatus.PROCESSING

        await self._state.initialize(process.id, root_url)
        await self._queue.enqueue(
            CRAWL_PAGE_JOB,
            process_id=str(process.id),
            url=root_url,
            remaining_depth=depth,
            user_id=user_id,
        )
        logger.info("Started crawl %s of %s (depth=%d, user=%s)", process.id, root_url, depth, user_id)
        return process

    # ── Unit of work ──────────────────────────────────────────

    async def crawl_page(
        self,
        process_id: UUID,
        url: str,
        remaining_depth: int,
        user_id: int,
        *,
        final_attempt: bool = True,
    ) -> None:
        """Run one unit of work.

        A lookup failure before the page is processed raises
        TransientIOError so the job is retried; on the final attempt the
        unit is counted as finished instead, so the process can still
        complete.  Once the page is processed the unit is always counted.
        """
        try:
            process = await self._load_unit(process_id, url)
        except Exception as exc:
            if not final_attempt:
                raise TransientIOError(f"Crawl lookup for {url} failed: {exc}") from exc
            logger.exception("Crawl lookup for %s failed on the final attempt, counting it as finished", url)
            await self._record_completion(process_id, url)
            return
        if process is None:
            return

        try:
            await self._process_page(process, url, remaining_depth, user_id)
        except Exception:
            logger.exception("Crawl of %s failed for process %s", url, process_id)
        finally:
            await self._record_completion(process.id, url)

    async def _load_unit(self, process_id: UUID, url: str) -> CrawlProcess | None:
        """The live process this unit belongs to, or None if the unit should be dropped."""
        process = await self._repository.get_crawl_process(process_id)
        if process is None:
            logger.error("Crawl process %s not found, dropping %s", process_id, url)
            await self._state.clear(process_id)
            return None
        if process.status.is_terminal:
            logger.info("Crawl process %s is %s, dropping %s", process_id, process.status.value, url)
            return None
        if await self._state.is_finished(process_id, url):
            logger.info("Already crawled %s for process %s", url, process_id)
            return None
        return process

    async def _process_page(
        self, process: CrawlProcess, url: str, remaining_depth: int, user_id: int
    ) -> None:
        page = await self._fetch(url)
        if not page.success:
            logger.warning("Skipping %s for process %s: %s", url, process.id, page.error)
            return

        result = await self._repository.create_page_result(
            process_id=process.id,
            user_id=user_id,
            source_url=url,
            title=extract_title(page.markdown, url),
            content=page.markdown,
            internal_links=page.internal_links,
            external_links=page.external_links,
        )
        if result is not None and self._auto_sync:
            try:
                await self._queue.enqueue(SYNC_PAGE_JOB, page_id=str(result.id), user_id=user_id)
            except Exception:
                logger.exception("Could not enqueue vector sync for page %s", result.id)

        if remaining_depth > 1:
            await self._dispatch_links(process, page, url, remaining_depth - 1, user_id)

    async def _dispatch_links(
        self,
        process: CrawlProcess,
        page: PageFetch,
        page_url: str,
        child_depth: int,
        user_id: int,
    ) -> None:
        candidates: list[str] = []
        for link in page.internal_links:
            normalized = normalize_link(link.href, page_url, process.url)
            if normalized and normalized not in candidates:
                candidates.append(normalized)

        # claiming counts the new URLs into "expected" before any of them is dispatched
        claimed = await self._state.claim_urls(process.id, candidates)
        dispatched = 0
        for link_url in claimed:
            try:
                await self._queue.enqueue(
                    CRAWL_PAGE_JOB,
                    process_id=str(process.id),
                    url=link_url,
                    remaining_depth=child_depth,
                    user_id=user_id,
                )
            except Exception:
                # counted as finished, or completed can never reach expected
                logger.exception("Could not dispatch %s for process %s", link_url, process.id)
                await self._state.finish_url(process.id, link_url)
                continue
            dispatched += 1
        if claimed:
            logger.info(
                "Dispatched %d of %d links from %s (depth %d)",
                dispatched, len(candidates), page_url, child_depth,
            )

    async def _record_completion(self, process_id: UUID, url: str) -> None:
        completed, expected = await self._state.finish_url(process_id, url)
        logger.debug("Process %s: %d/%d units finished", process_id, completed, expected)
        if completed < expected:
            return
        if await self._repository.mark_process_completed(process_id):
            logger.info("Crawl process %s completed (%d pages attempted)", process_id, completed)
        await self._state.clear(process_id)

    # ── Timeout sweep ─────────────────────────────────────────

    async def expire_stale(self, timeout_minutes: int | None = None) -> int:
        minutes = settings.crawl_timeout_minutes if timeout_minutes is None else timeout_minutes
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        expired = 0
        for process in await self._repository.list_stale_processes(cutoff):
            message = f"Crawl did not complete within {minutes} minutes"
            if await self._repository.mark_process_failed(process.id, message):
                expired += 1
                logger.warning("Crawl process %s timed out", process.id)
            await self._state.clear(process.id)
        return expired
