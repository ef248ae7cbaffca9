"""Crawl orchestration tests.

Run the real orchestrator and task functions through the in-process
queue with in-memory crawl state, a fake repository and a scripted
fetch function, so each property is checked end to end without
Redis, Postgres or Firecrawl.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.crawling.orchestrator import CRAWL_PAGE_JOB, CrawlOrchestrator
from src.crawling.state import MemoryCrawlState
from src.errors import InvalidUrlError, TransientIOError, ValidationError
from src.ingestion.service import PageFetch
from src.jobs import tasks
from src.jobs.queue import LocalJobQueue
from src.jobs.supervisor import JobSupervisor, RetryPolicy
from src.pipeline import IngestionPipeline
from src.storage.models import LinkRef, ProcessStatus


class ScriptedSite:
    """Maps URL -> (markdown, [hrefs]); counts every fetch."""

    def __init__(self, pages: dict[str, tuple[str, list[str]]], failing: set[str] | None = None):
        self.pages = pages
        self.failing = failing or set()
        self.fetches: Counter[str] = Counter()

    async def fetch(self, url: str) -> PageFetch:
        self.fetches[url] += 1
        # let sibling units interleave
        await asyncio.sleep(0)
        if url in self.failing or url not in self.pages:
            return PageFetch(url=url, success=False, error="not found")
        markdown, hrefs = self.pages[url]
        internal = [LinkRef(href=href) for href in hrefs if "example.com" in href or href.startswith("/")]
        external = [LinkRef(href=href) for href in hrefs if href not in {l.href for l in internal}]
        return PageFetch(
            url=url,
            success=True,
            markdown=markdown,
            internal_links=internal,
            external_links=external,
        )


def _cluster(size: int) -> dict[str, tuple[str, list[str]]]:
    urls = ["https://example.com/"] + [f"https://example.com/p{i}" for i in range(1, size)]
    return {
        url: (f"# Page {index}\n\ncontent of page {index}", [u for u in urls if u != url])
        for index, url in enumerate(urls)
    }


async def _run_crawl(site, repository, vector_store, embed, url, depth, **kwargs):
    pipeline = IngestionPipeline.local(
        repository=repository, vector_store=vector_store, fetch=site.fetch, embed=embed, **kwargs
    )
    async with pipeline:
        process = await pipeline.crawl(url, depth, user_id=7)
        await pipeline.drain()
    return pipeline, process


@pytest.mark.asyncio
async def test_depth_one_fetches_root_only(repository, vector_store, embed):
    site = ScriptedSite(_cluster(3))

    pipeline, process = await _run_crawl(site, repository, vector_store, embed, "https://example.com", 1)

    assert dict(site.fetches) == {"https://example.com/": 1}
    crawl_jobs = [name for name, _ in pipeline.queue.enqueued if name == CRAWL_PAGE_JOB]
    assert len(crawl_jobs) == 1
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED
    assert len(await repository.list_page_results(process.id)) == 1


@pytest.mark.asyncio
async def test_fully_linked_cluster_fetches_each_page_once(repository, vector_store, embed):
    site = ScriptedSite(_cluster(5))

    _, process = await _run_crawl(site, repository, vector_store, embed, "https://example.com/", 3)

    assert len(site.fetches) == 5
    assert set(site.fetches.values()) == {1}
    pages = await repository.list_page_results(process.id)
    assert len(pages) == 5
    assert len({page.source_url for page in pages}) == 5
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_external_links_are_never_followed(repository, vector_store, embed):
    site = ScriptedSite(
        {
            "https://example.com/": ("# Home\n\nhello", ["/about", "https://other.com"]),
            "https://example.com/about": ("## About\n\nabout us", []),
            "https://other.com/": ("# Other", []),
        }
    )

    _, process = await _run_crawl(site, repository, vector_store, embed, "https://example.com", 2)

    assert set(site.fetches) == {"https://example.com/", "https://example.com/about"}
    pages = sorted(await repository.list_page_results(process.id), key=lambda p: p.source_url)
    assert [page.source_url for page in pages] == ["https://example.com/", "https://example.com/about"]
    assert [page.title for page in pages] == ["Home", "About"]
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_pages_still_count_toward_completion(repository, vector_store, embed):
    pages = _cluster(4)
    site = ScriptedSite(pages, failing={"https://example.com/p2"})

    _, process = await _run_crawl(site, repository, vector_store, embed, "https://example.com/", 2)

    assert len(site.fetches) == 4
    assert len(await repository.list_page_results(process.id)) == 3
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_crawled_pages_are_synced_into_user_namespace(repository, vector_store, embed):
    site = ScriptedSite(_cluster(2))

    _, process = await _run_crawl(site, repository, vector_store, embed, "https://example.com/", 2)

    assert vector_store.count("user_7") == 2
    synced_urls = {record.source_key for record in vector_store.records.values()}
    assert synced_urls == {"https://example.com/", "https://example.com/p1"}


@pytest.mark.asyncio
async def test_invalid_crawl_requests_are_rejected(repository):
    orchestrator = CrawlOrchestrator(repository, MemoryCrawlState(), queue=None)

    with pytest.raises(InvalidUrlError):
        await orchestrator.start_crawl("ftp://example.com", 1)
    with pytest.raises(ValidationError):
        await orchestrator.start_crawl("https://example.com", 0)
    assert repository.processes == {}


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    async def enqueue(self, name, **kwargs):
        self.jobs.append((name, kwargs))


@pytest.mark.asyncio
async def test_redelivered_unit_does_not_double_count(repository):
    state = MemoryCrawlState()
    site = ScriptedSite(_cluster(2))
    queue = RecordingQueue()
    orchestrator = CrawlOrchestrator(repository, state, queue, fetch=site.fetch, auto_sync=False)

    process = await orchestrator.start_crawl("https://example.com/", 2)
    await orchestrator.crawl_page(process.id, "https://example.com/", 2, 7)
    # the same unit delivered again must be a no-op
    await orchestrator.crawl_page(process.id, "https://example.com/", 2, 7)

    assert site.fetches["https://example.com/"] == 1
    assert repository.processes[process.id].status == ProcessStatus.PROCESSING
    child = [kwargs for name, kwargs in queue.jobs if kwargs.get("url") == "https://example.com/p1"]
    assert len(child) == 1 and child[0]["remaining_depth"] == 1

    await orchestrator.crawl_page(process.id, "https://example.com/p1", 1, 7)
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_units_for_terminal_process_are_dropped(repository):
    site = ScriptedSite(_cluster(2))
    orchestrator = CrawlOrchestrator(repository, MemoryCrawlState(), RecordingQueue(), fetch=site.fetch)
    process = await orchestrator.start_crawl("https://example.com/", 2)
    await repository.mark_process_failed(process.id, "cancelled")

    await orchestrator.crawl_page(process.id, "https://example.com/", 2, 7)

    assert not site.fetches


@pytest.mark.asyncio
async def test_missing_process_drops_unit(repository):
    site = ScriptedSite(_cluster(2))
    orchestrator = CrawlOrchestrator(repository, MemoryCrawlState(), RecordingQueue(), fetch=site.fetch)

    await orchestrator.crawl_page(uuid4(), "https://example.com/", 2, 7)

    assert not site.fetches


@pytest.mark.asyncio
async def test_expire_stale_marks_old_processes_failed(repository):
    orchestrator = CrawlOrchestrator(repository, MemoryCrawlState(), RecordingQueue())
    old = await orchestrator.start_crawl("https://example.com/", 2)
    fresh = await orchestrator.start_crawl("https://example.org/", 2)
    repository.processes[old.id].created_at = datetime.now(timezone.utc) - timedelta(hours=3)

    expired = await orchestrator.expire_stale(timeout_minutes=120)

    assert expired == 1
    assert repository.processes[old.id].status == ProcessStatus.FAILED
    assert "120 minutes" in repository.processes[old.id].error_message
    assert repository.processes[fresh.id].status == ProcessStatus.PROCESSING


@pytest.mark.asyncio
async def test_memory_state_claims_each_url_once():
    state = MemoryCrawlState()
    process_id = uuid4()
    await state.initialize(process_id, "https://example.com/")

    first = await state.claim_urls(process_id, ["https://example.com/", "https://example.com/a"])
    second = await state.claim_urls(process_id, ["https://example.com/a", "https://example.com/b"])

    assert first == ["https://example.com/a"]
    assert second == ["https://example.com/b"]
    assert await state.finish_url(process_id, "https://example.com/") == (1, 3)
    assert await state.finish_url(process_id, "https://example.com/") == (1, 3)


# ── Transient failures ────────────────────────────────────────


class UnreachableLinkQueue(LocalJobQueue):
    """Local queue whose enqueue fails for one crawl URL."""

    def __init__(self, unreachable: str):
        super().__init__(tasks.TASKS, retry_delay_scale=0)
        self.unreachable = unreachable

    async def enqueue(self, name, **kwargs):
        if name == CRAWL_PAGE_JOB and kwargs["url"] == self.unreachable:
            raise ConnectionError("connection reset by peer")
        await super().enqueue(name, **kwargs)


def _fast_retry_supervisor() -> JobSupervisor:
    return JobSupervisor(RetryPolicy(max_tries=3, backoff_seconds=(30,), deadline_seconds=1800))


@pytest.mark.asyncio
async def test_child_that_cannot_be_enqueued_still_lets_crawl_complete(repository, vector_store, embed):
    site = ScriptedSite(_cluster(4))
    queue = UnreachableLinkQueue("https://example.com/p2")

    _, process = await _run_crawl(
        site, repository, vector_store, embed, "https://example.com/", 2, queue=queue
    )

    assert set(site.fetches) == {"https://example.com/", "https://example.com/p1", "https://example.com/p3"}
    assert len(await repository.list_page_results(process.id)) == 3
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_process_lookup_is_retried(repository, vector_store, embed):
    site = ScriptedSite(_cluster(4))
    lookups = []
    get_crawl_process = repository.get_crawl_process

    async def flaky_lookup(process_id):
        lookups.append(process_id)
        # the second lookup belongs to the first child unit
        if len(lookups) == 2:
            raise ConnectionError("connection pool exhausted")
        return await get_crawl_process(process_id)

    repository.get_crawl_process = flaky_lookup
    queue = LocalJobQueue(tasks.TASKS, retry_delay_scale=0)

    _, process = await _run_crawl(
        site,
        repository,
        vector_store,
        embed,
        "https://example.com/",
        2,
        queue=queue,
        supervisor=_fast_retry_supervisor(),
    )

    assert len(lookups) == 5
    assert set(site.fetches.values()) == {1}
    assert len(site.fetches) == 4
    assert len(await repository.list_page_results(process.id)) == 4
    assert queue.failed == []
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_lookup_failure_on_final_attempt_counts_unit_as_finished(repository):
    site = ScriptedSite(_cluster(2))
    orchestrator = CrawlOrchestrator(repository, MemoryCrawlState(), RecordingQueue(), fetch=site.fetch)
    process = await orchestrator.start_crawl("https://example.com/", 1)

    async def broken_lookup(process_id):
        raise ConnectionError("database unavailable")

    repository.get_crawl_process = broken_lookup

    with pytest.raises(TransientIOError):
        await orchestrator.crawl_page(process.id, "https://example.com/", 1, 7, final_attempt=False)
    assert repository.processes[process.id].status == ProcessStatus.PROCESSING

    await orchestrator.crawl_page(process.id, "https://example.com/", 1, 7, final_attempt=True)

    assert not site.fetches
    assert repository.processes[process.id].status == ProcessStatus.COMPLETED
