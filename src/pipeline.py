"""IngestionPipeline - owner of the connection pool and collaborator wiring.

One instance per process.  ``start()`` opens the Postgres pool and
connects the shared crawl state and job queue; ``stop()`` releases
whatever ``start()`` created.  Every public action (crawl, PDF upload,
sync, search) goes through an instance so the CLI, the worker and tests
all share the same wiring.

Two configurations:

  IngestionPipeline()          Redis crawl state + arq queue; work runs on
                               separate ``arq`` worker processes.
  IngestionPipeline.local()    in-memory crawl state + in-process queue;
                               work runs as asyncio tasks in this process.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable
from uuid import UUID

from arq import create_pool
from arq.connections import RedisSettings
from psycopg_pool import AsyncConnectionPool

from config import settings
from src.crawling.orchestrator import SYNC_PAGE_JOB, CrawlOrchestrator
from src.crawling.state import CrawlState, MemoryCrawlState, RedisCrawlState
from src.errors import DriverNotFoundError
from src.indexing.embedder import embed_texts
from src.indexing.sync import VectorSyncPipeline
from src.indexing.vector_store import PgVectorStore
from src.ingestion import service as fetch_service
from src.jobs import tasks
from src.jobs.queue import ArqJobQueue, JobQueue, LocalJobQueue
from src.jobs.supervisor import JobSupervisor
from src.pdf.extractor import PdfTextExtractor
from src.pdf.service import PdfExtractionResult, delete_pdf_document, extract_pdf_text, store_pdf_file
from src.retrieval.models import SourceDocument
from src.retrieval.search import search as search_documents
from src.storage.models import CrawlProcess, PdfDocument
from src.storage.repository import Repository

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Wires persistence, crawl state, queue and the ingestion components.

    Owns:
      - The Postgres connection pool (unless a repository is injected).
      - The crawl state and job queue it creates itself.

    Does NOT own:
      - A queue or crawl state passed in by the caller.
    """

    def __init__(
        self,
        queue: JobQueue | None = None,
        state: CrawlState | None = None,
        *,
        repository: Any = None,
        vector_store: Any = None,
        extractor: PdfTextExtractor | None = None,
        fetch: Callable[[str], Awaitable[Any]] = fetch_service.fetch,
        embed: Callable[[list[str]], list[list[float] | None]] = embed_texts,
        supervisor: JobSupervisor | None = None,
    ) -> None:
        self._pool: AsyncConnectionPool | None = None
        self._owned: list[Any] = []
        self._fetch = fetch
        self._embed = embed

        self.queue = queue
        self.state = state
        self.repository = repository
        self.vector_store = vector_store
        self.extractor = extractor or PdfTextExtractor()
        self.supervisor = supervisor or JobSupervisor()
        self.crawler: CrawlOrchestrator | None = None
        self.sync: VectorSyncPipeline | None = None

    @classmethod
    def local(cls, queue: LocalJobQueue | None = None, **kwargs: Any) -> "IngestionPipeline":
        queue = queue or LocalJobQueue(tasks.TASKS)
        pipeline = cls(queue=queue, state=MemoryCrawlState(), **kwargs)
        queue.ctx["pipeline"] = pipeline
        return pipeline

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Open the pool and connect collaborators.  Safe to call twice."""
        if self.crawler is not None:
            return

        if self.repository is None or self.vector_store is None:
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is not set")
            self._pool = AsyncConnectionPool(
                conninfo=settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                open=False,
                kwargs={"autocommit": True},
            )
            await self._pool.open()
            self.repository = self.repository or Repository(self._pool)
            self.vector_store = self.vector_store or PgVectorStore(self._pool)

        if self.state is None:
            self.state = RedisCrawlState.from_url(settings.redis_url)
            self._owned.append(self.state)
        if self.queue is None:
            redis = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.job_queue_name,
            )
            self.queue = ArqJobQueue(redis)
            self._owned.append(self.queue)

        self.crawler = CrawlOrchestrator(self.repository, self.state, self.queue, fetch=self._fetch)
        self.sync = VectorSyncPipeline(self.repository, self.vector_store, embed=self._embed)

    async def stop(self) -> None:
        # a local queue may still be running jobs that need the pool
        if isinstance(self.queue, LocalJobQueue):
            await self.queue.join()
        for resource in reversed(self._owned):
            await resource.close()
        self._owned.clear()
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self.crawler = None
        self.sync = None

    async def __aenter__(self) -> "IngestionPipeline":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def drain(self) -> None:
        """Wait for in-process jobs to finish.  No-op for the arq queue."""
        if isinstance(self.queue, LocalJobQueue):
            await self.queue.join()

    # ── Crawling ──────────────────────────────────────────────

    async def crawl(self, url: str, depth: int | None = None, user_id: int = 0) -> CrawlProcess:
        assert self.crawler is not None, "call start() first"
        return await self.crawler.start_crawl(url, depth, user_id)

    # ── PDF documents ─────────────────────────────────────────

    async def extract_pdf(
        self, path: str, driver: str | None = None, convert_to_markdown: bool = True
    ) -> PdfExtractionResult:
        self._check_driver(driver)
        self.extractor.validate_file(path)
        return await extract_pdf_text(path, driver, convert_to_markdown, extractor=self.extractor)

    async def upload_pdf(
        self,
        path: str,
        user_id: int,
        driver: str | None = None,
        convert_to_markdown: bool = True,
        run_inline: bool = False,
    ) -> PdfDocument:
        """Validate, store and register a PDF, then extract it.

        ``run_inline`` extracts in this call as a single final attempt, so
        a failure marks the document failed and propagates.  Otherwise
        extraction is enqueued and runs under the retry policy.
        """
        self._check_driver(driver)
        self.extractor.validate_file(path)

        document_id, storage_path = await asyncio.to_thread(store_pdf_file, path)
        document = await self.repository.create_pdf_document(
            document_id,
            user_id,
            Path(path).name,
            storage_path,
            Path(storage_path).stat().st_size,
        )
        logger.info("Stored %s as PDF document %s", document.original_filename, document_id)

        job_kwargs = {
            "document_id": str(document_id),
            "driver": driver,
            "convert_to_markdown": convert_to_markdown,
        }
        if run_inline:
            ctx = {
                "pipeline": self,
                "job_try": self.supervisor.policy.max_tries,
                "enqueue_time": datetime.now(timezone.utc),
            }
            await tasks.process_pdf_document(ctx, **job_kwargs)
        else:
            await self.queue.enqueue(tasks.PROCESS_PDF_JOB, **job_kwargs)

        return await self.repository.get_pdf_document(document_id) or document

    async def delete_pdf(self, document_id: UUID) -> bool:
        return await delete_pdf_document(
            document_id, repository=self.repository, vector_sync=self.sync
        )

    async def pdf_statistics(self, user_id: int) -> dict[str, Any]:
        return await self.repository.pdf_statistics(user_id)

    def _check_driver(self, driver: str | None) -> None:
        if driver and not self.extractor.has_driver(driver):
            raise DriverNotFoundError(driver)

    # ── Vector sync / search ──────────────────────────────────

    async def enqueue_page_sync(self, page_id: UUID, user_id: int) -> None:
        await self.queue.enqueue(SYNC_PAGE_JOB, page_id=str(page_id), user_id=user_id)

    async def enqueue_pdf_sync(self, document_id: UUID, user_id: int) -> None:
        await self.queue.enqueue(tasks.SYNC_PDF_JOB, document_id=str(document_id), user_id=user_id)

    async def search(
        self, query: str, user_id: int, top_k: int | None = None
    ) -> list[SourceDocument]:
        return await search_documents(
            query,
            user_id,
            repository=self.repository,
            vector_store=self.vector_store,
            top_k=top_k,
        )
