"""Background task functions.

Each function takes arq's ``ctx`` dict first.  ``ctx["pipeline"]`` is
the ``IngestionPipeline`` built by the worker's startup hook (or handed
to a ``LocalJobQueue``).  Function names are the job names enqueued by
the rest of the codebase.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from src.jobs.supervisor import StatusHooks
from src.pdf.service import run_pdf_extraction

if TYPE_CHECKING:
    from src.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

PROCESS_PDF_JOB = "process_pdf_document"
SYNC_PDF_JOB = "sync_pdf_document"


def _pipeline(ctx: dict[str, Any]) -> "IngestionPipeline":
    return ctx["pipeline"]


def _attempt(ctx: dict[str, Any]) -> tuple[int, datetime]:
    return ctx.get("job_try", 1), ctx.get("enqueue_time") or datetime.now(timezone.utc)


# a failed page is counted as finished, not retried; only a failed lookup of
# the process or crawl state is retried
async def crawl_page(
    ctx: dict[str, Any], process_id: str, url: str, remaining_depth: int, user_id: int
) -> None:
    pipeline = _pipeline(ctx)
    attempt, enqueued_at = _attempt(ctx)
    await pipeline.supervisor.run(
        f"crawl_page[{url}]",
        lambda: pipeline.crawler.crawl_page(
            UUID(process_id),
            url,
            remaining_depth,
            user_id,
            final_attempt=pipeline.supervisor.is_final_attempt(attempt, enqueued_at),
        ),
        attempt=attempt,
        enqueued_at=enqueued_at,
    )


async def process_pdf_document(
    ctx: dict[str, Any],
    document_id: str,
    driver: str | None = None,
    convert_to_markdown: bool = True,
) -> None:
    pipeline = _pipeline(ctx)
    doc_id = UUID(document_id)
    repository = pipeline.repository
    attempt, enqueued_at = _attempt(ctx)

    document = await pipeline.supervisor.run(
        f"{PROCESS_PDF_JOB}[{document_id}]",
        lambda: run_pdf_extraction(
            doc_id,
            repository=repository,
            extractor=pipeline.extractor,
            driver=driver,
            convert_to_markdown=convert_to_markdown,
        ),
        attempt=attempt,
        enqueued_at=enqueued_at,
        hooks=StatusHooks(
            processing=lambda: repository.mark_pdf_processing(doc_id),
            pending=lambda error: repository.mark_pdf_pending(doc_id, error),
            failed=lambda error: repository.mark_pdf_failed(doc_id, error),
        ),
    )
    await pipeline.queue.enqueue(SYNC_PDF_JOB, document_id=document_id, user_id=document.user_id)


async def sync_page_result(ctx: dict[str, Any], page_id: str, user_id: int) -> int:
    pipeline = _pipeline(ctx)
    attempt, enqueued_at = _attempt(ctx)
    return await pipeline.supervisor.run(
        f"sync_page_result[{page_id}]",
        lambda: pipeline.sync.sync_page_result(UUID(page_id), user_id),
        attempt=attempt,
        enqueued_at=enqueued_at,
    )


async def sync_pdf_document(ctx: dict[str, Any], document_id: str, user_id: int) -> int:
    pipeline = _pipeline(ctx)
    doc_id = UUID(document_id)
    repository = pipeline.repository
    attempt, enqueued_at = _attempt(ctx)

    written = await pipeline.supervisor.run(
        f"{SYNC_PDF_JOB}[{document_id}]",
        lambda: pipeline.sync.sync_pdf_document(doc_id, user_id),
        attempt=attempt,
        enqueued_at=enqueued_at,
        hooks=StatusHooks(
            processing=lambda: repository.mark_vector_sync_processing(doc_id),
            pending=lambda error: repository.mark_vector_sync_pending(doc_id, error),
            failed=lambda error: repository.mark_vector_sync_failed(doc_id, error),
        ),
    )
    await repository.mark_vector_sync_completed(doc_id)
    return written


async def expire_stale_crawls(ctx: dict[str, Any]) -> int:
    expired = await _pipeline(ctx).crawler.expire_stale()
    if expired:
        logger.info("Expired %d stale crawl processes", expired)
    return expired


TASKS = [crawl_page, process_pdf_document, sync_page_result, sync_pdf_document, expire_stale_crawls]
