"""Entity persistence for crawl processes, crawled pages and PDF documents.

All public methods are coroutines over a psycopg3 ``AsyncConnectionPool``
owned by the caller (see ``IngestionPipeline``).  Status changes go
through the ``mark_*`` methods only; each is a single conditional UPDATE
so concurrent workers cannot move an entity backwards out of a terminal
state.

Uniqueness of a page within its crawl is enforced here as well as by the
orchestrator: ``create_page_result`` inserts with ON CONFLICT DO NOTHING
and returns None for a duplicate.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from src.storage.models import (
    CrawlProcess,
    LinkRef,
    PageResult,
    PdfDocument,
    ProcessStatus,
)

logger = logging.getLogger(__name__)

_TERMINAL = (ProcessStatus.COMPLETED.value, ProcessStatus.FAILED.value)


def _process_from_row(row: dict[str, Any]) -> CrawlProcess:
    return CrawlProcess(
        id=row["id"],
        url=row["url"],
        user_id=row["user_id"],
        status=ProcessStatus(row["status"]),
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _page_from_row(row: dict[str, Any]) -> PageResult:
    return PageResult(
        id=row["id"],
        process_id=row["process_id"],
        user_id=row["user_id"],
        source_url=row["source_url"],
        title=row["title"],
        content=row["content"],
        internal_links=[LinkRef.from_dict(link) for link in row["internal_links"] or []],
        external_links=[LinkRef.from_dict(link) for link in row["external_links"] or []],
        author=row["author"],
        created_at=row["created_at"],
    )


def _pdf_from_row(row: dict[str, Any]) -> PdfDocument:
    return PdfDocument(
        id=row["id"],
        user_id=row["user_id"],
        original_filename=row["original_filename"],
        storage_path=row["storage_path"],
        file_size=row["file_size"],
        status=ProcessStatus(row["status"]),
        vector_sync_status=ProcessStatus(row["vector_sync_status"]),
        extracted_text=row["extracted_text"],
        markdown_text=row["markdown_text"],
        metadata=row["metadata"],
        driver_used=row["driver_used"],
        processing_time=row["processing_time"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class Repository:
    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def _fetchone(self, query: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    async def _fetchall(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return list(await cur.fetchall())

    async def _execute(self, query: str, params: tuple[Any, ...]) -> int:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return cur.rowcount

    # ── Crawl processes ───────────────────────────────────────

    async def create_crawl_process(self, url: str, user_id: int) -> CrawlProcess:
        row = await self._fetchone(
            """
            INSERT INTO crawl_processes (id, url, user_id, status)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (uuid4(), url, user_id, ProcessStatus.PENDING.value),
        )
        assert row is not None
        return _process_from_row(row)

    async def get_crawl_process(self, process_id: UUID) -> CrawlProcess | None:
        row = await self._fetchone("SELECT * FROM crawl_processes WHERE id = %s", (process_id,))
        return _process_from_row(row) if row else None

    async def mark_process_processing(self, process_id: UUID) -> bool:
        updated = await self._execute(
            """
            UPDATE crawl_processes
            SET status = 'processing', updated_at = NOW()
            WHERE id = %s AND status = 'pending'
            """,
            (process_id,),
        )
        return updated == 1

    async def mark_process_completed(self, process_id: UUID) -> bool:
        """Returns True only for the caller that performed the transition."""
        updated = await self._execute(
            """
            UPDATE crawl_processes
            SET status = 'completed', updated_at = NOW()
            WHERE id = %s AND status = 'processing'
            """,
            (process_id,),
        )
        return updated == 1

    async def mark_process_failed(self, process_id: UUID, error: str) -> bool:
        updated = await self._execute(
            """
            UPDATE crawl_processes
            SET status = 'failed', error_message = %s, updated_at = NOW()
            WHERE id = %s AND status <> ALL(%s)
            """,
            (error, process_id, list(_TERMINAL)),
        )
        return updated == 1

    async def list_stale_processes(self, started_before: datetime) -> list[CrawlProcess]:
        rows = await self._fetchall(
            """
            SELECT * FROM crawl_processes
            WHERE status = 'processing' AND created_at < %s
            ORDER BY created_at
            """,
            (started_before,),
        )
        return [_process_from_row(row) for row in rows]

    # ── Page results ──────────────────────────────────────────

    async def create_page_result(
        self,
        process_id: UUID,
        user_id: int,
        source_url: str,
        title: str,
        content: str,
        internal_links: list[LinkRef],
        external_links: list[LinkRef],
        author: str | None = None,
    ) -> PageResult | None:
        row = await self._fetchone(
            """
            INSERT INTO page_results (
                id, process_id, user_id, source_url, title, content,
                internal_links, external_links, author
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (process_id, source_url) DO NOTHING
            RETURNING *
            """,
            (
                uuid4(),
                process_id,
                user_id,
                source_url,
                title,
                content,
                Jsonb([link.to_dict() for link in internal_links]),
                Jsonb([link.to_dict() for link in external_links]),
                author,
            ),
        )
        if row is None:
            logger.info("Page %s already stored for process %s", source_url, process_id)
            return None
        return _page_from_row(row)

    async def get_page_result(self, page_id: UUID) -> PageResult | None:
        row = await self._fetchone("SELECT * FROM page_results WHERE id = %s", (page_id,))
        return _page_from_row(row) if row else None

    async def list_page_results(self, process_id: UUID) -> list[PageResult]:
        rows = await self._fetchall(
            "SELECT * FROM page_results WHERE process_id = %s ORDER BY created_at",
            (process_id,),
        )
        return [_page_from_row(row) for row in rows]

    # ── PDF documents ─────────────────────────────────────────

    async def create_pdf_document(
        self,
        document_id: UUID,
        user_id: int,
        original_filename: str,
        storage_path: str,
        file_size: int,
    ) -> PdfDocument:
        row = await self._fetchone(
            """
            INSERT INTO pdf_documents (
                id, user_id, original_filename, storage_path, file_size,
                status, vector_sync_status
            )
            VALUES (%s, %s, %s, %s, %s, 'pending', 'pending')
            RETURNING *
            """,
            (document_id, user_id, original_filename, storage_path, file_size),
        )
        assert row is not None
        return _pdf_from_row(row)

    async def get_pdf_document(self, document_id: UUID) -> PdfDocument | None:
        row = await self._fetchone("SELECT * FROM pdf_documents WHERE id = %s", (document_id,))
        return _pdf_from_row(row) if row else None

    async def _set_pdf_status(
        self, column: str, document_id: UUID, status: ProcessStatus, error: str | None
    ) -> bool:
        # column is one of two literals chosen by the callers below
        updated = await self._execute(
            f"""
            UPDATE pdf_documents
            SET {column} = %s, error_message = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (status.value, error, document_id),
        )
        return updated == 1

    async def mark_pdf_processing(self, document_id: UUID) -> bool:
        return await self._set_pdf_status("status", document_id, ProcessStatus.PROCESSING, None)

    async def mark_pdf_pending(self, document_id: UUID, error: str | None = None) -> bool:
        return await self._set_pdf_status("status", document_id, ProcessStatus.PENDING, error)

    async def mark_pdf_failed(self, document_id: UUID, error: str) -> bool:
        return await self._set_pdf_status("status", document_id, ProcessStatus.FAILED, error)

    async def mark_pdf_completed(
        self,
        document_id: UUID,
        *,
        extracted_text: str,
        markdown_text: str | None,
        metadata: dict[str, Any] | None,
        driver_used: str,
        processing_time: float,
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE pdf_documents
            SET status = 'completed',
                extracted_text = %s,
                markdown_text = %s,
                metadata = %s,
                driver_used = %s,
                processing_time = %s,
                error_message = NULL,
                updated_at = NOW()
            WHERE id = %s
            """,
            (
                extracted_text,
                markdown_text,
                Jsonb(metadata) if metadata is not None else None,
                driver_used,
                processing_time,
                document_id,
            ),
        )
        return updated == 1

    async def mark_vector_sync_processing(self, document_id: UUID) -> bool:
        return await self._set_pdf_status(
            "vector_sync_status", document_id, ProcessStatus.PROCESSING, None
        )

    async def mark_vector_sync_pending(self, document_id: UUID, error: str | None = None) -> bool:
        return await self._set_pdf_status(
            "vector_sync_status", document_id, ProcessStatus.PENDING, error
        )

    async def mark_vector_sync_completed(self, document_id: UUID) -> bool:
        return await self._set_pdf_status(
            "vector_sync_status", document_id, ProcessStatus.COMPLETED, None
        )

    async def mark_vector_sync_failed(self, document_id: UUID, error: str) -> bool:
        return await self._set_pdf_status(
            "vector_sync_status", document_id, ProcessStatus.FAILED, error
        )

    async def delete_pdf_document(self, document_id: UUID) -> bool:
        deleted = await self._execute("DELETE FROM pdf_documents WHERE id = %s", (document_id,))
        return deleted == 1

    async def pdf_statistics(self, user_id: int) -> dict[str, Any]:
        row = await self._fetchone(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                COALESCE(SUM(file_size), 0) AS total_size,
                AVG(processing_time) FILTER (WHERE status = 'completed') AS avg_processing_time
            FROM pdf_documents
            WHERE user_id = %s
            """,
            (user_id,),
        )
        stats = dict(row or {})
        total = stats.get("total") or 0
        completed = stats.get("completed") or 0
        stats["success_rate"] = round(completed / total * 100, 2) if total else 0.0
        return stats
