from __future__ import annotations

import asyncio
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator
from uuid import UUID, uuid4

import pytest

from config import settings
from src.indexing.models import VectorMatch, VectorRecord
from src.storage.models import (
    CrawlProcess,
    LinkRef,
    PageResult,
    PdfDocument,
    ProcessStatus,
)


# ---------------------------------------------------------------------------
# Windows event loop fix: psycopg3 AsyncConnection requires SelectorEventLoop,
# not ProactorEventLoop (the default on Windows).
# ---------------------------------------------------------------------------
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


# ---------------------------------------------------------------------------
# Settings override
# ---------------------------------------------------------------------------

@contextmanager
def override_settings(**overrides: Any) -> Iterator[None]:
    original: dict[str, Any] = {}
    for key, value in overrides.items():
        original[key] = getattr(settings, key)
        setattr(settings, key, value)
    try:
        yield
    finally:
        for key, value in original.items():
            setattr(settings, key, value)


@pytest.fixture
def settings_override():
    return override_settings


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeRepository:
    """Dict-backed stand-in for src.storage.repository.Repository."""

    def __init__(self) -> None:
        self.processes: dict[UUID, CrawlProcess] = {}
        self.pages: dict[UUID, PageResult] = {}
        self.pdfs: dict[UUID, PdfDocument] = {}

    # crawl processes

    async def create_crawl_process(self, url: str, user_id: int) -> CrawlProcess:
        process = CrawlProcess(id=uuid4(), url=url, user_id=user_id, created_at=_now())
        self.processes[process.id] = process
        return process

    async def get_crawl_process(self, process_id: UUID) -> CrawlProcess | None:
        return self.processes.get(process_id)

    def _transition(self, process_id: UUID, allowed: tuple[ProcessStatus, ...], target: ProcessStatus) -> bool:
        process = self.processes.get(process_id)
        if process is None or process.status not in allowed:
            return False
        process.status = target
        process.updated_at = _now()
        return True

    async def mark_process_processing(self, process_id: UUID) -> bool:
        return self._transition(process_id, (ProcessStatus.PENDING,), ProcessStatus.PROCESSING)

    async def mark_process_completed(self, process_id: UUID) -> bool:
        return self._transition(process_id, (ProcessStatus.PROCESSING,), ProcessStatus.COMPLETED)

    async def mark_process_failed(self, process_id: UUID, error: str) -> bool:
        changed = self._transition(
            process_id, (ProcessStatus.PENDING, ProcessStatus.PROCESSING), ProcessStatus.FAILED
        )
        if changed:
            self.processes[process_id].error_message = error
        return changed

    async def list_stale_processes(self, started_before: datetime) -> list[CrawlProcess]:
        return [
            process
            for process in self.processes.values()
            if process.status == ProcessStatus.PROCESSING
            and process.created_at is not None
            and process.created_at < started_before
        ]

    # page results

    async def create_page_result(
        self,
        *,
        process_id: UUID,
        user_id: int,
        source_url: str,
        title: str,
        content: str,
        internal_links: list[LinkRef],
        external_links: list[LinkRef],
    ) -> PageResult | None:
        for page in self.pages.values():
            if page.process_id == process_id and page.source_url == source_url:
                return None
        page = PageResult(
            id=uuid4(),
            process_id=process_id,
            user_id=user_id,
            source_url=source_url,
            title=title,
            content=content,
            internal_links=list(internal_links),
            external_links=list(external_links),
            created_at=_now(),
        )
        self.pages[page.id] = page
        return page

    async def get_page_result(self, page_id: UUID) -> PageResult | None:
        return self.pages.get(page_id)

    async def list_page_results(self, process_id: UUID) -> list[PageResult]:
        return [page for page in self.pages.values() if page.process_id == process_id]

    # pdf documents

    async def create_pdf_document(
        self,
        document_id: UUID,
        user_id: int,
        original_filename: str,
        storage_path: str,
        file_size: int,
    ) -> PdfDocument:
        document = PdfDocument(
            id=document_id,
            user_id=user_id,
            original_filename=original_filename,
            storage_path=storage_path,
            file_size=file_size,
            created_at=_now(),
        )
        self.pdfs[document_id] = document
        return document

    async def get_pdf_document(self, document_id: UUID) -> PdfDocument | None:
        return self.pdfs.get(document_id)

    def _set(self, document_id: UUID, column: str, status: ProcessStatus, error: str | None) -> bool:
        document = self.pdfs.get(document_id)
        if document is None:
            return False
        setattr(document, column, status)
        document.error_message = error
        return True

    async def mark_pdf_processing(self, document_id: UUID) -> bool:
        return self._set(document_id, "status", ProcessStatus.PROCESSING, None)

    async def mark_pdf_pending(self, document_id: UUID, error: str | None = None) -> bool:
        return self._set(document_id, "status", ProcessStatus.PENDING, error)

    async def mark_pdf_failed(self, document_id: UUID, error: str) -> bool:
        return self._set(document_id, "status", ProcessStatus.FAILED, error)

    async def mark_pdf_completed(self, document_id: UUID, **result: Any) -> bool:
        document = self.pdfs.get(document_id)
        if document is None:
            return False
        for key, value in result.items():
            setattr(document, key, value)
        return self._set(document_id, "status", ProcessStatus.COMPLETED, None)

    async def mark_vector_sync_processing(self, document_id: UUID) -> bool:
        return self._set(document_id, "vector_sync_status", ProcessStatus.PROCESSING, None)

    async def mark_vector_sync_pending(self, document_id: UUID, error: str | None = None) -> bool:
        return self._set(document_id, "vector_sync_status", ProcessStatus.PENDING, error)

    async def mark_vector_sync_completed(self, document_id: UUID) -> bool:
        return self._set(document_id, "vector_sync_status", ProcessStatus.COMPLETED, None)

    async def mark_vector_sync_failed(self, document_id: UUID, error: str) -> bool:
        return self._set(document_id, "vector_sync_status", ProcessStatus.FAILED, error)

    async def delete_pdf_document(self, document_id: UUID) -> bool:
        return self.pdfs.pop(document_id, None) is not None

    async def pdf_statistics(self, user_id: int) -> dict[str, Any]:
        documents = [doc for doc in self.pdfs.values() if doc.user_id == user_id]
        completed = sum(1 for doc in documents if doc.status == ProcessStatus.COMPLETED)
        return {
            "total": len(documents),
            "completed": completed,
            "success_rate": round(completed / len(documents) * 100, 2) if documents else 0.0,
        }


class FakeVectorStore:
    """Records every call so tests can assert on ordering."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], VectorRecord] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.fail_upsert = False
        self.fail_delete = False
        self.matches: list[VectorMatch] = []

    async def upsert(self, records: list[VectorRecord], namespace: str) -> bool:
        self.calls.append(("upsert", namespace, ",".join(record.id for record in records)))
        if self.fail_upsert:
            return False
        for record in records:
            self.records[(namespace, record.id)] = VectorRecord(
                id=record.id,
                values=record.values,
                metadata={**record.metadata, "namespace": namespace},
            )
        return True

    async def delete_by_key(self, key: str, namespace: str) -> bool:
        self.calls.append(("delete", namespace, key))
        if self.fail_delete:
            return False
        for record_key in [
            record_key
            for record_key, record in self.records.items()
            if record_key[0] == namespace and record.source_key == key
        ]:
            del self.records[record_key]
        return True

    async def query(
        self,
        vector: list[float],
        top_k: int,
        namespace: str,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        self.calls.append(("query", namespace, str(top_k)))
        return [
            match for match in self.matches if match.metadata.get("namespace") == namespace
        ][:top_k]

    def count(self, namespace: str) -> int:
        return sum(1 for key in self.records if key[0] == namespace)


def fake_embed(texts: list[str]) -> list[list[float] | None]:
    return [[float(len(text)), 1.0, 0.0] for text in texts]


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def embed():
    return fake_embed


# ---------------------------------------------------------------------------
# Database fixtures (integration only)
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def db_conn() -> Any:
    psycopg_module = pytest.importorskip(
        "psycopg",
        reason="Skipping DB integration tests: psycopg is not installed in this environment.",
    )
    database_url = os.getenv("DATABASE_URL") or settings.database_url
    if not database_url:
        pytest.skip("Skipping DB integration tests: DATABASE_URL is not set.")

    from src.storage.schema import init_schema

    conn = psycopg_module.connect(database_url, autocommit=True)
    with conn.cursor() as cur:
        # Prevent indefinite hangs when stale sessions hold DDL locks.
        cur.execute("SET lock_timeout = '5s';")
    init_schema(conn)
    try:
        yield conn
    finally:
        conn.close()
