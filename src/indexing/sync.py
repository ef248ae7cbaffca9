from __future__ import annotations

# ────────────────────────────────────────────────────────────────
# sync.py  VectorSyncPipeline, re-index one content entity
#
# Public interface:
#   sync_page_result(page_id, user_id)       crawled page
#   sync_pdf_document(document_id, user_id)  extracted PDF
#
# Steps (both entry points):
#   1. Load the entity.  Missing entity or empty content is a no-op.
#   2. Delete every vector stored under the entity's stable key
#      (page: source URL, PDF: document UUID) in the user namespace.
#      This runs before any insert so a re-sync that produces fewer
#      chunks never leaves stale tail chunks behind.
#   3. chunk_markdown() over the content.
#   4. Walk the chunks in batches of VECTOR_SYNC_BATCH_SIZE.  One
#      embedding call per batch; chunks whose embedding is missing
#      are skipped and logged.
#   5. Upsert each batch.  A failed upsert raises VectorUpsertError
#      and aborts the sync; partial vector state is worse than a
#      clean failure the job supervisor can retry.
#
# Record ids are {entity_type}_{entity_id}_chunk_{index}, so an
# upsert of the same chunk position overwrites in place.
# ────────────────────────────────────────────────────────────────

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from config import settings
from src.errors import VectorUpsertError
from src.indexing.chunker import chunk_markdown
from src.indexing.embedder import embed_texts
from src.indexing.models import Chunk, VectorRecord
from src.indexing.vector_store import namespace_for_user
from src.storage.models import PageResult, PdfDocument

logger = logging.getLogger(__name__)

EmbedFn = Callable[[list[str]], list[list[float] | None]]

PAGE_ENTITY_TYPE = "page_result"
PDF_ENTITY_TYPE = "pdf_document"


def vector_id(entity_type: str, entity_id: UUID | str, chunk_index: int) -> str:
    return f"{entity_type}_{entity_id}_chunk_{chunk_index}"


def truncate_content(content: str, max_chars: int | None = None) -> str:
    limit = settings.vector_content_max_chars if max_chars is None else max_chars
    if len(content) <= limit:
        return content
    return content[: limit - 3] + "..."


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None

# the store rejects nulls, so optional fields are dropped rather than sent as None

def _without_none(metadata: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in metadata.items() if value is not None}


def _chunk_metadata(chunk: Chunk, user_id: int) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "content": truncate_content(chunk.content),
        "chunk_index": chunk.chunk_index,
        "total_chunks": chunk.total_chunks,
        "word_count": chunk.word_count,
        "chunk_type": chunk.chunk_type.value,
    }


def page_metadata(page: PageResult, chunk: Chunk, user_id: int) -> dict[str, Any]:
    return _without_none(
        {
            "page_result_id": str(page.id),
            "type": "Website",
            "url": page.source_url,
            **_chunk_metadata(chunk, user_id),
            "created_at": _iso(page.created_at),
            "author": page.author,
        }
    )


def pdf_metadata(document: PdfDocument, chunk: Chunk, user_id: int) -> dict[str, Any]:
    return _without_none(
        {
            "pdf_document_id": str(document.id),
            "type": "PDF",
            "url": str(document.id),
            "filename": document.original_filename,
            **_chunk_metadata(chunk, user_id),
            "page_count": document.page_count,
            "driver_used": document.driver_used or "unknown",
            "created_at": _iso(document.created_at),
            "document_title": (document.metadata or {}).get("title"),
        }
    )


class VectorSyncPipeline:
    def __init__(
        self,
        repository: Any,
        vector_store: Any,
        embed: EmbedFn = embed_texts,
        batch_size: int | None = None,
    ) -> None:
        self._repository = repository
        self._store = vector_store
        self._embed = embed
        self._batch_size = batch_size or settings.vector_sync_batch_size

    async def sync_page_result(self, page_id: UUID, user_id: int) -> int:
        page = await self._repository.get_page_result(page_id)
        if page is None:
            logger.error("Page result %s not found, skipping vector sync", page_id)
            return 0
        if not page.content or not page.content.strip():
            logger.info("Page result %s has no content, skipping vector sync", page_id)
            return 0
        return await self._sync(
            entity_type=PAGE_ENTITY_TYPE,
            entity_id=page.id,
            key=page.source_url,
            content=page.content,
            user_id=user_id,
            build_metadata=lambda chunk: page_metadata(page, chunk, user_id),
        )

    async def sync_pdf_document(self, document_id: UUID, user_id: int) -> int:
        document = await self._repository.get_pdf_document(document_id)
        if document is None:
            logger.error("PDF document %s not found, skipping vector sync", document_id)
            return 0
        content = document.content
        if not content.strip():
            logger.info("PDF document %s has no content, skipping vector sync", document_id)
            return 0
        return await self._sync(
            entity_type=PDF_ENTITY_TYPE,
            entity_id=document.id,
            key=str(document.id),
            content=content,
            user_id=user_id,
            build_metadata=lambda chunk: pdf_metadata(document, chunk, user_id),
        )

    async def delete_entity_vectors(self, key: str, user_id: int) -> bool:
        return await self._store.delete_by_key(key, namespace_for_user(user_id))

    async def _sync(
        self,
        *,
        entity_type: str,
        entity_id: UUID,
        key: str,
        content: str,
        user_id: int,
        build_metadata: Callable[[Chunk], dict[str, Any]],
    ) -> int:
        namespace = namespace_for_user(user_id)

        if not await self._store.delete_by_key(key, namespace):
            logger.warning("Could not delete previous vectors for %s in %s", key, namespace)

        chunks = chunk_markdown(content)
        if not chunks:
            return 0

        written = 0
        for batch_index, start in enumerate(range(0, len(chunks), self._batch_size)):
            batch = chunks[start : start + self._batch_size]
            embeddings = await asyncio.to_thread(self._embed, [chunk.content for chunk in batch])

            records: list[VectorRecord] = []
            for chunk, embedding in zip(batch, embeddings):
                if embedding is None:
                    logger.warning(
                        "No embedding for %s chunk %d, skipping", key, chunk.chunk_index
                    )
                    continue
                records.append(
                    VectorRecord(
                        id=vector_id(entity_type, entity_id, chunk.chunk_index),
                        values=embedding,
                        metadata=build_metadata(chunk),
                    )
                )

            if not records:
                continue
            if not await self._store.upsert(records, namespace):
                raise VectorUpsertError(key, batch_index)
            written += len(records)

        logger.info(
            "Synced %d/%d chunks for %s %s into %s",
            written, len(chunks), entity_type, entity_id, namespace,
        )
        return written
