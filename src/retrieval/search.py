"""User-scoped search over synced content.

Public interface:

  to_search_document(entity)
      Format a PageResult or PdfDocument as a SourceDocument.  One
      implementation per entity variant, dispatched on type.

  dedupe_matches(matches)
      Keep only the best-scoring vector match per source entity,
      sorted by similarity descending.

  search(query, user_id, repository=..., vector_store=...)
      Embed the query, query the user's namespace and return ranked
      SourceDocuments.
"""

from __future__ import annotations

import asyncio
import logging
from functools import singledispatch
from typing import Any, Callable
from uuid import UUID

from config import settings
from src.errors import TransientIOError
from src.indexing.embedder import embed_query
from src.indexing.models import VectorMatch
from src.indexing.vector_store import namespace_for_user
from src.retrieval.models import SourceDocument
from src.storage.models import PageResult, PdfDocument

logger = logging.getLogger(__name__)


@singledispatch
def to_search_document(entity: Any) -> SourceDocument:
    raise TypeError(f"No search document format for {type(entity).__name__}")


@to_search_document.register(PageResult)
def _page_to_search_document(entity: PageResult) -> SourceDocument:
    return SourceDocument(
        source_id=f"website_{entity.id}",
        title=entity.title,
        content=entity.content,
        content_type="website",
        source_url=entity.source_url,
        author=entity.author or "",
        user_id=entity.user_id,
    )


@to_search_document.register(PdfDocument)
def _pdf_to_search_document(entity: PdfDocument) -> SourceDocument:
    return SourceDocument(
        source_id=f"pdf_{entity.id}",
        title=entity.document_title,
        content=entity.content,
        content_type="pdf",
        filename=entity.original_filename,
        user_id=entity.user_id,
    )


def _source_key(match: VectorMatch) -> str | None:
    metadata = match.metadata
    if metadata.get("page_result_id"):
        return f"website_{metadata['page_result_id']}"
    if metadata.get("pdf_document_id"):
        return f"pdf_{metadata['pdf_document_id']}"
    return None


def dedupe_matches(matches: list[VectorMatch]) -> list[VectorMatch]:
    best: dict[str, VectorMatch] = {}
    for match in matches:
        key = _source_key(match)
        if key is None:
            continue
        current = best.get(key)
        if current is None or match.similarity > current.similarity:
            best[key] = match
    return sorted(best.values(), key=lambda match: match.similarity, reverse=True)


async def _load_entity(match: VectorMatch, repository: Any) -> PageResult | PdfDocument | None:
    metadata = match.metadata
    if metadata.get("page_result_id"):
        return await repository.get_page_result(UUID(str(metadata["page_result_id"])))
    return await repository.get_pdf_document(UUID(str(metadata["pdf_document_id"])))


async def rank_source_documents(
    matches: list[VectorMatch], repository: Any
) -> list[SourceDocument]:
    documents: list[SourceDocument] = []
    for match in dedupe_matches(matches):
        entity = await _load_entity(match, repository)
        if entity is None:
            # vectors can briefly outlive a deleted entity
            logger.info("Skipping match %s: source entity no longer exists", match.id)
            continue
        document = to_search_document(entity)
        document.similarity = match.similarity
        documents.append(document)
    return documents


async def search(
    query: str,
    user_id: int,
    *,
    repository: Any,
    vector_store: Any,
    top_k: int | None = None,
    embed: Callable[[str], list[float] | None] = embed_query,
) -> list[SourceDocument]:
    vector = await asyncio.to_thread(embed, query)
    if vector is None:
        raise TransientIOError("Could not embed search query")
    matches = await vector_store.query(
        vector, top_k or settings.search_top_k, namespace_for_user(user_id)
    )
    return await rank_source_documents(matches, repository)
