from __future__ import annotations

from uuid import uuid4

import pytest

from src.errors import VectorUpsertError
from src.indexing.chunker import chunk_markdown
from src.indexing.models import ChunkType, VectorMatch
from src.indexing.sync import VectorSyncPipeline, page_metadata, pdf_metadata, truncate_content, vector_id
from src.retrieval.search import dedupe_matches, search, to_search_document
from src.storage.models import PdfDocument, ProcessStatus


def _long_markdown(sections: int = 6, words: int = 150) -> str:
    return "\n\n".join(
        f"## Part {i}\n\n" + " ".join(f"t{i}w{j}" for j in range(words - 2)) for i in range(sections)
    )


async def _page(repository, content: str, url: str = "https://example.com/docs", user_id: int = 7):
    process = await repository.create_crawl_process("https://example.com/", user_id)
    return await repository.create_page_result(
        process_id=process.id,
        user_id=user_id,
        source_url=url,
        title="Docs",
        content=content,
        internal_links=[],
        external_links=[],
    )


async def _completed_pdf(repository, user_id: int = 7, markdown: str = "# Report\n\nfindings") -> PdfDocument:
    document = await repository.create_pdf_document(uuid4(), user_id, "report.pdf", "/tmp/x.pdf", 2048)
    await repository.mark_pdf_completed(
        document.id,
        extracted_text="Report findings",
        markdown_text=markdown,
        metadata={"title": None, "pages": 3},
        driver_used="pymupdf",
        processing_time=0.4,
    )
    return document


# ── Metadata helpers ──────────────────────────────────────────


def test_vector_id_and_truncation():
    assert vector_id("page_result", "abc", 3) == "page_result_abc_chunk_3"
    assert truncate_content("x" * 1000) == "x" * 1000
    truncated = truncate_content("x" * 1001)
    assert len(truncated) == 1000
    assert truncated.endswith("...")


@pytest.mark.asyncio
async def test_metadata_omits_absent_optional_fields(repository):
    page = await _page(repository, "# Docs\n\nbody")
    document = await _completed_pdf(repository)
    chunk = chunk_markdown("# Docs\n\nbody")[0]

    page_meta = page_metadata(page, chunk, 7)
    pdf_meta = pdf_metadata(document, chunk, 7)

    assert page_meta["type"] == "Website"
    assert page_meta["url"] == "https://example.com/docs"
    assert page_meta["chunk_type"] == ChunkType.SECTION_GROUP.value
    assert "author" not in page_meta
    assert pdf_meta["type"] == "PDF"
    assert pdf_meta["url"] == str(document.id)
    assert pdf_meta["page_count"] == 3
    assert pdf_meta["driver_used"] == "pymupdf"
    assert "document_title" not in pdf_meta
    assert None not in page_meta.values() and None not in pdf_meta.values()


# ── Sync ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sync_deletes_before_inserting(repository, vector_store, embed):
    page = await _page(repository, _long_markdown())
    pipeline = VectorSyncPipeline(repository, vector_store, embed=embed, batch_size=2)

    written = await pipeline.sync_page_result(page.id, 7)

    assert written == len(chunk_markdown(page.content))
    operations = [call[0] for call in vector_store.calls]
    assert operations[0] == "delete"
    assert set(operations[1:]) == {"upsert"}
    assert vector_store.calls[0][1:] == ("user_7", "https://example.com/docs")


@pytest.mark.asyncio
async def test_resync_leaves_same_record_count(repository, vector_store, embed):
    page = await _page(repository, _long_markdown())
    pipeline = VectorSyncPipeline(repository, vector_store, embed=embed)

    await pipeline.sync_page_result(page.id, 7)
    once = vector_store.count("user_7")
    await pipeline.sync_page_result(page.id, 7)

    assert vector_store.count("user_7") == once
    assert [call[0] for call in vector_store.calls].count("delete") == 2


@pytest.mark.asyncio
async def test_shorter_content_removes_stale_tail_chunks(repository, vector_store, embed):
    page = await _page(repository, _long_markdown(sections=8))
    pipeline = VectorSyncPipeline(repository, vector_store, embed=embed)
    await pipeline.sync_page_result(page.id, 7)
    assert vector_store.count("user_7") > 1

    page.content = "# Docs\n\nnow much shorter"
    await pipeline.sync_page_result(page.id, 7)

    assert vector_store.count("user_7") == 1
    assert ("user_7", vector_id("page_result", page.id, 0)) in vector_store.records


@pytest.mark.asyncio
async def test_missing_embeddings_are_skipped(repository, vector_store):
    page = await _page(repository, _long_markdown())

    def _embed_every_other(texts):
        return [None if index % 2 else [1.0, 0.0, 0.0] for index, _ in enumerate(texts)]

    pipeline = VectorSyncPipeline(repository, vector_store, embed=_embed_every_other, batch_size=10)
    total = len(chunk_markdown(page.content))

    written = await pipeline.sync_page_result(page.id, 7)

    assert written == (total + 1) // 2
    assert vector_store.count("user_7") == written


@pytest.mark.asyncio
async def test_failed_upsert_aborts_sync(repository, vector_store, embed):
    page = await _page(repository, _long_markdown())
    vector_store.fail_upsert = True
    pipeline = VectorSyncPipeline(repository, vector_store, embed=embed, batch_size=1)

    with pytest.raises(VectorUpsertError) as excinfo:
        await pipeline.sync_page_result(page.id, 7)

    assert excinfo.value.batch_index == 0
    assert [call[0] for call in vector_store.calls] == ["delete", "upsert"]


@pytest.mark.asyncio
async def test_missing_or_empty_entities_are_noops(repository, vector_store, embed):
    pipeline = VectorSyncPipeline(repository, vector_store, embed=embed)
    empty = await _page(repository, "   ")

    assert await pipeline.sync_page_result(uuid4(), 7) == 0
    assert await pipeline.sync_page_result(empty.id, 7) == 0
    assert await pipeline.sync_pdf_document(uuid4(), 7) == 0
    assert vector_store.calls == []


@pytest.mark.asyncio
async def test_pdf_sync_keys_vectors_by_document_id(repository, vector_store, embed):
    document = await _completed_pdf(repository)
    pipeline = VectorSyncPipeline(repository, vector_store, embed=embed)

    written = await pipeline.sync_pdf_document(document.id, 7)

    assert written == 1
    record = vector_store.records[("user_7", f"pdf_document_{document.id}_chunk_0")]
    assert record.metadata["filename"] == "report.pdf"
    assert record.metadata["namespace"] == "user_7"
    assert record.source_key == str(document.id)


# ── Search ────────────────────────────────────────────────────


def test_dedupe_keeps_best_match_per_source():
    page_id, pdf_id = uuid4(), uuid4()
    matches = [
        VectorMatch("a", 0.61, {"page_result_id": str(page_id)}),
        VectorMatch("b", 0.92, {"page_result_id": str(page_id)}),
        VectorMatch("c", 0.75, {"pdf_document_id": str(pdf_id)}),
        VectorMatch("d", 0.99, {}),
    ]

    best = dedupe_matches(matches)

    assert [match.id for match in best] == ["b", "c"]


@pytest.mark.asyncio
async def test_search_returns_ranked_source_documents(repository, vector_store, embed):
    page = await _page(repository, "# Docs\n\nbody")
    document = await _completed_pdf(repository)
    other_user_page = await _page(repository, "# Secret", url="https://example.com/s", user_id=8)
    vector_store.matches = [
        VectorMatch("p0", 0.70, {"page_result_id": str(page.id), "namespace": "user_7"}),
        VectorMatch("p1", 0.80, {"page_result_id": str(page.id), "namespace": "user_7"}),
        VectorMatch("d0", 0.90, {"pdf_document_id": str(document.id), "namespace": "user_7"}),
        VectorMatch("x0", 0.99, {"page_result_id": str(other_user_page.id), "namespace": "user_8"}),
    ]

    results = await search(
        "findings", 7, repository=repository, vector_store=vector_store, embed=lambda q: [1.0]
    )

    assert [result.content_type for result in results] == ["pdf", "website"]
    assert [result.similarity for result in results] == [0.90, 0.80]
    assert results[0].title == "report.pdf"
    assert results[0].filename == "report.pdf"
    assert results[1].source_url == "https://example.com/docs"
    assert ("query", "user_7", "5") in vector_store.calls


def test_to_search_document_rejects_unknown_entities():
    with pytest.raises(TypeError):
        to_search_document(object())


def test_pdf_status_defaults_are_pending():
    document = PdfDocument(uuid4(), 1, "a.pdf", "/tmp/a.pdf", 10)
    assert document.status == ProcessStatus.PENDING
    assert document.vector_sync_status == ProcessStatus.PENDING
    assert document.content == ""
