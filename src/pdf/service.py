from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from config import settings
from src.errors import ExtractionError, OrchestrationError, TransientIOError
from src.pdf.extractor import PdfTextExtractor
from src.pdf.text import convert_to_markdown as text_to_markdown
from src.storage.models import PdfDocument

logger = logging.getLogger(__name__)


@dataclass
class PdfExtractionResult:
    text: str
    markdown: str | None
    metadata: dict[str, Any] | None
    driver_used: str
    file_path: str
    file_size: int
    processing_time: float
    text_length: int
    converted_to_markdown: bool


async def extract_pdf_text(
    path: str,
    driver: str | None = None,
    convert_to_markdown: bool = True,
    *,
    extractor: PdfTextExtractor | None = None,
    style: str | None = None,
) -> PdfExtractionResult:
    """Extract text (required) and metadata (best effort) from one PDF.

    Text extraction errors propagate.  Metadata extraction failing after
    its own fallback attempt leaves ``metadata`` as None.
    """
    extractor = extractor or PdfTextExtractor()
    started = time.perf_counter()

    extraction = await extractor.extract(path, driver)

    metadata: dict[str, Any] | None
    try:
        metadata = (await extractor.extract_metadata(path, driver)).metadata
    except ExtractionError as exc:
        logger.warning("Metadata extraction failed for %s: %s", path, exc)
        metadata = None

    markdown = None
    if convert_to_markdown:
        markdown = text_to_markdown(extraction.text, style or settings.pdf_markdown_style)

    return PdfExtractionResult(
        text=extraction.text,
        markdown=markdown,
        metadata=metadata,
        driver_used=extraction.driver_used,
        file_path=path,
        file_size=Path(path).stat().st_size,
        processing_time=round(time.perf_counter() - started, 3),
        text_length=len(extraction.text),
        converted_to_markdown=convert_to_markdown,
    )

# stored files live under {PDF_STORAGE_DIR}/pdf-documents/YYYY/MM/DD/{uuid}.pdf


def store_pdf_file(source_path: str, storage_dir: str | None = None) -> tuple[UUID, str]:
    document_id = uuid4()
    now = datetime.now(timezone.utc)
    target_dir = Path(storage_dir or settings.pdf_storage_dir) / "pdf-documents" / now.strftime("%Y/%m/%d")
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{document_id}.pdf"
    shutil.copyfile(source_path, target)
    return document_id, str(target)


async def run_pdf_extraction(
    document_id: UUID,
    *,
    repository: Any,
    extractor: PdfTextExtractor,
    driver: str | None = None,
    convert_to_markdown: bool = True,
) -> PdfDocument:
    """Extract a stored document and merge the result into its record."""
    document = await repository.get_pdf_document(document_id)
    if document is None:
        raise OrchestrationError(f"PDF document {document_id} not found")

    result = await extract_pdf_text(
        document.storage_path,
        driver,
        convert_to_markdown,
        extractor=extractor,
    )
    await repository.mark_pdf_completed(
        document_id,
        extracted_text=result.text,
        markdown_text=result.markdown,
        metadata=result.metadata,
        driver_used=result.driver_used,
        processing_time=result.processing_time,
    )
    logger.info(
        "Extracted %d chars from %s with %s in %.2fs",
        result.text_length, document.original_filename, result.driver_used, result.processing_time,
    )
    return document


async def delete_pdf_document(
    document_id: UUID, *, repository: Any, vector_sync: Any
) -> bool:
    """Delete vectors, then the stored file, then the record."""
    document = await repository.get_pdf_document(document_id)
    if document is None:
        return False

    if not await vector_sync.delete_entity_vectors(str(document.id), document.user_id):
        raise TransientIOError(f"Could not delete vectors for PDF document {document_id}")

    stored = Path(document.storage_path)
    if stored.exists():
        await asyncio.to_thread(stored.unlink)

    return await repository.delete_pdf_document(document_id)
