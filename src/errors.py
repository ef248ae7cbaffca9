"""Error taxonomy for the ingestion pipeline.

The job supervisor keys its retry decision off these classes:

  ValidationError     bad input; surfaced immediately, never retried.
  ExtractionError     a PDF driver failed; retried once on the fallback
                      driver by the extractor, then surfaced.
  TransientIOError    network / store / embedding failure; retried with
                      backoff up to the job's attempt budget.
  OrchestrationError  a process or entity record is missing; fatal for
                      the unit of work.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every error raised by the pipeline."""


# ── Validation ────────────────────────────────────────────────


class ValidationError(IngestionError):
    pass


class InvalidUrlError(ValidationError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid crawl URL: {url}")
        self.url = url


class PdfValidationError(ValidationError):
    def __init__(self, message: str, file_path: str) -> None:
        super().__init__(message)
        self.file_path = file_path


class PdfFileNotFoundError(PdfValidationError):
    def __init__(self, file_path: str) -> None:
        super().__init__(f"PDF file not found: {file_path}", file_path)


class InvalidPdfFileError(PdfValidationError):
    def __init__(self, file_path: str) -> None:
        super().__init__(f"Invalid PDF file: {file_path}", file_path)


class PdfFileTooLargeError(PdfValidationError):
    def __init__(self, file_path: str, size_mb: float, max_mb: float) -> None:
        super().__init__(
            f"PDF file too large: {size_mb:g}MB exceeds maximum of {max_mb:g}MB",
            file_path,
        )
        self.size_mb = size_mb
        self.max_mb = max_mb


# ── Extraction ────────────────────────────────────────────────


class ExtractionError(IngestionError):
    def __init__(
        self,
        message: str,
        *,
        driver: str | None = None,
        file_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.driver = driver
        self.file_path = file_path

    @classmethod
    def failed(cls, driver: str, file_path: str, reason: str) -> "ExtractionError":
        return cls(
            f"PDF extraction failed using '{driver}' driver for file '{file_path}': {reason}",
            driver=driver,
            file_path=file_path,
        )


class PdfExtractionTimeoutError(ExtractionError):
    def __init__(self, driver: str, file_path: str, timeout: float) -> None:
        super().__init__(
            f"PDF extraction timed out after {timeout:g} seconds "
            f"using '{driver}' driver for file '{file_path}'",
            driver=driver,
            file_path=file_path,
        )
        self.timeout = timeout


class DriverNotFoundError(ExtractionError):
    def __init__(self, driver: str) -> None:
        super().__init__(f"PDF extraction driver '{driver}' not found.", driver=driver)


# ── Transient I/O ─────────────────────────────────────────────


class TransientIOError(IngestionError):
    pass


class VectorUpsertError(TransientIOError):
    def __init__(self, entity_key: str, batch_index: int) -> None:
        super().__init__(
            f"Vector upsert failed for {entity_key} (batch {batch_index})"
        )
        self.entity_key = entity_key
        self.batch_index = batch_index


# ── Orchestration ─────────────────────────────────────────────


class OrchestrationError(IngestionError):
    pass
