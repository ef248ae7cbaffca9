"""PDF extraction drivers and the name -> factory registry.

Each driver is a thin binding to one PDF backend behind a common
capability set: ``extract_text``, ``extract_metadata``, ``can_handle``,
``name`` and ``configure``.  Drivers are synchronous; the extractor runs
them in a worker thread under a deadline.

Registered drivers:
  pymupdf    PyMuPDF (``fitz``), in-process.  Default.
  pdftotext  poppler's ``pdftotext`` / ``pdfinfo`` binaries.  Fallback.
  null       Canned output for tests; can simulate failure.
"""

from __future__ import annotations

import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

import fitz  # PyMuPDF

from config import settings
from src.errors import ExtractionError
from src.pdf.text import normalize_text

_PDF_MAGIC = b"%PDF-"


def looks_like_pdf(path: str | Path) -> bool:
    """Content sniff: the PDF header must appear in the first 1024 bytes."""
    try:
        with open(path, "rb") as handle:
            head = handle.read(1024)
    except OSError:
        return False
    return _PDF_MAGIC in head


def _empty_metadata() -> dict[str, Any]:
    return {
        "title": None,
        "author": None,
        "subject": None,
        "keywords": None,
        "creator": None,
        "producer": None,
        "creation_date": None,
        "modification_date": None,
        "pages": 0,
    }


def _clean_value(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class PdfDriver(ABC):
    name: str = ""

    def __init__(self, **options: Any) -> None:
        self.options: dict[str, Any] = {}
        self.configure(options)

    def configure(self, options: dict[str, Any]) -> "PdfDriver":
        self.options.update(options)
        return self

    @abstractmethod
    def extract_text(self, path: str) -> str:
        ...

    @abstractmethod
    def extract_metadata(self, path: str) -> dict[str, Any]:
        ...

    def can_handle(self, path: str) -> bool:
        return Path(path).is_file() and looks_like_pdf(path)

    def _failed(self, path: str, reason: str) -> ExtractionError:
        return ExtractionError.failed(self.name, path, reason)


class PyMuPdfDriver(PdfDriver):
    name = "pymupdf"

    def extract_text(self, path: str) -> str:
        try:
            with fitz.open(path) as doc:
                pages = [page.get_text("text", sort=True) for page in doc]
        except Exception as exc:
            raise self._failed(path, str(exc)) from exc
        return normalize_text("\n\n".join(pages))

    def extract_metadata(self, path: str) -> dict[str, Any]:
        try:
            with fitz.open(path) as doc:
                raw = dict(doc.metadata or {})
                page_count = doc.page_count
        except Exception as exc:
            raise self._failed(path, str(exc)) from exc

        metadata = _empty_metadata()
        metadata.update(
            {
                "title": _clean_value(raw.get("title")),
                "author": _clean_value(raw.get("author")),
                "subject": _clean_value(raw.get("subject")),
                "keywords": _clean_value(raw.get("keywords")),
                "creator": _clean_value(raw.get("creator")),
                "producer": _clean_value(raw.get("producer")),
                "creation_date": _clean_value(raw.get("creationDate")),
                "modification_date": _clean_value(raw.get("modDate")),
                "pages": page_count,
            }
        )
        return metadata

    def can_handle(self, path: str) -> bool:
        if not super().can_handle(path):
            return False
        try:
            with fitz.open(path) as doc:
                return doc.page_count > 0
        except Exception:
            return False


# pdfinfo prints "Key:   value" lines; only these keys are kept
_PDFINFO_KEYS = {
    "Title": "title",
    "Author": "author",
    "Subject": "subject",
    "Keywords": "keywords",
    "Creator": "creator",
    "Producer": "producer",
    "CreationDate": "creation_date",
    "ModDate": "modification_date",
    "Pages": "pages",
}
_PDFINFO_LINE_RE = re.compile(r"^([A-Za-z ]+):\s*(.*)$")


class PdftotextDriver(PdfDriver):
    name = "pdftotext"

    def _run(self, args: list[str], path: str) -> str:
        timeout = self.options.get("timeout", settings.pdf_timeout_seconds)
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise self._failed(path, f"binary not found: {args[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise self._failed(path, f"{args[0]} exceeded {timeout}s") from exc

        if completed.returncode != 0:
            reason = completed.stderr.strip() or f"exit status {completed.returncode}"
            raise self._failed(path, reason)
        return completed.stdout

    def extract_text(self, path: str) -> str:
        binary = self.options.get("binary_path", settings.pdftotext_binary)
        extra = list(self.options.get("options", settings.pdftotext_options))
        # "-" sends the text to stdout
        output = self._run([binary, *extra, path, "-"], path)
        return normalize_text(output)

    def extract_metadata(self, path: str) -> dict[str, Any]:
        binary = self.options.get("info_binary_path", settings.pdfinfo_binary)
        output = self._run([binary, path], path)

        metadata = _empty_metadata()
        for line in output.splitlines():
            match = _PDFINFO_LINE_RE.match(line)
            if not match:
                continue
            key = _PDFINFO_KEYS.get(match.group(1).strip())
            if key is None:
                continue
            value = _clean_value(match.group(2))
            if key == "pages":
                value = int(value) if value and value.isdigit() else 0
            metadata[key] = value
        return metadata


class NullDriver(PdfDriver):
    """Returns configured text/metadata, or fails when ``simulate_failure`` is set."""

    name = "null"

    def extract_text(self, path: str) -> str:
        if self.options.get("simulate_failure"):
            raise self._failed(path, "simulated failure")
        return normalize_text(self.options.get("test_text", "Sample PDF text."))

    def extract_metadata(self, path: str) -> dict[str, Any]:
        if self.options.get("simulate_failure"):
            raise self._failed(path, "simulated failure")
        metadata = _empty_metadata()
        metadata.update(self.options.get("test_metadata", {"title": "Test Document", "pages": 1}))
        return metadata

    def can_handle(self, path: str) -> bool:
        return not self.options.get("simulate_failure")


DriverFactory = Callable[..., PdfDriver]

# startup-time registration table; the extractor validates its configured
# default and fallback names against this eagerly
DRIVER_FACTORIES: dict[str, DriverFactory] = {
    PyMuPdfDriver.name: PyMuPdfDriver,
    PdftotextDriver.name: PdftotextDriver,
    NullDriver.name: NullDriver,
}
