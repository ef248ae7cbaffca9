"""PdfTextExtractor - validate, run a driver under a deadline, fall back once.

Policy for both ``extract`` and ``extract_metadata``:

  1. Validate the file (exists, readable, size bound, PDF content).
     Each failure is a distinct ValidationError subclass and is raised
     before any driver runs.
  2. Try the requested (or default) driver inside ``timeout`` seconds.
  3. On ExtractionError, try the fallback driver once if it is configured
     and differs from the driver that failed.
  4. If every candidate failed, raise the first error.

The candidate list never has more than two entries, so there is at most
one fallback hop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from config import settings
from src.errors import (
    DriverNotFoundError,
    ExtractionError,
    InvalidPdfFileError,
    PdfExtractionTimeoutError,
    PdfFileNotFoundError,
    PdfFileTooLargeError,
)
from src.pdf.drivers import DRIVER_FACTORIES, DriverFactory, PdfDriver, looks_like_pdf

logger = logging.getLogger(__name__)

_USE_SETTINGS: Any = object()


@dataclass
class TextExtraction:
    text: str
    driver_used: str


@dataclass
class MetadataExtraction:
    metadata: dict[str, Any]
    driver_used: str


class PdfTextExtractor:
    def __init__(
        self,
        default_driver: str | None = None,
        fallback_driver: str | None = _USE_SETTINGS,
        *,
        timeout: float | None = None,
        max_file_size_mb: float | None = None,
        driver_options: dict[str, dict[str, Any]] | None = None,
        registry: dict[str, DriverFactory] | None = None,
    ) -> None:
        self._registry: dict[str, DriverFactory] = dict(
            DRIVER_FACTORIES if registry is None else registry
        )
        self.default_driver = default_driver or settings.pdf_default_driver
        self.fallback_driver = (
            settings.pdf_fallback_driver if fallback_driver is _USE_SETTINGS else fallback_driver
        )
        self.timeout = settings.pdf_timeout_seconds if timeout is None else timeout
        self.max_file_size_mb = (
            settings.pdf_max_file_size_mb if max_file_size_mb is None else max_file_size_mb
        )
        self._driver_options = driver_options or {}

        # unknown names are a configuration error, surfaced at construction
        for name in (self.default_driver, self.fallback_driver):
            if name and name not in self._registry:
                raise DriverNotFoundError(name)

    # ── Registry introspection ────────────────────────────────

    def available_drivers(self) -> list[str]:
        return sorted(self._registry)

    def has_driver(self, name: str) -> bool:
        return name in self._registry

    def using(self, name: str) -> "PdfTextExtractor":
        """Return a copy of this extractor whose default driver is ``name``."""
        return PdfTextExtractor(
            name,
            self.fallback_driver,
            timeout=self.timeout,
            max_file_size_mb=self.max_file_size_mb,
            driver_options=self._driver_options,
            registry=self._registry,
        )

    def create_driver(self, name: str) -> PdfDriver:
        factory = self._registry.get(name)
        if factory is None:
            raise DriverNotFoundError(name)
        return factory(**self._driver_options.get(name, {}))

    # ── Validation ────────────────────────────────────────────

    def validate_file(self, path: str) -> None:
        file_path = Path(path)
        if not file_path.exists():
            raise PdfFileNotFoundError(path)
        if not file_path.is_file() or not os.access(file_path, os.R_OK):
            raise InvalidPdfFileError(path)

        size_mb = file_path.stat().st_size / (1024 * 1024)
        if size_mb > self.max_file_size_mb:
            raise PdfFileTooLargeError(path, round(size_mb, 2), self.max_file_size_mb)

        if not looks_like_pdf(file_path):
            raise InvalidPdfFileError(path)

    # ── Extraction ────────────────────────────────────────────

    async def extract(self, path: str, driver: str | None = None) -> TextExtraction:
        text, driver_used = await self._run_with_fallback(path, driver, "extract_text")
        return TextExtraction(text=text, driver_used=driver_used)

    async def extract_metadata(self, path: str, driver: str | None = None) -> MetadataExtraction:
        metadata, driver_used = await self._run_with_fallback(path, driver, "extract_metadata")
        return MetadataExtraction(metadata=metadata, driver_used=driver_used)

    def _candidates(self, driver: str | None) -> list[str]:
        primary = driver or self.default_driver
        if primary not in self._registry:
            raise DriverNotFoundError(primary)
        candidates = [primary]
        if self.fallback_driver and self.fallback_driver != primary:
            candidates.append(self.fallback_driver)
        return candidates

    async def _run_with_fallback(
        self, path: str, driver: str | None, operation: str
    ) -> tuple[Any, str]:
        self.validate_file(path)
        candidates = self._candidates(driver)

        first_error: ExtractionError | None = None
        for name in candidates:
            started = time.perf_counter()
            try:
                value = await self._execute_with_timeout(self.create_driver(name), operation, path)
            except ExtractionError as exc:
                logger.warning("PDF %s failed with driver %s: %s", operation, name, exc)
                if first_error is None:
                    first_error = exc
                continue

            logger.info(
                "PDF %s succeeded with driver %s for %s in %.2fs",
                operation, name, path, time.perf_counter() - started,
            )
            return value, name

        assert first_error is not None
        raise first_error

    async def _execute_with_timeout(self, driver: PdfDriver, operation: str, path: str) -> Any:
        call = getattr(driver, operation)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call, path), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise PdfExtractionTimeoutError(driver.name, path, self.timeout) from exc
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError.failed(driver.name, path, str(exc)) from exc
