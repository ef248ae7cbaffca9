# models.py - entity shapes for crawl processes, crawled pages and PDF documents
# rows come back from repository.py as these dataclasses; no SQL here

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class ProcessStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessStatus.COMPLETED, ProcessStatus.FAILED)

# structured link as discovered on a page
@dataclass
class LinkRef:
    href: str
    text: str = ""
    title: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"href": self.href, "text": self.text, "title": self.title}

    @classmethod
    def from_dict(cls, value: dict[str, Any]) -> "LinkRef":
        return cls(
            href=str(value.get("href", "")),
            text=str(value.get("text") or ""),
            title=str(value.get("title") or ""),
        )

# one per crawl request; pending -> processing -> completed | failed
@dataclass
class CrawlProcess:
    id: UUID
    url: str
    user_id: int
    status: ProcessStatus = ProcessStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

# one per successfully crawled URL; source_url is unique within its process
@dataclass
class PageResult:
    id: UUID
    process_id: UUID
    user_id: int
    source_url: str
    title: str
    content: str
    internal_links: list[LinkRef] = field(default_factory=list)
    external_links: list[LinkRef] = field(default_factory=list)
    author: str | None = None
    created_at: datetime | None = None

# two independent state machines: status (extraction) and vector_sync_status (indexing)
@dataclass
class PdfDocument:
    id: UUID
    user_id: int
    original_filename: str
    storage_path: str
    file_size: int
    status: ProcessStatus = ProcessStatus.PENDING
    vector_sync_status: ProcessStatus = ProcessStatus.PENDING
    extracted_text: str | None = None
    markdown_text: str | None = None
    metadata: dict[str, Any] | None = None
    driver_used: str | None = None
    processing_time: float | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def page_count(self) -> int:
        return int((self.metadata or {}).get("pages") or 0)

    @property
    def document_title(self) -> str:
        return (self.metadata or {}).get("title") or self.original_filename

    # markdown when conversion ran, otherwise the plain extracted text
    @property
    def content(self) -> str:
        return self.markdown_text or self.extracted_text or ""
