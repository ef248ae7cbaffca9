# models.py - shapes handed to the search layer

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

# one ranked source for an answer; source_url is empty for PDFs, filename empty for pages
@dataclass
class SourceDocument:
    source_id: str
    title: str
    content: str
    content_type: str
    source_url: str = ""
    filename: str = ""
    author: str = ""
    user_id: int | None = None
    similarity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
