# models.py defines the in-memory shapes the indexing layer passes around
# nothing here touches the database or the embedding API

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# provenance tag describing how a chunk boundary was produced
class ChunkType(str, Enum):
    SECTION_GROUP = "section_group"
    LARGE_SECTION_SPLIT = "large_section_split"
    SENTENCE_SPLIT = "sentence_split"

# one retrieval-sized slice of a document, produced fresh on every sync and never stored directly
# word_count is the core (pre-overlap) size, total_word_count includes the stitched overlap
@dataclass
class Chunk:
    content: str
    core_content: str
    word_count: int
    total_word_count: int
    chunk_type: ChunkType
    chunk_index: int = 0
    total_chunks: int = 0
    has_overlap_start: bool = False
    has_overlap_end: bool = False
    overlap_size: int = 0

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "type": self.chunk_type.value,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "has_overlap_start": self.has_overlap_start,
            "has_overlap_end": self.has_overlap_end,
            "overlap_size": self.overlap_size,
        }

# an embedding plus metadata as handed to the vector store
# id is deterministic: {entity_type}_{entity_id}_chunk_{index}
@dataclass
class VectorRecord:
    id: str
    values: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_key(self) -> str:
        return str(self.metadata.get("url", ""))


@dataclass
class VectorMatch:
    id: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)
