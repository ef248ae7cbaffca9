"""Markdown chunking for vector sync.

Core responsibilities:
- Split markdown into heading-delimited sections, treating fenced code as
  opaque so code content is never mistaken for a heading.
- Greedily pack sections into chunks bounded by a word budget, preferring a
  slightly oversized chunk over an undersized one.
- Split sections that are too large on their own by paragraph, then by
  sentence.
- Stitch word overlap between neighbouring chunks.

All sizes are word counts over markdown-stripped text, so syntax tokens
(``#``, ``**``, link targets, fence markers) never inflate a chunk's size.
Pure and deterministic: no I/O, same input gives byte-identical output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from config import settings
from src.indexing.models import Chunk, ChunkType


_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_FENCE_PREFIXES = ("```", "~~~")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

# markdown stripping - applied in order, each rule sees the output of the previous one
# list markers go before emphasis so "* item *em*" is not read as one emphasis span
_STRIP_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"<!--.*?-->", re.DOTALL), ""),
    (re.compile(r"^[ \t]*(?:```|~~~).*$", re.MULTILINE), ""),
    (re.compile(r"`([^`\n]*)`"), r"\1"),
    (re.compile(r"^[ \t]*#{1,6}[ \t]+", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*(?:-{3,}|\*{3,}|_{3,})[ \t]*$", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*[-*+][ \t]+", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*\d+\.[ \t]+", re.MULTILINE), ""),
    (re.compile(r"^[ \t]*>[ \t]?", re.MULTILINE), ""),
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"\*(.+?)\*"), r"\1"),
    (re.compile(r"(?<!\w)_(.+?)_(?!\w)"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),
]


@dataclass
class _Section:
    header: str
    header_level: int
    content: str


@dataclass
class _Draft:
    content: str
    chunk_type: ChunkType
    word_count: int


def strip_markdown(text: str) -> str:
    """Remove markdown syntax, keeping the readable text (code content included)."""
    for pattern, replacement in _STRIP_RULES:
        text = pattern.sub(replacement, text)
    return re.sub(r"\s+", " ", text).strip()


def count_words(text: str) -> int:
    stripped = strip_markdown(text)
    if not stripped:
        return 0
    return len(stripped.split(" "))

# structural split - walks lines once, the fence marker that opened a code block must also close it
# an unterminated fence swallows the rest of the document as code, which is accepted degraded behavior

def _parse_sections(markdown: str) -> list[_Section]:
    sections: list[_Section] = []
    header = ""
    header_level = 0
    lines: list[str] = []
    open_fence: str | None = None

    def _flush() -> None:
        content = "\n".join(lines)
        if content.strip():
            sections.append(_Section(header=header, header_level=header_level, content=content))

    for line in markdown.split("\n"):
        stripped = line.strip()

        if stripped.startswith(_FENCE_PREFIXES):
            if open_fence is None:
                open_fence = stripped[:3]
            elif stripped.startswith(open_fence):
                open_fence = None
            lines.append(line)
            continue

        if open_fence is None:
            match = _HEADING_RE.match(stripped)
            if match:
                _flush()
                header = match.group(2).strip()
                header_level = len(match.group(1))
                lines = [line]
                continue

        lines.append(line)

    _flush()
    return sections


def _draft(content: str, chunk_type: ChunkType) -> _Draft:
    content = content.strip()
    return _Draft(content=content, chunk_type=chunk_type, word_count=count_words(content))

# sentence split for a single paragraph that alone exceeds max_size
# returns the closed drafts plus the trailing partial chunk, which the caller keeps accumulating into

def _split_paragraph_by_sentence(paragraph: str, max_size: int) -> tuple[list[_Draft], str]:
    drafts: list[_Draft] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(paragraph):
        sentence = sentence.strip()
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if current and count_words(candidate) > max_size:
            drafts.append(_draft(current, ChunkType.SENTENCE_SPLIT))
            current = sentence
        else:
            current = candidate
    return drafts, current


def _split_large_section(content: str, max_size: int) -> list[_Draft]:
    drafts: list[_Draft] = []
    current = ""

    for paragraph in _PARAGRAPH_SPLIT_RE.split(content):
        paragraph = paragraph.strip()
        if not paragraph:
            continue

        if count_words(paragraph) > max_size:
            if current:
                drafts.append(_draft(current, ChunkType.LARGE_SECTION_SPLIT))
                current = ""
            sentence_drafts, current = _split_paragraph_by_sentence(paragraph, max_size)
            drafts.extend(sentence_drafts)
            continue

        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if current and count_words(candidate) > max_size:
            drafts.append(_draft(current, ChunkType.LARGE_SECTION_SPLIT))
            current = paragraph
        else:
            current = candidate

    if current:
        drafts.append(_draft(current, ChunkType.LARGE_SECTION_SPLIT))
    return drafts

# greedy packing - a chunk is only closed early once it has reached min_size

def _pack_sections(sections: list[_Section], max_size: int, min_size: int) -> list[_Draft]:
    drafts: list[_Draft] = []
    current = ""
    current_words = 0

    for section in sections:
        section_words = count_words(section.content)

        if section_words > max_size:
            if current:
                drafts.append(_draft(current, ChunkType.SECTION_GROUP))
                current, current_words = "", 0
            drafts.extend(_split_large_section(section.content, max_size))
            continue

        if current and current_words + section_words > max_size and current_words >= min_size:
            drafts.append(_draft(current, ChunkType.SECTION_GROUP))
            current, current_words = "", 0

        current = f"{current}\n\n{section.content}" if current else section.content
        current_words += section_words

    if current:
        drafts.append(_draft(current, ChunkType.SECTION_GROUP))

    # fence-only or comment-only fragments carry no words and are not worth embedding
    return [draft for draft in drafts if draft.word_count > 0]

# overlap stitching - neighbours are read from the core drafts, never from already-stitched content

def _apply_overlap(drafts: list[_Draft], overlap: int) -> list[Chunk]:
    total = len(drafts)
    stitch = overlap > 0 and total > 1
    chunks: list[Chunk] = []

    for index, draft in enumerate(drafts):
        parts: list[str] = []
        has_start = stitch and index > 0
        has_end = stitch and index < total - 1

        if has_start:
            parts.append(" ".join(drafts[index - 1].content.split()[-overlap:]))
        parts.append(draft.content)
        if has_end:
            parts.append(" ".join(drafts[index + 1].content.split()[:overlap]))

        content = "\n\n".join(parts).strip()
        chunks.append(
            Chunk(
                content=content,
                core_content=draft.content,
                word_count=draft.word_count,
                total_word_count=count_words(content),
                chunk_type=draft.chunk_type,
                chunk_index=index,
                total_chunks=total,
                has_overlap_start=has_start,
                has_overlap_end=has_end,
                overlap_size=overlap if stitch else 0,
            )
        )

    return chunks


def chunk_markdown(
    markdown: str,
    max_size: int | None = None,
    min_size: int | None = None,
    overlap: int | None = None,
) -> list[Chunk]:
    """Split markdown into ordered, overlapping chunks sized in words.

    Args:
        markdown: Source document.
        max_size: Word budget per chunk before overlap (default CHUNK_MAX_WORDS).
        min_size: A chunk is not closed early below this size (default CHUNK_MIN_WORDS).
        overlap: Words borrowed from each neighbour (default CHUNK_OVERLAP_WORDS).

    Returns:
        Chunks in document order; empty when the input has no words.
    """
    max_size = settings.chunk_max_words if max_size is None else max_size
    min_size = settings.chunk_min_words if min_size is None else min_size
    overlap = settings.chunk_overlap_words if overlap is None else overlap

    if max_size < 1:
        raise ValueError(f"max_size must be positive, got {max_size}")
    if overlap < 0:
        raise ValueError(f"overlap must not be negative, got {overlap}")

    if not markdown or not markdown.strip():
        return []

    sections = _parse_sections(markdown.replace("\r\n", "\n"))
    drafts = _pack_sections(sections, max_size, min_size)
    return _apply_overlap(drafts, overlap)
