# text.py - normalization of raw driver output and a heuristic text -> markdown pass
# normalization is part of the extraction contract; the markdown pass is best-effort
# and allowed to misclassify headings and lists

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0e-\x1f\x7f]")
_INLINE_WHITESPACE_RE = re.compile(r"[^\S\n]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

# whitespace is collapsed within lines only so that short heading lines keep
# their surrounding blank lines for the markdown pass


def normalize_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # form feeds mark page breaks in pdftotext output
    text = text.replace("\f", "\n\n")
    text = html.unescape(text)
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _INLINE_WHITESPACE_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


@dataclass(frozen=True)
class MarkdownStyle:
    # (pattern, heading level) pairs, tried in order
    heading_patterns: tuple[tuple[str, int], ...]
    minimum_heading_gap: int = 2
    detect_headings: bool = True
    detect_lists: bool = True
    max_heading_length: int = 100
    _compiled: tuple[tuple[re.Pattern[str], int], ...] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        compiled = tuple((re.compile(pattern), level) for pattern, level in self.heading_patterns)
        object.__setattr__(self, "_compiled", compiled)

    def heading_level(self, line: str) -> int:
        for pattern, level in self._compiled:
            if pattern.search(line):
                return level
        return 0


_BASE_PATTERNS: tuple[tuple[str, int], ...] = (
    (r"^[A-Z][A-Z\s]{5,}$", 1),
    (r"^\d+\.?\s+[A-Z]", 2),
    (r"^[IVX]+\.?\s+[A-Z]", 2),
)

STYLES: dict[str, MarkdownStyle] = {
    "default": MarkdownStyle(heading_patterns=_BASE_PATTERNS, minimum_heading_gap=2),
    "structured": MarkdownStyle(
        heading_patterns=(
            (r"^[A-Z][A-Z\s]{3,}$", 1),
            (r"^\d+\.?\s+[A-Z]", 2),
            (r"^[IVX]+\.?\s+[A-Z]", 2),
            (r"^[A-Z][a-z]+:", 3),
        ),
        minimum_heading_gap=1,
    ),
    "academic": MarkdownStyle(
        heading_patterns=_BASE_PATTERNS
        + (
            (r"^Abstract\b", 2),
            (r"^Introduction\b", 2),
            (r"^Conclusions?\b", 2),
            (r"^References\b", 2),
        ),
        minimum_heading_gap=2,
    ),
}

_NUMBERED_RE = re.compile(r"^(\s*)(\d+\.|\d+\))\s+(.+)$")
_BULLET_RE = re.compile(r"^(\s*)[•\-\*]\s+(.+)$")
_ALPHA_RE = re.compile(r"^(\s*)[a-z]\.\s+(.+)$")


@dataclass
class _ListItem:
    indent: int
    marker: str
    content: str


def _detect_list(line: str) -> _ListItem | None:
    match = _NUMBERED_RE.match(line)
    if match:
        return _ListItem(indent=len(match.group(1)) // 2, marker="1.", content=match.group(3))
    match = _BULLET_RE.match(line)
    if match:
        return _ListItem(indent=len(match.group(1)) // 2, marker="-", content=match.group(2))
    match = _ALPHA_RE.match(line)
    if match:
        return _ListItem(indent=len(match.group(1)) // 2, marker="1.", content=match.group(2))
    return None


def _blank_run(lines: list[str], start: int, step: int) -> int:
    count = 0
    index = start
    while 0 <= index < len(lines) and not lines[index].strip():
        count += 1
        index += step
    return count


def _is_likely_heading(line: str, lines: list[str], index: int, style: MarkdownStyle) -> bool:
    if len(line) > style.max_heading_length or not line[:1].isupper():
        return False
    # start of document counts as a sufficient gap
    before = _blank_run(lines, index - 1, -1) if index > 0 else style.minimum_heading_gap
    after = _blank_run(lines, index + 1, 1)
    return before >= style.minimum_heading_gap and after >= 1


def _detect_heading(line: str, lines: list[str], index: int, style: MarkdownStyle) -> int:
    level = style.heading_level(line)
    if level:
        return level
    if _is_likely_heading(line, lines, index, style):
        return 2
    return 0


def _clean_for_markdown(text: str) -> list[str]:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = []
    for raw in text.split("\n"):
        indent = len(raw) - len(raw.lstrip(" "))
        body = _INLINE_WHITESPACE_RE.sub(" ", raw.strip())
        lines.append(" " * indent + body if body else "")
    return lines


def _final_cleanup(markdown: str) -> str:
    markdown = re.sub(r"\n{4,}", "\n\n\n", markdown)
    markdown = re.sub(r"\n(#{1,6} [^\n]+)\n(?!\n)", r"\n\n\1\n\n", markdown)
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    return markdown.strip()


def convert_to_markdown(text: str, style: str | MarkdownStyle = "default") -> str:
    """Turn plain extracted text into markdown using layout heuristics.

    Headings come from the style's regex patterns or, failing those, from
    short capitalized lines framed by blank lines.  Numbered, bulleted and
    lettered lines become markdown list items; indented follow-on lines are
    kept as list continuations.
    """
    if isinstance(style, str):
        try:
            style = STYLES[style]
        except KeyError:
            raise ValueError(
                f"Unknown markdown style: {style}. Expected one of {sorted(STYLES)}."
            ) from None

    lines = _clean_for_markdown(text)
    output: list[str] = []
    in_list = False
    list_indent = 0

    for index, raw_line in enumerate(lines):
        line = raw_line.strip()

        if not line:
            if output and output[-1].strip():
                output.append("")
            in_list = False
            continue

        if style.detect_headings:
            level = _detect_heading(line, lines, index, style)
            if level:
                in_list = False
                output.append("#" * level + " " + line)
                continue

        if style.detect_lists:
            item = _detect_list(raw_line)
            if item is not None:
                in_list = True
                list_indent = item.indent
                output.append("  " * item.indent + f"{item.marker} {item.content}")
                continue

        if in_list:
            output.append("  " * (list_indent + 1) + line)
            continue

        output.append(line)

    return _final_cleanup("\n".join(output))
