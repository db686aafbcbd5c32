"""
Section Segmenter
------------------
Divides a working text into titled, ordered sections.

Strategy:
  - OVERSIZED input (> segment_threshold chars): partition with the chunker
    (no overlap, so no text is duplicated), segment each piece on its own and
    suffix titles with "(Part N)".

  - HEADINGS: lines that look like headings start a new section --
        "# Title" / "## Title"          markdown
        "=== Source title ==="          source separators in combined mode
        "2. Title" / "2.1 Title"        short numbered lines without a full stop
        "Title:"                        short capitalised line ending in a colon
    Text before the first heading becomes an "Introduction" section.

  - PARAGRAPHS: if fewer than two sections came out of the heading scan, the
    text is split on blank lines and consecutive paragraphs are grouped into
    ~300-word sections titled from their first sentence.

Section content excludes the heading line itself; the raw line is kept on
Section.heading, so heading + content, in order, covers every non-whitespace
character of the input.

Source attribution is positional: every section records the offset where it
starts and belongs to the last source boundary at or before that offset.
Separator titles are display text only, so two sources with the same title,
or a separator look-alike inside the main text, never move a section to
another source.
"""
from __future__ import annotations

import re
from typing import Optional, Sequence

from loguru import logger

from braindump.analysis.text_stats import word_count
from braindump.chunking.chunker import TextChunker
from braindump.schemas import Section

# ── Constants ─────────────────────────────────────────────────────────────────

INTRODUCTION_TITLE = "Introduction"
UNTITLED_TITLE = "Untitled Section"
MAX_HEADING_CHARS = 80
MAX_COLON_HEADING_CHARS = 60
MAX_HEADING_WORDS = 10
TITLE_SENTENCE_CHARS = 60
TITLE_FALLBACK_WORDS = 6

_MARKDOWN_RE = re.compile(r"^\s{0,3}#{1,6}\s+(?P<title>.+?)\s*#*\s*$")
_SOURCE_MARKER_RE = re.compile(r"^\s*={3,}\s*(?P<title>.+?)\s*={3,}\s*$")
_NUMBERED_RE = re.compile(r"^\s*(?:\d+\.)*\d+[.)]?\s+(?P<title>[A-Z].*?)\s*$")
_COLON_RE = re.compile(r"^\s*(?P<title>[A-Z][^:]*?)\s*:\s*$")
_PARAGRAPH_RE = re.compile(r"\S.*?(?=\n\s*\n|\s*\Z)", re.DOTALL)
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s")
_MARKUP_RE = re.compile(r"[*_`~]+")


def source_marker(title: str) -> str:
    """Separator line placed before each auxiliary source in combined mode."""
    return f"=== {title} ==="


def parse_source_marker(line: str) -> Optional[str]:
    match = _SOURCE_MARKER_RE.match(line)
    return match.group("title") if match else None


def _clean_title(raw: str) -> str:
    title = _MARKUP_RE.sub("", raw).strip().rstrip(":").strip()
    return title or UNTITLED_TITLE


def detect_heading(line: str) -> Optional[str]:
    """Return the cleaned title if `line` looks like a heading, else None."""
    stripped = line.strip()
    if not stripped:
        return None

    # Source titles are file names or page titles; keep them verbatim
    marker = parse_source_marker(stripped)
    if marker is not None:
        return marker

    if len(stripped) > MAX_HEADING_CHARS:
        return None

    match = _MARKDOWN_RE.match(stripped)
    if match:
        return _clean_title(match.group("title"))

    if len(stripped.split()) > MAX_HEADING_WORDS:
        return None

    match = _NUMBERED_RE.match(stripped)
    if match and not stripped.endswith((".", "!", "?", ",", ";")):
        return _clean_title(match.group("title"))

    match = _COLON_RE.match(stripped)
    if match and len(stripped) <= MAX_COLON_HEADING_CHARS:
        return _clean_title(match.group("title"))

    return None


def title_from_text(content: str) -> str:
    """First sentence if short enough, else the first few words plus an ellipsis."""
    stripped = content.strip()
    if not stripped:
        return UNTITLED_TITLE
    first_line = stripped.splitlines()[0]
    heading = detect_heading(first_line)
    if heading:
        return heading
    sentence = _SENTENCE_END_RE.split(first_line, maxsplit=1)[0].strip()
    if len(sentence) < TITLE_SENTENCE_CHARS:
        return _clean_title(sentence)
    words = stripped.split()
    return _clean_title(" ".join(words[:TITLE_FALLBACK_WORDS])) + "..."


class Segmenter:
    """
    Heading-first segmentation with a paragraph-grouping fallback.

    Section ids ("section-1", "section-2", ...) are assigned per call, in
    document order.
    """

    def __init__(
        self,
        segment_threshold: int = 100_000,
        segment_chunk_size: int = 50_000,
        fallback_section_words: int = 300,
    ) -> None:
        if segment_chunk_size > segment_threshold:
            raise ValueError("segment_chunk_size must not exceed segment_threshold")
        self.segment_threshold = segment_threshold
        self.fallback_section_words = fallback_section_words
        self._chunker = TextChunker(max_chunk_size=segment_chunk_size, overlap=0)


    # --- Public API ----------------------------------------------------------

    def segment(
        self,
        text: str,
        source_id: Optional[str] = None,
        source_offsets: Optional[Sequence[tuple[int, str]]] = None,
    ) -> list[Section]:
        """
        Segment `text` into ordered sections.

        Args:
            text:           The working text.
            source_id:      Source attributed to sections before the first
                            boundary in `source_offsets`.
            source_offsets: (offset, source id) pairs marking where each
                            source starts inside a combined text.

        Returns:
            At least one Section for any text with non-whitespace content.
        """
        if not text.strip():
            return []

        if len(text) > self.segment_threshold:
            pieces = [(c.start_offset, c.text) for c in self._chunker.split(text)]
        else:
            pieces = [(0, text)]

        sections: list[Section] = []
        for part, (offset, piece) in enumerate(pieces, start=1):
            piece_sections = self._segment_piece(piece, offset)
            if len(pieces) > 1:
                piece_sections = [
                    s.model_copy(update={"title": f"{s.title} (Part {part})"})
                    for s in piece_sections
                ]
            sections.extend(piece_sections)

        sections = self._finalise(sections, source_id, source_offsets or ())
        logger.debug(
            f"[Segmenter] {len(text):,} chars -> {len(sections)} sections "
            f"({len(pieces)} piece(s))"
        )
        return sections

    # --- Strategies ----------------------------------------------------------

    def _segment_piece(self, text: str, offset: int = 0) -> list[Section]:
        sections = self._split_on_headings(text, offset)
        if len(sections) >= 2:
            return sections
        fallback = self._group_paragraphs(text, offset)
        return fallback or sections

    def _split_on_headings(self, text: str, offset: int = 0) -> list[Section]:
        sections: list[Section] = []
        title: Optional[str] = None
        heading: Optional[str] = None
        start = offset
        buffer: list[str] = []

        def flush() -> None:
            content = "".join(buffer).strip()
            if title is None:
                if content:
                    sections.append(_new_section(INTRODUCTION_TITLE, content, start))
            else:
                sections.append(_new_section(title, content, start, heading))

        pos = offset
        for line in text.splitlines(keepends=True):
            detected = detect_heading(line)
            if detected is not None:
                flush()
                title, heading, start, buffer = detected, line.strip(), pos, []
            else:
                buffer.append(line)
            pos += len(line)
        flush()
        return sections

    def _group_paragraphs(self, text: str, offset: int = 0) -> list[Section]:
        sections: list[Section] = []
        group: list[str] = []
        group_start = offset
        words = 0
        for match in _PARAGRAPH_RE.finditer(text):
            paragraph = match.group().rstrip()
            if not group:
                group_start = offset + match.start()
            group.append(paragraph)
            words += word_count(paragraph)
            if words >= self.fallback_section_words:
                content = "\n\n".join(group)
                sections.append(_new_section(title_from_text(content), content, group_start))
                group, words = [], 0
        if group:
            content = "\n\n".join(group)
            sections.append(_new_section(title_from_text(content), content, group_start))
        return sections

    # --- Internals -----------------------------------------------------------

    @staticmethod
    def _finalise(
        sections: list[Section],
        source_id: Optional[str],
        source_offsets: Sequence[tuple[int, str]],
    ) -> list[Section]:
        boundaries = sorted(source_offsets)
        finalised: list[Section] = []
        for i, section in enumerate(sections, start=1):
            owner = source_id
            for boundary, boundary_source in boundaries:
                if boundary > section.start_offset:
                    break
                owner = boundary_source
            finalised.append(
                section.model_copy(update={"id": f"section-{i}", "source_id": owner})
            )
        return finalised


def _new_section(
    title: str,
    content: str,
    start_offset: int = 0,
    heading: Optional[str] = None,
) -> Section:
    # Ids are provisional until Segmenter._finalise renumbers the full list
    return Section(
        id="section-0",
        title=title,
        content=content,
        word_count=word_count(content),
        heading=heading,
        start_offset=start_offset,
    )
