"""
Boundary-aware Text Chunker
----------------------------
Every pipeline stage that sends text to the completion backend first bounds
it with this chunker so no single prompt exceeds the configured size.

Window selection:
  1. Take up to `max_chunk_size` characters starting at `start`.
  2. Pull the end back to the last paragraph break ("\\n\\n") within the final
     1,500 characters of the window.
  3. Failing that, pull it back to just after the last sentence terminator
     (". ", "! ", "? ") within the final 500 characters.
  4. Otherwise cut at the raw window boundary.

The next window starts `overlap` characters before the previous end.  A
natural boundary is only accepted when it lies beyond `start + overlap`, so
every iteration advances and the loop ends after O(len(text) / step) passes.

Because the raw window boundary is always a legal cut, no chunk ever exceeds
`max_chunk_size` -- a single paragraph longer than the limit is split
mid-paragraph rather than emitted oversized.
"""
from __future__ import annotations

from loguru import logger

from braindump.chunking.schemas import Chunk


# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_MAX_CHUNK_SIZE = 8_000
DEFAULT_OVERLAP = 500
PARAGRAPH_LOOKBACK = 1_500     # chars at the end of a window searched for "\n\n"
SENTENCE_LOOKBACK = 500        # chars at the end of a window searched for ". "
SENTENCE_TERMINATORS = (". ", "! ", "? ")


class TextChunker:
    """
    Splits text into bounded, overlapping chunks at natural boundaries.

    Usage:
        chunker = TextChunker(max_chunk_size=10_000, overlap=500)
        for chunk in chunker.split(text):
            ...
    """

    def __init__(
        self,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
        overlap: int = DEFAULT_OVERLAP,
    ) -> None:
        if max_chunk_size <= 0:
            raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
        if overlap < 0 or overlap >= max_chunk_size:
            raise ValueError(
                f"overlap must be in [0, max_chunk_size), got {overlap} "
                f"for max_chunk_size={max_chunk_size}"
            )
        self.max_chunk_size = max_chunk_size
        self.overlap = overlap

    # --- Public API ----------------------------------------------------------

    def split(self, text: str) -> list[Chunk]:
        """Return the chunk sequence for `text` (empty text yields no chunks)."""
        n = len(text)
        if n == 0:
            return []
        if n <= self.max_chunk_size:
            return [Chunk(index=0, start_offset=0, end_offset=n, text=text)]

        chunks: list[Chunk] = []
        start = 0
        while start < n:
            end = min(start + self.max_chunk_size, n)
            if end < n:
                end = self._natural_end(text, start, end)

            chunks.append(
                Chunk(index=len(chunks), start_offset=start, end_offset=end, text=text[start:end])
            )
            if end >= n:
                break
            start = max(end - self.overlap, start + 1)

        logger.debug(
            f"[TextChunker] {n:,} chars -> {len(chunks)} chunks "
            f"(max={self.max_chunk_size}, overlap={self.overlap})"
        )
        return chunks

    # --- Internals -----------------------------------------------------------

    def _natural_end(self, text: str, start: int, end: int) -> int:
        # A cut at or before this point would stall the next window
        floor = start + self.overlap + 1

        para = text.rfind("\n\n", max(end - PARAGRAPH_LOOKBACK, floor), end)
        if para != -1 and para >= floor:
            return para

        lo = max(end - SENTENCE_LOOKBACK, start)
        # +1 keeps the terminator inside this chunk; the space may fall outside the window
        best = max(text.rfind(t, lo, end + 1) for t in SENTENCE_TERMINATORS)
        if best != -1 and best + 1 >= floor and best + 1 <= end:
            return best + 1

        return end


def chunk_text(
    text: str,
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[str]:
    """Functional shortcut returning only the chunk strings."""
    return [c.text for c in TextChunker(max_chunk_size, overlap).split(text)]
