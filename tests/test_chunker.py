"""Tests for the boundary-aware chunker."""

import pytest

from braindump.chunking.chunker import TextChunker, chunk_text


def _sample_text(sentences: int = 600) -> str:
    parts = []
    for i in range(sentences):
        parts.append(f"Sentence number {i} talks about item {i * 7}. ")
        if i % 9 == 0:
            parts.append("\n\n")
    return "".join(parts)


def _reassemble(text, chunks):
    """Join each chunk's non-overlapping core (up to the next chunk's start)."""
    out = []
    for current, following in zip(chunks, chunks[1:]):
        out.append(text[current.start_offset:following.start_offset])
    out.append(text[chunks[-1].start_offset:chunks[-1].end_offset])
    return "".join(out)


def test_short_text_is_returned_unchanged():
    assert chunk_text("Just a short note.", 100, 10) == ["Just a short note."]


def test_text_exactly_at_limit_is_one_chunk():
    text = "x" * 100
    assert chunk_text(text, 100, 10) == [text]


def test_empty_text_yields_no_chunks():
    assert chunk_text("", 100, 10) == []


@pytest.mark.parametrize("max_size,overlap", [(200, 0), (500, 50), (1_000, 200), (3_000, 500)])
def test_chunks_cover_text_and_respect_bound(max_size, overlap):
    text = _sample_text()
    chunks = TextChunker(max_size, overlap).split(text)

    assert len(chunks) > 1
    assert all(0 < c.length <= max_size for c in chunks)
    assert all(c.text == text[c.start_offset:c.end_offset] for c in chunks)
    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(text)
    assert _reassemble(text, chunks) == text


def test_consecutive_chunks_overlap_by_configured_amount():
    text = _sample_text()
    chunks = TextChunker(800, 100).split(text)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_offset == prev.end_offset - 100


def test_prefers_paragraph_break():
    text = "A" * 700 + "\n\n" + "B" * 700
    chunks = chunk_text(text, 1_000, 100)
    assert chunks[0] == "A" * 700
    assert chunks[-1].endswith("B" * 700)


def test_falls_back_to_sentence_terminator():
    text = ("This is a sentence that keeps going. " * 60).strip()
    chunks = chunk_text(text, 500, 50)
    assert all(c.endswith(".") for c in chunks[:-1])


def test_no_natural_boundary_uses_window_edge_and_terminates():
    text = "x" * 10_050
    chunks = TextChunker(1_000, 100).split(text)
    assert all(c.length == 1_000 for c in chunks[:-1])
    assert chunks[-1].end_offset == len(text)
    # step is max - overlap
    assert len(chunks) == 12


def test_boundary_inside_overlap_zone_does_not_stall():
    # Paragraph breaks every 27 chars, overlap much larger than the spacing
    text = ("word " * 5 + "\n\n") * 400
    chunks = TextChunker(300, 250).split(text)
    starts = [c.start_offset for c in chunks]
    assert starts == sorted(set(starts))
    assert _reassemble(text, chunks) == text


@pytest.mark.parametrize("max_size,overlap", [(100, 100), (100, 150), (100, -1), (0, 0)])
def test_invalid_configuration_is_rejected(max_size, overlap):
    with pytest.raises(ValueError):
        TextChunker(max_size, overlap)
