"""
Chunk schema - a bounded window over a larger text.

Chunks are transient: produced for one pipeline stage, handed to the
completion client, then discarded.  Offsets index into the text that was
chunked so overlap between neighbours can always be recovered.
"""
from __future__ import annotations

from pydantic import BaseModel, Field, computed_field


class Chunk(BaseModel):
    """A contiguous slice text[start_offset:end_offset]."""

    index: int = Field(ge=0)            # Position within the chunk sequence
    start_offset: int = Field(ge=0)     # Inclusive
    end_offset: int = Field(ge=0)       # Exclusive
    text: str

    @computed_field
    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset
