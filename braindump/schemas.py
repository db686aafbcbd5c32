"""
Core Pydantic schemas for the Brain-Dump Analyzer.

Every pipeline stage shares these models.  Python attributes are snake_case;
the serialised form (to_dict) uses the camelCase keys that persistence and
rendering layers consume (rawText, wordCount, relatedSectionIds, ...).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MAIN_SOURCE_ID = "main-content"
MAIN_SOURCE_TITLE = "Main Content"
RESULT_VERSION = "2.0"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenModel(_CamelModel):
    model_config = ConfigDict(frozen=True)


# --- Enumerations ------------------------------------------------------------

class SourceKind(str, Enum):
    MAIN = "main"      # text typed or pasted by the user
    FILE = "file"      # text extracted from an uploaded file
    LINK = "link"      # transcript or page text fetched from a URL


class ProcessingMode(str, Enum):
    COMBINED = "combined"
    DISTRIBUTED = "distributed"


# --- Input -------------------------------------------------------------------

class SourceDocument(_CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    kind: SourceKind = SourceKind.FILE
    text: str


class Document(_CamelModel):
    """
    A caller-owned bundle of raw text plus auxiliary sources.

    Immutable once handed to the pipeline.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    raw_text: str = ""
    auxiliary_sources: list[SourceDocument] = Field(default_factory=list)

    def sources(self) -> list[SourceDocument]:
        """Main text first, then auxiliary sources in original order, empties dropped."""
        tagged: list[SourceDocument] = []
        if self.raw_text.strip():
            tagged.append(
                SourceDocument(
                    id=MAIN_SOURCE_ID,
                    title=MAIN_SOURCE_TITLE,
                    kind=SourceKind.MAIN,
                    text=self.raw_text,
                )
            )
        tagged.extend(s for s in self.auxiliary_sources if s.text.strip())
        return tagged


# --- Pipeline artefacts ------------------------------------------------------

class Section(_FrozenModel):
    id: str                                  # "section-N", stable within one run
    title: str
    content: str
    word_count: int = 0
    source_id: Optional[str] = None
    # Raw heading line the title was derived from; not serialised
    heading: Optional[str] = Field(default=None, exclude=True)
    # Character offset in the segmented text; not serialised
    start_offset: int = Field(default=0, exclude=True)


class TopicCandidate(_CamelModel):
    """One chunk's proposal; ephemeral."""

    name: str
    description: str = ""
    chunk_index: int = 0


class Topic(_FrozenModel):
    id: str
    name: str
    description: str = ""
    related_section_ids: list[str] = Field(default_factory=list)
    score: int = 0                           # distinct contributing chunks; ranking only


class OutlineItem(_FrozenModel):
    id: str
    title: str


class OutlineGroup(_FrozenModel):
    title: str
    items: list[OutlineItem] = Field(default_factory=list)


class SourceStats(_FrozenModel):
    source_id: str
    title: str
    kind: SourceKind
    char_count: int = 0
    word_count: int = 0


class AnalysisStats(_FrozenModel):
    word_count: int = 0
    sentence_count: int = 0
    char_count: int = 0
    reading_time_minutes: int = 0
    section_count: int = 0
    topic_count: int = 0
    source_count: int = 0
    file_count: int = 0
    link_count: int = 0
    sources: list[SourceStats] = Field(default_factory=list)


class ProcessingInfo(_FrozenModel):
    processing_method: ProcessingMode
    processing_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = RESULT_VERSION
    degraded_stages: list[str] = Field(default_factory=list)


class AnalysisResult(_CamelModel):
    """
    Created once per orchestration call; immutable after return.

    Every nested model is frozen too.  The list containers themselves are
    plain lists, so callers that want to reshape a result build a new one
    with model_copy.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    summary: str
    keywords: list[str] = Field(default_factory=list)
    sections: list[Section] = Field(default_factory=list)
    topics: list[Topic] = Field(default_factory=list)
    outline: list[OutlineGroup] = Field(default_factory=list)
    stats: AnalysisStats
    processing_info: ProcessingInfo

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
