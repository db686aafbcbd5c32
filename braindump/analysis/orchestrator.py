"""
Analysis Orchestrator
----------------------
Pipeline entry point:

    Document (main text + auxiliary sources)
        |
        v
    tag sources, pick mode
        |-- total <= distributed_threshold: COMBINED
        |       one working text, "=== title ===" before each auxiliary source
        |-- otherwise: DISTRIBUTED
        |       every source processed on its own
        v
    segmentation -> topics -> keywords -> summary
        |
        v
    stats (words, sentences, reading time) + outline + processing info
        |
        v
    AnalysisResult

Each stage runs inside a wrapper that substitutes a minimal fallback if the
stage raises, so one failing stage never aborts the analysis.  The only fatal
conditions are empty input and caller cancellation.

progress_callback is fire-and-forget: it is called synchronously between
steps, its exceptions are logged and ignored, and no ordering is promised
relative to work running concurrently inside a stage.
"""
from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Awaitable, Callable, Iterable, Optional, Sequence, TypeVar, Union

from langsmith import traceable
from loguru import logger

from braindump.analysis.keywords import KeywordExtractor, merge_keywords
from braindump.analysis.summarizer import Summarizer, extractive_summary
from braindump.analysis.text_stats import reading_time_minutes, sentence_count, top_terms, word_count
from braindump.analysis.topics import TopicExtractor, catch_all_topic
from braindump.completion.client import CompletionClient
from braindump.config import AnalysisSettings, Settings
from braindump.errors import AnalysisCancelled, EmptyInputError
from braindump.schemas import (
    AnalysisResult,
    AnalysisStats,
    Document,
    OutlineGroup,
    OutlineItem,
    ProcessingInfo,
    ProcessingMode,
    Section,
    SourceDocument,
    SourceKind,
    SourceStats,
    Topic,
)
from braindump.segmentation.segmenter import Segmenter, source_marker
from braindump.utils.concurrency import bounded_gather, raise_if_cancelled

T = TypeVar("T")
ProgressCallback = Callable[[str], None]

OUTLINE_SECTIONS_TITLE = "Content Sections"
OUTLINE_TOPICS_TITLE = "Key Topics"
PART_SEPARATOR = "\n\n"


def combine_sources(sources: Sequence[SourceDocument]) -> tuple[str, list[tuple[int, str]]]:
    """
    Join sources into one working text.

    Main text goes in as-is, every other source behind an "=== title ==="
    separator.  Also returns (offset, source id) for the start of each
    source, which is what section attribution keys on.
    """
    parts: list[str] = []
    offsets: list[tuple[int, str]] = []
    pos = 0
    for source in sources:
        if parts:
            pos += len(PART_SEPARATOR)
        if source.kind == SourceKind.MAIN:
            part = source.text.strip()
        else:
            part = f"{source_marker(source.title)}\n\n{source.text.strip()}"
        offsets.append((pos, source.id))
        parts.append(part)
        pos += len(part)
    return PART_SEPARATOR.join(parts), offsets


def build_combined_text(sources: Sequence[SourceDocument]) -> str:
    return combine_sources(sources)[0]


def build_outline(sections: Sequence[Section], topics: Sequence[Topic]) -> list[OutlineGroup]:
    return [
        OutlineGroup(
            title=OUTLINE_SECTIONS_TITLE,
            items=[OutlineItem(id=s.id, title=s.title) for s in sections],
        ),
        OutlineGroup(
            title=OUTLINE_TOPICS_TITLE,
            items=[OutlineItem(id=t.id, title=t.name) for t in topics],
        ),
    ]


def _batches(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class _Run:
    """Per-call bookkeeping: progress reporting, cancellation, degraded stages."""

    def __init__(
        self,
        progress_callback: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event
        self.degraded: list[str] = []

    def notify(self, message: str) -> None:
        logger.info(f"[Orchestrator] {message}")
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(message)
        except Exception as exc:
            logger.warning(f"[Orchestrator] progress callback raised {type(exc).__name__}: {exc}")

    async def stage(
        self,
        name: str,
        work: Callable[[], Awaitable[T]],
        fallback: Callable[[], T],
    ) -> T:
        raise_if_cancelled(self.cancel_event, name)
        try:
            return await work()
        except AnalysisCancelled:
            raise
        except Exception as exc:
            logger.error(f"[Orchestrator] Stage '{name}' failed ({type(exc).__name__}: {exc}) -- using fallback")
            self.degraded.append(name)
            return fallback()


class AnalysisOrchestrator:
    """
    Runs the full analysis for one Document.

    Usage:
        async with CompletionClient(settings.completion) as client:
            orchestrator = AnalysisOrchestrator(client, settings.analysis)
            result = await orchestrator.analyze(document, progress_callback=print)

    A None client runs every stage on its heuristic fallback.
    """

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        settings: Optional[AnalysisSettings] = None,
    ) -> None:
        self.client = client
        self.settings = settings or AnalysisSettings()
        s = self.settings
        self.segmenter = Segmenter(
            segment_threshold=s.segment_threshold,
            segment_chunk_size=s.segment_chunk_size,
            fallback_section_words=s.fallback_section_words,
        )
        self.topic_extractor = TopicExtractor(client, s)
        self.keyword_extractor = KeywordExtractor(client, s)
        self.summarizer = Summarizer(client, s)

    # --- Public API ----------------------------------------------------------

    async def analyze_text(
        self,
        raw_text: str,
        auxiliary_sources: Sequence[Union[SourceDocument, dict]] = (),
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AnalysisResult:
        document = Document(
            raw_text=raw_text,
            auxiliary_sources=[SourceDocument.model_validate(s) for s in auxiliary_sources],
        )
        return await self.analyze(document, progress_callback, cancel_event)

    @traceable(name="analyze_document", run_type="chain")
    async def analyze(
        self,
        document: Document,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AnalysisResult:
        """
        Analyse `document` and return the assembled result.

        Raises:
            EmptyInputError:   every source is empty or whitespace.
            AnalysisCancelled: `cancel_event` was set before completion.
        """
        start = time.perf_counter()
        run = _Run(progress_callback, cancel_event)

        # -- 1. Tag sources ----------------------------------------------------
        sources = document.sources()
        if not sources:
            raise EmptyInputError("Nothing to analyse: all sources are empty")
        total_chars = sum(len(s.text) for s in sources)
        mode = (
            ProcessingMode.DISTRIBUTED
            if total_chars > self.settings.distributed_threshold
            else ProcessingMode.COMBINED
        )
        run.notify(
            f"Analysing {len(sources)} source(s), {total_chars:,} chars ({mode.value} mode)"
        )

        # -- 2-5. Stages -------------------------------------------------------
        if mode == ProcessingMode.COMBINED:
            sections, topics, keywords, summary = await self._run_combined(sources, run)
        else:
            sections, topics, keywords, summary = await self._run_distributed(sources, run)

        # -- 6. Stats ------------------------------------------------------------
        run.notify("Computing statistics")
        stats = self._stats(sources, sections, topics)

        # -- 7. Assemble ---------------------------------------------------------
        elapsed_ms = (time.perf_counter() - start) * 1000
        result = AnalysisResult(
            document_id=document.id,
            summary=summary,
            keywords=keywords,
            sections=sections,
            topics=topics,
            outline=build_outline(sections, topics),
            stats=stats,
            processing_info=ProcessingInfo(
                processing_method=mode,
                processing_time_ms=round(elapsed_ms, 1),
                degraded_stages=run.degraded,
            ),
        )
        run.notify(
            f"Done in {elapsed_ms / 1000:.2f}s | {len(sections)} sections | "
            f"{len(topics)} topics | {len(keywords)} keywords"
        )
        return result

    # --- Combined mode -------------------------------------------------------

    async def _run_combined(
        self,
        sources: Sequence[SourceDocument],
        run: _Run,
    ) -> tuple[list[Section], list[Topic], list[str], str]:
        s = self.settings
        working_text, offsets = combine_sources(sources)

        run.notify("Segmenting content")
        sections = await run.stage(
            "segmentation",
            lambda: self._segment(working_text, sources[0].id, offsets),
            lambda: [_whole_text_section(working_text, sources[0].id)],
        )

        run.notify("Extracting topics")
        topics = await run.stage(
            "topics",
            lambda: self.topic_extractor.extract_topics(
                working_text, sections, cancel_event=run.cancel_event
            ),
            lambda: [catch_all_topic(sections, s.orphan_sections)],
        )

        run.notify("Extracting keywords")
        keywords = await run.stage(
            "keywords",
            lambda: self.keyword_extractor.extract_keywords(working_text, run.cancel_event),
            lambda: top_terms(working_text, s.fallback_keywords),
        )

        run.notify("Generating summary")
        summary = await run.stage(
            "summary",
            lambda: self.summarizer.summarize(working_text, run.cancel_event),
            lambda: extractive_summary(working_text, s.summary_fallback_chars),
        )
        return sections, topics, keywords, summary or extractive_summary(working_text)

    # --- Distributed mode ----------------------------------------------------

    async def _run_distributed(
        self,
        sources: Sequence[SourceDocument],
        run: _Run,
    ) -> tuple[list[Section], list[Topic], list[str], str]:
        s = self.settings

        run.notify(f"Segmenting {len(sources)} sources independently")
        sections = await run.stage(
            "segmentation",
            lambda: self._segment_sources(sources, run),
            lambda: [
                _whole_text_section(src.text, src.id, f"section-{i}", src.title)
                for i, src in enumerate(sources, start=1)
            ],
        )

        topics = await run.stage(
            "topics",
            lambda: self._distributed_topics(sources, sections, run),
            lambda: [catch_all_topic(sections, s.orphan_sections)],
        )

        keyword_sources = sources[: s.distributed_keyword_sources]
        run.notify(f"Extracting keywords from {len(keyword_sources)} source(s)")
        keywords = await run.stage(
            "keywords",
            lambda: self._distributed_keywords(keyword_sources, run),
            lambda: top_terms(" ".join(src.text for src in keyword_sources), s.fallback_keywords),
        )

        summary = await run.stage(
            "summary",
            lambda: self._distributed_summary(sources, run),
            lambda: extractive_summary(sources[0].text, s.summary_fallback_chars),
        )
        return sections, topics, keywords, summary

    async def _segment_sources(self, sources: Sequence[SourceDocument], run: _Run) -> list[Section]:
        sections: list[Section] = []
        for i, source in enumerate(sources, start=1):
            raise_if_cancelled(run.cancel_event, "segmentation")
            run.notify(f"Segmenting source {i}/{len(sources)}: {source.title}")
            sections.extend(await self._segment(source.text, source.id))
        return [
            section.model_copy(update={"id": f"section-{n}"})
            for n, section in enumerate(sections, start=1)
        ]

    async def _distributed_topics(
        self,
        sources: Sequence[SourceDocument],
        sections: Sequence[Section],
        run: _Run,
    ) -> list[Topic]:
        s = self.settings
        # Disjoint chunk-index ranges per source keep scores comparable after merging
        stride = s.max_content_size // max(1, s.topic_chunk_size - s.topic_chunk_overlap) + 2
        candidates = []
        for b, batch in enumerate(_batches(sources, s.topic_batch_size)):
            first = b * s.topic_batch_size + 1
            run.notify(
                f"Extracting topics from sources {first}-{first + len(batch) - 1} of {len(sources)}"
            )

            async def worker(i: int, source: SourceDocument, base: int = first - 1) -> list:
                titles = [sec.title for sec in sections if sec.source_id == source.id]
                return await self.topic_extractor.collect_candidates(
                    source.text[: s.max_content_size],
                    titles,
                    run.cancel_event,
                    chunk_offset=(base + i) * stride,
                )

            per_source = await bounded_gather(batch, worker, s.max_concurrency, run.cancel_event)
            candidates.extend(c for batch_candidates in per_source for c in batch_candidates)

        run.notify(f"Merging {len(candidates)} topic candidates")
        return self.topic_extractor.build_topics(candidates, sections, s.distributed_max_topics)

    async def _distributed_keywords(self, sources: Sequence[SourceDocument], run: _Run) -> list[str]:
        per_source: list[list[str]] = []
        for source in sources:
            per_source.append(
                await self.keyword_extractor.extract_keywords(
                    source.text[: self.settings.max_content_size], run.cancel_event
                )
            )
        return merge_keywords(per_source, self.settings.max_keywords)

    async def _distributed_summary(self, sources: Sequence[SourceDocument], run: _Run) -> str:
        s = self.settings
        selected = sources[: s.distributed_summary_sources]
        parts: list[str] = []
        for i, source in enumerate(selected, start=1):
            run.notify(f"Summarising source {i}/{len(selected)}: {source.title}")
            summary = await self.summarizer.summarize(
                source.text[: s.max_content_size], run.cancel_event
            )
            parts.append(f"{source.title}: {summary}")
        remaining = len(sources) - len(selected)
        if remaining > 0:
            parts.append(
                f"(Plus {remaining} additional source(s) not summarised individually.)"
            )
        return "\n\n".join(parts)

    # --- Helpers -------------------------------------------------------------

    async def _segment(
        self,
        text: str,
        source_id: str,
        source_offsets: Sequence[tuple[int, str]] = (),
    ) -> list[Section]:
        return self.segmenter.segment(text, source_id=source_id, source_offsets=source_offsets)

    def _stats(
        self,
        sources: Sequence[SourceDocument],
        sections: Sequence[Section],
        topics: Sequence[Topic],
    ) -> AnalysisStats:
        all_text = "\n\n".join(src.text for src in sources)
        words = word_count(all_text)
        kinds = Counter(src.kind for src in sources)
        return AnalysisStats(
            word_count=words,
            sentence_count=sentence_count(all_text),
            char_count=len(all_text),
            reading_time_minutes=reading_time_minutes(words, self.settings.words_per_minute),
            section_count=len(sections),
            topic_count=len(topics),
            source_count=len(sources),
            file_count=kinds[SourceKind.FILE],
            link_count=kinds[SourceKind.LINK],
            sources=[
                SourceStats(
                    source_id=src.id,
                    title=src.title,
                    kind=src.kind,
                    char_count=len(src.text),
                    word_count=word_count(src.text),
                )
                for src in sources
            ],
        )


def _whole_text_section(
    text: str,
    source_id: str,
    section_id: str = "section-1",
    title: str = "Full Text",
) -> Section:
    content = text.strip()
    return Section(
        id=section_id,
        title=title,
        content=content,
        word_count=word_count(content),
        source_id=source_id,
    )


# --- Convenience entry point ------------------------------------------------

async def analyze(
    raw_text: str,
    auxiliary_sources: Sequence[Union[SourceDocument, dict]] = (),
    progress_callback: Optional[ProgressCallback] = None,
    settings: Optional[Settings] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> AnalysisResult:
    """One-shot analysis with a client built from `settings` and closed afterwards."""
    settings = settings or Settings()
    async with CompletionClient(settings.completion) as client:
        orchestrator = AnalysisOrchestrator(client, settings.analysis)
        return await orchestrator.analyze_text(
            raw_text, auxiliary_sources, progress_callback, cancel_event
        )
