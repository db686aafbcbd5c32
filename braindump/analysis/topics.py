"""
Topic Extractor & Merger
-------------------------
    text
      |
      v
    TextChunker (10k chars, 500 overlap) -- short text is one chunk
      |
      v
    per chunk: completion call asking for 5-8 {name, description} pairs
               |-- client unavailable / CompletionError / unparseable output
               v
               frequency heuristic (top stop-word-filtered terms)
      |
      v
    merge_topics   group by name-token overlap, score = distinct chunks
      |
      v
    link_sections  weighted title/content matching, top 5 per topic

Merge rule: a candidate joins the first existing group whose key tokens
overlap its own tokens by at least half of either side.  A group's key and
name come from its earliest-chunk member and never change, which keeps the
merge idempotent: merging a list with a duplicate of itself yields the same
names with the same scores.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from loguru import logger

from braindump.analysis.text_stats import STOP_WORDS, top_terms
from braindump.chunking.chunker import TextChunker
from braindump.chunking.schemas import Chunk
from braindump.completion.client import CompletionClient, CompletionOptions
from braindump.completion.parsing import ParseResult, Unparseable, parse_model_output
from braindump.config import AnalysisSettings
from braindump.errors import CompletionError
from braindump.generation.prompts import TOPIC_PROMPT, TOPIC_SECTION_CONTEXT, clip, part_label
from braindump.schemas import Section, Topic, TopicCandidate
from braindump.utils.concurrency import bounded_gather

# ── Constants ─────────────────────────────────────────────────────────────────

MERGE_OVERLAP_RATIO = 0.5

# Section linking weights
TITLE_PHRASE_WEIGHT = 10.0
TITLE_WORD_WEIGHT = 5.0
CONTENT_PHRASE_WEIGHT = 2.0
CONTENT_WORD_WEIGHT = 0.5
SIGNIFICANT_WORD_CHARS = 4

CATCH_ALL_NAME = "Main Content"
CATCH_ALL_DESCRIPTION = "General content of the document"
MAX_CONTEXT_TITLES = 20

_TOKEN_RE = re.compile(r"\w+")


# --- Candidate parsing -------------------------------------------------------

def parse_topic_candidates(raw_text: str, chunk_index: int) -> ParseResult[list[TopicCandidate]]:
    """Parse model output into candidates; accepts a bare array or {"topics": [...]}."""

    def validate(data: Any) -> list[TopicCandidate]:
        if isinstance(data, dict):
            data = data.get("topics", data.get("items"))
        if not isinstance(data, list):
            raise ValueError("expected a JSON array of topics")
        candidates: list[TopicCandidate] = []
        for item in data:
            if isinstance(item, str):
                name, description = item, ""
            elif isinstance(item, dict):
                name = item.get("name") or item.get("topic") or item.get("title") or ""
                description = item.get("description") or ""
            else:
                continue
            name = str(name).strip()
            if name:
                candidates.append(
                    TopicCandidate(
                        name=name,
                        description=str(description).strip(),
                        chunk_index=chunk_index,
                    )
                )
        if not candidates:
            raise ValueError("no usable topics in array")
        return candidates

    return parse_model_output(raw_text, validate)


def frequency_candidates(text: str, chunk_index: int, limit: int = 5) -> list[TopicCandidate]:
    """Heuristic fallback: the most frequent significant terms become topics."""
    return [
        TopicCandidate(
            name=term.capitalize(),
            description=f"Content related to {term}",
            chunk_index=chunk_index,
        )
        for term in top_terms(text, limit)
    ]


# --- Merge -------------------------------------------------------------------

def name_tokens(name: str) -> frozenset[str]:
    tokens = _TOKEN_RE.findall(name.lower())
    significant = [t for t in tokens if t not in STOP_WORDS]
    return frozenset(significant or tokens)


def _overlaps(a: frozenset[str], b: frozenset[str]) -> bool:
    shared = len(a & b)
    if shared == 0:
        return False
    return shared >= MERGE_OVERLAP_RATIO * len(a) or shared >= MERGE_OVERLAP_RATIO * len(b)


@dataclass
class _TopicGroup:
    key: frozenset[str]
    name: str
    description: str
    chunks: set[int] = field(default_factory=set)


def merge_topics(candidates: Sequence[TopicCandidate], max_topics: int = 10) -> list[Topic]:
    """
    Deduplicate candidates across chunks and rank by chunk coverage.

    Returns at most `max_topics` topics with ids "topic-1".. in rank order
    and no section links yet.
    """
    groups: list[_TopicGroup] = []
    for cand in sorted(candidates, key=lambda c: c.chunk_index):
        tokens = name_tokens(cand.name)
        if not tokens:
            continue
        group = next((g for g in groups if _overlaps(tokens, g.key)), None)
        if group is None:
            groups.append(
                _TopicGroup(
                    key=tokens,
                    name=cand.name.strip(),
                    description=cand.description,
                    chunks={cand.chunk_index},
                )
            )
            continue
        group.chunks.add(cand.chunk_index)
        if len(cand.description) > len(group.description):
            group.description = cand.description

    ranked = sorted(groups, key=lambda g: len(g.chunks), reverse=True)[:max_topics]
    return [
        Topic(id=f"topic-{i}", name=g.name, description=g.description, score=len(g.chunks))
        for i, g in enumerate(ranked, start=1)
    ]


# --- Section linking ---------------------------------------------------------

def score_section(topic_name: str, section: Section) -> float:
    phrase = topic_name.lower().strip()
    words = [w for w in _TOKEN_RE.findall(phrase) if len(w) >= SIGNIFICANT_WORD_CHARS]
    title = section.title.lower()
    content = section.content.lower()

    score = 0.0
    if phrase and phrase in title:
        score += TITLE_PHRASE_WEIGHT
    score += sum(TITLE_WORD_WEIGHT for w in words if w in title)
    if phrase:
        score += content.count(phrase) * CONTENT_PHRASE_WEIGHT
    score += sum(content.count(w) * CONTENT_WORD_WEIGHT for w in words)
    return score


def find_related_sections(
    topic_name: str,
    sections: Sequence[Section],
    limit: int = 5,
    orphan_fallback: int = 2,
) -> list[str]:
    """Ids of the best-matching sections; the first few sections if nothing matches."""
    scored = [(score_section(topic_name, s), s.id) for s in sections]
    matched = sorted((pair for pair in scored if pair[0] > 0), key=lambda p: p[0], reverse=True)
    if matched:
        return [sid for _, sid in matched[:limit]]
    return [s.id for s in sections[:orphan_fallback]]


def link_sections(
    topics: list[Topic],
    sections: Sequence[Section],
    limit: int = 5,
    orphan_fallback: int = 2,
) -> list[Topic]:
    return [
        t.model_copy(
            update={
                "related_section_ids": find_related_sections(t.name, sections, limit, orphan_fallback)
            }
        )
        for t in topics
    ]


def catch_all_topic(sections: Sequence[Section], orphan_fallback: int = 2) -> Topic:
    return Topic(
        id="topic-1",
        name=CATCH_ALL_NAME,
        description=CATCH_ALL_DESCRIPTION,
        related_section_ids=[s.id for s in sections[:orphan_fallback]],
        score=0,
    )


# --- Extractor ---------------------------------------------------------------

class TopicExtractor:
    """
    Completion-backed topic extraction with a heuristic fallback per chunk.

    Usage:
        extractor = TopicExtractor(client, settings.analysis)
        topics = await extractor.extract_topics(text, sections)
    """

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        settings: Optional[AnalysisSettings] = None,
    ) -> None:
        self.client = client
        self.settings = settings or AnalysisSettings()
        self._chunker = TextChunker(
            max_chunk_size=self.settings.topic_chunk_size,
            overlap=self.settings.topic_chunk_overlap,
        )

    async def extract_topics(
        self,
        text: str,
        sections: Sequence[Section] = (),
        section_titles: Optional[Sequence[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        max_topics: Optional[int] = None,
    ) -> list[Topic]:
        """Ranked, deduplicated topics for `text`, linked to `sections`."""
        titles = list(section_titles) if section_titles is not None else [s.title for s in sections]
        candidates = await self.collect_candidates(text, titles, cancel_event)
        return self.build_topics(candidates, sections, max_topics)

    async def collect_candidates(
        self,
        text: str,
        section_titles: Sequence[str] = (),
        cancel_event: Optional[asyncio.Event] = None,
        chunk_offset: int = 0,
    ) -> list[TopicCandidate]:
        """
        Candidates for every chunk of `text`.

        `chunk_offset` shifts chunk indices so candidates from several
        sources can be merged together without colliding.
        """
        chunks = self._chunker.split(text)
        if not chunks:
            return []
        context = ""
        if section_titles:
            context = TOPIC_SECTION_CONTEXT.format(
                titles=", ".join(section_titles[:MAX_CONTEXT_TITLES])
            )

        async def worker(_: int, chunk: Chunk) -> list[TopicCandidate]:
            return await self._candidates_for_chunk(
                chunk, len(chunks), context, chunk_offset + chunk.index, cancel_event
            )

        per_chunk = await bounded_gather(
            chunks, worker, self.settings.max_concurrency, cancel_event
        )
        candidates = [c for batch in per_chunk for c in batch]
        logger.info(
            f"[TopicExtractor] {len(chunks)} chunk(s) -> {len(candidates)} candidates"
        )
        return candidates

    def build_topics(
        self,
        candidates: Sequence[TopicCandidate],
        sections: Sequence[Section],
        max_topics: Optional[int] = None,
    ) -> list[Topic]:
        s = self.settings
        topics = merge_topics(candidates, max_topics or s.max_topics)
        if not topics:
            logger.warning("[TopicExtractor] No topics survived merging -- using catch-all")
            return [catch_all_topic(sections, s.orphan_sections)]
        return link_sections(topics, sections, s.related_sections, s.orphan_sections)

    async def _candidates_for_chunk(
        self,
        chunk: Chunk,
        total: int,
        section_context: str,
        chunk_index: int,
        cancel_event: Optional[asyncio.Event],
    ) -> list[TopicCandidate]:
        if self.client is None or not self.client.is_available():
            return frequency_candidates(chunk.text, chunk_index, self.settings.fallback_topics)

        prompt = TOPIC_PROMPT.format(
            section_context=section_context,
            part_label=part_label(chunk.index, total),
            text=clip(chunk.text, self.settings.topic_prompt_chars),
        )
        try:
            raw = await self.client.complete(
                prompt,
                CompletionOptions(max_tokens=900, temperature=0.4),
                cancel_event=cancel_event,
            )
        except CompletionError as exc:
            logger.warning(
                f"[TopicExtractor] Chunk {chunk.index + 1}/{total}: {type(exc).__name__} "
                f"-- falling back to term frequency"
            )
            return frequency_candidates(chunk.text, chunk_index, self.settings.fallback_topics)

        result = parse_topic_candidates(raw, chunk_index)
        if isinstance(result, Unparseable):
            logger.warning(
                f"[TopicExtractor] Chunk {chunk.index + 1}/{total}: unparseable output "
                f"({result.reason}) -- falling back to term frequency"
            )
            return frequency_candidates(chunk.text, chunk_index, self.settings.fallback_topics)

        logger.debug(
            f"[TopicExtractor] Chunk {chunk.index + 1}/{total}: {len(result.value)} candidates "
            f"via {result.strategy}"
        )
        return result.value
