"""
Keyword extraction: one completion call per chunk, merged by frequency.

Falls back to stop-word-filtered term frequency when no chunk produced a
usable keyword list.
"""
from __future__ import annotations

import asyncio
import re
from collections import Counter
from typing import Any, Optional, Sequence

from loguru import logger

from braindump.analysis.text_stats import top_terms
from braindump.chunking.chunker import TextChunker
from braindump.chunking.schemas import Chunk
from braindump.completion.client import CompletionClient, CompletionOptions
from braindump.completion.parsing import Parsed, parse_model_output
from braindump.config import AnalysisSettings
from braindump.errors import CompletionError
from braindump.generation.prompts import KEYWORD_PROMPT, clip, part_label
from braindump.utils.concurrency import bounded_gather

MAX_KEYWORD_CHARS = 60

_SPLIT_RE = re.compile(r"[,\n;]")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]+|\d+[.)])\s*")
_LABEL_RE = re.compile(r"^\s*(?:key\s*words?|key\s*phrases?)\s*:\s*", re.IGNORECASE)


def parse_keywords(raw_text: str) -> list[str]:
    """Comma/newline separated list (or a JSON array of strings) -> clean keywords."""
    stripped = raw_text.strip()
    items: list[str]
    if stripped.startswith("["):
        result = parse_model_output(stripped, _string_list)
        items = result.value if isinstance(result, Parsed) else _SPLIT_RE.split(stripped)
    else:
        items = _SPLIT_RE.split(_LABEL_RE.sub("", stripped))

    keywords: list[str] = []
    seen: set[str] = set()
    for item in items:
        word = _BULLET_RE.sub("", _LABEL_RE.sub("", item)).strip().strip("\"'`[].").strip()
        if not word or len(word) > MAX_KEYWORD_CHARS:
            continue
        key = word.lower()
        if key in seen:
            continue
        seen.add(key)
        keywords.append(word)
    return keywords


def _string_list(data: Any) -> list[str]:
    if not isinstance(data, list):
        raise ValueError("expected a JSON array")
    return [str(item) for item in data if isinstance(item, (str, int, float))]


def merge_keywords(keyword_lists: Sequence[Sequence[str]], limit: int = 15) -> list[str]:
    """Rank case-insensitively by how many lists mention a keyword; first casing wins."""
    counts: Counter[str] = Counter()
    display: dict[str, str] = {}
    for keywords in keyword_lists:
        for word in keywords:
            key = word.lower()
            display.setdefault(key, word)
            counts[key] += 1
    return [display[key] for key, _ in counts.most_common(limit)]


class KeywordExtractor:

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        settings: Optional[AnalysisSettings] = None,
    ) -> None:
        self.client = client
        self.settings = settings or AnalysisSettings()
        self._chunker = TextChunker(
            max_chunk_size=self.settings.keyword_chunk_size,
            overlap=self.settings.keyword_chunk_overlap,
        )

    async def extract_keywords(
        self,
        text: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[str]:
        chunks = self._chunker.split(text)
        if not chunks:
            return []
        if self.client is None or not self.client.is_available():
            return self.fallback(text)

        async def worker(_: int, chunk: Chunk) -> Optional[list[str]]:
            return await self._keywords_for_chunk(chunk, len(chunks), cancel_event)

        per_chunk = await bounded_gather(chunks, worker, self.settings.max_concurrency, cancel_event)
        usable = [kw for kw in per_chunk if kw]
        if not usable:
            logger.warning("[KeywordExtractor] No chunk produced keywords -- using term frequency")
            return self.fallback(text)

        keywords = merge_keywords(usable, self.settings.max_keywords)
        logger.info(f"[KeywordExtractor] {len(chunks)} chunk(s) -> {len(keywords)} keywords")
        return keywords

    def fallback(self, text: str) -> list[str]:
        return top_terms(text, self.settings.fallback_keywords)

    async def _keywords_for_chunk(
        self,
        chunk: Chunk,
        total: int,
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[list[str]]:
        prompt = KEYWORD_PROMPT.format(
            part_label=part_label(chunk.index, total),
            text=clip(chunk.text, self.settings.summary_prompt_chars),
        )
        try:
            raw = await self.client.complete(
                prompt,
                CompletionOptions(max_tokens=250, temperature=0.3),
                cancel_event=cancel_event,
            )
        except CompletionError as exc:
            logger.warning(
                f"[KeywordExtractor] Chunk {chunk.index + 1}/{total}: {type(exc).__name__}: {exc}"
            )
            return None
        return parse_keywords(raw)
