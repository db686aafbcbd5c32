"""
Recursive Summarizer
---------------------
  - SHORT text (<= summary_chunk_size): one completion call.
  - LONG text: chunk, summarise every chunk with "part i of n" context, then
    one synthesis call over the joined part summaries with a larger budget.

Any CompletionError at any step falls back to extractive truncation of the
source, so the caller always gets a non-empty summary for non-empty text.
"""
from __future__ import annotations

import asyncio
import re
from typing import Optional

from loguru import logger

from braindump.chunking.chunker import TextChunker
from braindump.chunking.schemas import Chunk
from braindump.completion.client import CompletionClient, CompletionOptions
from braindump.config import AnalysisSettings
from braindump.errors import CompletionError
from braindump.generation.prompts import CHUNK_SUMMARY_PROMPT, SUMMARY_PROMPT, SYNTHESIS_PROMPT, clip
from braindump.utils.concurrency import bounded_gather

_WHITESPACE_RE = re.compile(r"\s+")


def extractive_summary(text: str, max_chars: int = 500) -> str:
    """First `max_chars` of the text, cut back to a sentence or word boundary."""
    flat = _WHITESPACE_RE.sub(" ", text).strip()
    if len(flat) <= max_chars:
        return flat
    head = flat[:max_chars]
    sentence_end = max(head.rfind(". "), head.rfind("! "), head.rfind("? "))
    if sentence_end >= max_chars // 2:
        return head[: sentence_end + 1]
    word_end = head.rfind(" ")
    if word_end > 0:
        head = head[:word_end]
    return head.rstrip(" ,;:") + "..."


class Summarizer:

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        settings: Optional[AnalysisSettings] = None,
    ) -> None:
        self.client = client
        self.settings = settings or AnalysisSettings()
        self._chunker = TextChunker(
            max_chunk_size=self.settings.summary_chunk_size,
            overlap=self.settings.summary_chunk_overlap,
        )

    async def summarize(self, text: str, cancel_event: Optional[asyncio.Event] = None) -> str:
        if not text.strip():
            return ""
        if self.client is None or not self.client.is_available():
            logger.warning("[Summarizer] Completion backend unavailable -- extractive summary")
            return self.fallback(text)
        try:
            if len(text) <= self.settings.summary_chunk_size:
                return await self._complete(
                    SUMMARY_PROMPT.format(text=clip(text, self.settings.summary_prompt_chars)),
                    self.settings.summary_max_tokens,
                    cancel_event,
                )
            return await self._summarize_recursive(text, cancel_event)
        except CompletionError as exc:
            logger.warning(
                f"[Summarizer] {type(exc).__name__}: {exc} -- falling back to extractive summary"
            )
            return self.fallback(text)

    def fallback(self, text: str) -> str:
        return extractive_summary(text, self.settings.summary_fallback_chars)

    async def _summarize_recursive(self, text: str, cancel_event: Optional[asyncio.Event]) -> str:
        chunks = self._chunker.split(text)
        total = len(chunks)
        logger.info(f"[Summarizer] {len(text):,} chars -> {total} parts")

        async def worker(_: int, chunk: Chunk) -> str:
            prompt = CHUNK_SUMMARY_PROMPT.format(
                part=chunk.index + 1,
                total=total,
                text=clip(chunk.text, self.settings.summary_prompt_chars),
            )
            return await self._complete(prompt, self.settings.summary_max_tokens, cancel_event)

        partials = await bounded_gather(chunks, worker, self.settings.max_concurrency, cancel_event)
        joined = "\n\n".join(f"Part {i}: {s}" for i, s in enumerate(partials, start=1))
        return await self._complete(
            SYNTHESIS_PROMPT.format(total=total, text=clip(joined, self.settings.summary_prompt_chars)),
            self.settings.synthesis_max_tokens,
            cancel_event,
        )

    async def _complete(self, prompt: str, max_tokens: int, cancel_event: Optional[asyncio.Event]) -> str:
        return await self.client.complete(
            prompt,
            CompletionOptions(max_tokens=max_tokens, temperature=0.5),
            cancel_event=cancel_event,
        )
