"""Incremental decoding of server-sent-event completion streams."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from loguru import logger

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamEvent:
    text: str = ""
    done: bool = False
    error: Optional[str] = None


def decode_sse_line(line: str) -> Optional[StreamEvent]:
    """
    Decode one SSE line.

    Returns None for lines that carry nothing (comments, keep-alives, blank
    separators, non-data fields, undecodable payloads).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload:
        return None
    if payload == DONE_SENTINEL:
        return StreamEvent(done=True)

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"[SSE] Skipping undecodable payload ({len(payload)} chars)")
        return None
    if not isinstance(data, dict):
        return None

    if data.get("error"):
        err = data["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        return StreamEvent(error=str(message or err))

    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if not content:
        return None
    return StreamEvent(text=content)


async def iter_stream_events(lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """Yield events from an async line iterator, stopping after [DONE]."""
    async for line in lines:
        event = decode_sse_line(line)
        if event is None:
            continue
        yield event
        if event.done:
            return
