"""Shared utility functions for the CLI and pipeline callers."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import orjson


# --- Text Utilities -----------------------------------------------------------

def normalise_input(text: str) -> str:
    """Drop control characters and unify line endings; paragraph breaks survive."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Keep newlines and tabs
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Truncate text for display purposes."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def read_text(path: str | Path) -> str:
    """Read a UTF-8 text file, replacing undecodable bytes."""
    return normalise_input(Path(path).read_text(encoding="utf-8", errors="replace"))


# --- File I/O -----------------------------------------------------------------

def dumps_json(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS).decode("utf-8")


def save_json(data: Any, path: str | Path) -> None:
    """Serialise data to JSON using orjson (handles datetime natively)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))
