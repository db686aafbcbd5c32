"""
Tagged-result parsing of free-form model output.

Models asked for JSON frequently wrap it in prose or code fences.  Recovery
strategies are tried in a fixed order and each one falls through to the next
when either decoding or validation fails:

    1. strict        json.loads on the whole text
    2. code_fence    contents of the first ``` fenced block
    3. balanced_span first bracket/brace span that balances (string-aware)

The result is either Parsed(value, strategy) or Unparseable(raw_text, reason);
callers branch on the type instead of catching exceptions.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar, Union

T = TypeVar("T")

MAX_SPAN_CANDIDATES = 8

_FENCE_RE = re.compile(r"```(?:[A-Za-z0-9_-]+)?\s*\n?(.*?)```", re.DOTALL)
_OPENERS = {"[": "]", "{": "}"}


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T
    strategy: str


@dataclass(frozen=True)
class Unparseable:
    raw_text: str
    reason: str


ParseResult = Union[Parsed[T], Unparseable]


# --- Strategies --------------------------------------------------------------

def _strict(text: str) -> Iterator[str]:
    yield text.strip()


def _code_fence(text: str) -> Iterator[str]:
    match = _FENCE_RE.search(text)
    if match:
        yield match.group(1).strip()


def _balanced_span(text: str) -> Iterator[str]:
    """Yield balanced [...] / {...} spans left to right, bounded in number."""
    yielded = 0
    pos = 0
    while yielded < MAX_SPAN_CANDIDATES:
        start = _next_opener(text, pos)
        if start == -1:
            return
        end = _match_close(text, start)
        if end == -1:
            pos = start + 1
            continue
        yield text[start : end + 1]
        yielded += 1
        pos = start + 1


def _next_opener(text: str, pos: int) -> int:
    hits = [i for i in (text.find("[", pos), text.find("{", pos)) if i != -1]
    return min(hits) if hits else -1


def _match_close(text: str, start: int) -> int:
    stack = [_OPENERS[text[start]]]
    in_string = False
    escaped = False
    for i in range(start + 1, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in "]}":
            if ch != stack[-1]:
                return -1
            stack.pop()
            if not stack:
                return i
    return -1


STRATEGIES: tuple[tuple[str, Callable[[str], Iterator[str]]], ...] = (
    ("strict", _strict),
    ("code_fence", _code_fence),
    ("balanced_span", _balanced_span),
)


# --- Public API --------------------------------------------------------------

def parse_model_output(
    raw_text: str,
    validate: Optional[Callable[[Any], T]] = None,
) -> ParseResult[T]:
    """
    Decode JSON embedded in `raw_text` and optionally validate it.

    `validate` receives the decoded value and returns the typed result or
    raises (ValueError / pydantic.ValidationError / TypeError) to reject it.
    """
    if not raw_text or not raw_text.strip():
        return Unparseable(raw_text=raw_text or "", reason="empty output")

    last_error = "no JSON found"
    for name, strategy in STRATEGIES:
        for candidate in strategy(raw_text):
            try:
                decoded = json.loads(candidate)
            except json.JSONDecodeError as exc:
                last_error = f"{name}: {exc.msg}"
                continue
            if validate is None:
                return Parsed(value=decoded, strategy=name)
            try:
                return Parsed(value=validate(decoded), strategy=name)
            except (ValueError, TypeError) as exc:
                last_error = f"{name}: {exc}"
    return Unparseable(raw_text=raw_text, reason=last_error)
