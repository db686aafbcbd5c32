"""Token-level helpers shared by the heuristic fallbacks and the stats stage."""
from __future__ import annotations

import math
import re
from collections import Counter

STOP_WORDS: frozenset[str] = frozenset(
    """
    a an the and but or for nor on at to by from with in out over under again
    further then once here there when where why how all any both each few more
    most some such no not only own same so than too very can will just should
    now this that these those have has had been being were was are is its it's
    they them their what which who whom would could about into also your you
    of as be if
    """.split()
)

_WORD_RE = re.compile(r"\b\w+\b")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def word_count(text: str) -> int:
    """Whitespace tokenisation."""
    return len(text.split())


def sentence_count(text: str) -> int:
    return sum(1 for part in _SENTENCE_SPLIT_RE.split(text) if part.strip())


def reading_time_minutes(words: int, words_per_minute: int = 225) -> int:
    return math.ceil(words / words_per_minute)


def significant_words(text: str, min_length: int = 4) -> list[str]:
    """Lower-cased word tokens, stop words and short tokens removed."""
    return [
        w
        for w in _WORD_RE.findall(text.lower())
        if len(w) >= min_length and w not in STOP_WORDS and not w.isdigit()
    ]


def top_terms(text: str, limit: int) -> list[str]:
    """Most frequent significant words; ties keep first-seen order."""
    return [w for w, _ in Counter(significant_words(text)).most_common(limit)]
