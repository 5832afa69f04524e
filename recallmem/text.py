from __future__ import annotations

import re
from collections.abc import Iterable

_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^a-z0-9\u4e00-\u9fff\s]")

MAX_TOKENS = 30
MAX_UNIQUE_WORDS = 40


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def summarize(text: str, max_length: int) -> str:
    compact = normalize_whitespace(text)
    if len(compact) <= max_length:
        return compact
    return f"{compact[: max_length - 3]}..."


def normalize_content(text: str) -> str:
    """Case-folded, whitespace-collapsed form used for dedup keys."""
    return normalize_whitespace(text).lower()


def tokenize(text: str) -> list[str]:
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    tokens = [token for token in cleaned.split() if len(token) >= 2]
    return unique_words(tokens[:MAX_TOKENS])


def unique_words(items: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)[:MAX_UNIQUE_WORDS]


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def clamp_int(value: float, low: int, high: int) -> int:
    return int(round(clamp(value, low, high)))
