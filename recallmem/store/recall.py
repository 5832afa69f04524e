from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..semantic import cosine_similarity
from ..text import tokenize
from .types import MemoryRecord
from .utils import MS_PER_DAY, day_key_offset

RECALL_MIN_SCORE = 0.18
PINNED_BONUS = 0.20
RECENCY_HALF_LIFE_DAYS = 7

MEMORY_PROMPT_HEADER = "Memory context from previous conversations (use only when relevant):"
MEMORY_PROMPT_FOOTER = (
    "If memory conflicts with the latest user instruction, follow the latest user instruction."
)

_LAST_N_DAYS_RE = re.compile(r"\b(?:last|past)\s+(\d{1,3})\s+days?\b", re.IGNORECASE)
_RECENT_N_DAYS_CN_RE = re.compile(r"最近\s*(\d{1,3})\s*天")
_DAY_PHRASE_RE = re.compile(
    r"\b(?:last|past)\s+\d{1,3}\s+days?\b|\btoday\b|\byesterday\b|最近\s*\d{1,3}\s*天|今天|昨天|前天",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class DayFilter:
    start: str
    end: str

    def contains(self, day_key: str | None) -> bool:
        return day_key is not None and self.start <= day_key <= self.end


@dataclass
class ScoredRecord:
    record: MemoryRecord
    score: float


def combine_recall_score(
    keyword_score: float,
    semantic_score: float,
    recency_score: float,
    quality_score: float,
    *,
    pinned: bool,
    has_keywords: bool,
    has_semantic: bool,
) -> float:
    """Blend the recall signals; pinned records get a flat bonus on top.

    The bonus is additive and unclamped so a pinned record always outranks an
    otherwise identical unpinned one.
    """
    if has_keywords and has_semantic:
        score = (
            keyword_score * 0.38
            + semantic_score * 0.32
            + recency_score * 0.17
            + quality_score * 0.13
        )
    elif has_keywords:
        score = keyword_score * 0.55 + recency_score * 0.25 + quality_score * 0.20
    elif has_semantic:
        score = semantic_score * 0.65 + recency_score * 0.20 + quality_score * 0.15
    else:
        score = recency_score * 0.70 + quality_score * 0.30
    if pinned:
        score += PINNED_BONUS
    return score


def keyword_score(record: MemoryRecord, query_tokens: Sequence[str]) -> float:
    if not query_tokens:
        return 0.0
    haystack = f"{record.summary} {record.content} {' '.join(record.keywords)}".lower()
    matched = sum(1 for token in query_tokens if token in haystack)
    return matched / len(query_tokens)


def recency_score(record: MemoryRecord, now: int) -> float:
    age_days = max(0, now - record.updated_at) / MS_PER_DAY
    return 1.0 / (1.0 + age_days / RECENCY_HALF_LIFE_DAYS)


def quality_score(record: MemoryRecord) -> float:
    return record.confidence * 0.5 + record.importance * 0.5


def parse_day_filter(query: str, today_key: str) -> DayFilter | None:
    """Map relative-day phrasing in a query to an inclusive day-key window."""
    if not query:
        return None
    lowered = query.lower()
    match = _LAST_N_DAYS_RE.search(lowered) or _RECENT_N_DAYS_CN_RE.search(query)
    if match:
        days = max(1, int(match.group(1)))
        return DayFilter(start=day_key_offset(today_key, -(days - 1)), end=today_key)
    if "前天" in query:
        day = day_key_offset(today_key, -2)
        return DayFilter(start=day, end=day)
    if "yesterday" in lowered or "昨天" in query:
        day = day_key_offset(today_key, -1)
        return DayFilter(start=day, end=day)
    if "today" in lowered or "今天" in query:
        return DayFilter(start=today_key, end=today_key)
    return None


def strip_day_phrases(query: str) -> str:
    return _DAY_PHRASE_RE.sub(" ", query).strip()


def rank_records(
    records: Sequence[MemoryRecord],
    *,
    query: str,
    query_vector: Sequence[float] | None,
    vectors: Mapping[str, Sequence[float]],
    now: int,
    limit: int,
) -> list[ScoredRecord]:
    query_tokens = tokenize(query)
    has_keywords = bool(query_tokens)
    has_semantic = query_vector is not None
    scored: list[ScoredRecord] = []
    for record in records:
        record_vector = vectors.get(record.id)
        semantic = (
            cosine_similarity(query_vector, record_vector)
            if query_vector is not None and record_vector is not None
            else 0.0
        )
        score = combine_recall_score(
            keyword_score(record, query_tokens),
            semantic,
            recency_score(record, now),
            quality_score(record),
            pinned=record.pinned,
            has_keywords=has_keywords,
            has_semantic=has_semantic,
        )
        if (has_keywords or has_semantic) and score < RECALL_MIN_SCORE:
            continue
        scored.append(ScoredRecord(record=record, score=score))
    scored.sort(key=lambda entry: entry.score, reverse=True)
    return scored[:limit]


def build_memory_prompt(records: Sequence[MemoryRecord]) -> str | None:
    if not records:
        return None
    lines = [MEMORY_PROMPT_HEADER]
    for index, record in enumerate(records, start=1):
        flags = [record.type, record.scope]
        if record.pinned:
            flags.append("pinned")
        lines.append(f"{index}. [{record.id}] ({', '.join(flags)}) {record.summary}")
    lines.append(MEMORY_PROMPT_FOOTER)
    return "\n".join(lines)
