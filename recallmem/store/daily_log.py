from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from uuid import uuid4

from ..memory_kinds import is_daily_log_type
from ..text import clamp, normalize_content, normalize_whitespace, summarize, tokenize, unique_words
from .types import (
    DailyLogPolicy,
    DailyLogResult,
    DailyLogWriteStats,
    ExtractedCandidate,
    MemoryRecord,
)
from .utils import to_day_key

logger = logging.getLogger(__name__)

MIN_CONTENT_CHARS = 18
MIN_CONTENT_TOKENS = 3
DEDUPE_KEY_CHARS = 160
MERGED_SUMMARY_CHARS = 120

SMALL_TALK_RE = re.compile(
    r"^(ok|okay|thanks|thank you|got it|sure|nice|yes|no|好的|收到|明白了|行|嗯+|啊+|哈+)[!. ]*$",
    re.IGNORECASE,
)


def normalize_daily_log_policy(policy: DailyLogPolicy | None = None) -> DailyLogPolicy:
    if policy is None:
        return DailyLogPolicy()
    return DailyLogPolicy(
        enabled=bool(policy.enabled),
        mode="shadow" if policy.mode == "shadow" else "write",
        min_confidence=clamp(policy.min_confidence, 0.0, 1.0),
        max_per_turn=max(1, round(policy.max_per_turn)),
        max_per_day=max(1, round(policy.max_per_day)),
    )


def build_dedupe_key(candidate: ExtractedCandidate) -> str:
    normalized = normalize_content(candidate.summary or candidate.content)
    return f"{candidate.type}:{normalized[:DEDUPE_KEY_CHARS]}"


def looks_like_small_talk(content: str) -> bool:
    return SMALL_TALK_RE.match(content) is not None


def evaluate_quality_gate(candidate: ExtractedCandidate, min_confidence: float) -> str | None:
    """Return the rejection reason for a low-value candidate, or None to keep it."""
    if candidate.confidence < min_confidence:
        return "low_confidence"
    compact = normalize_whitespace(candidate.content)
    if len(compact) < MIN_CONTENT_CHARS:
        return "too_short"
    if looks_like_small_talk(compact):
        return "small_talk"
    if len(tokenize(compact)) < MIN_CONTENT_TOKENS:
        return "low_density"
    return None


def count_daily_log_entries(items: Sequence[MemoryRecord], platform_key: str, day_key: str) -> int:
    return sum(
        1
        for item in items
        if item.platform_key == platform_key
        and not item.deleted
        and item.source_type == "daily-log"
        and item.day_key == day_key
    )


def _find_duplicate(
    items: Sequence[MemoryRecord],
    *,
    platform_key: str,
    session_id: str,
    day_key: str,
    dedupe_key: str,
) -> MemoryRecord | None:
    for item in items:
        if item.platform_key != platform_key or item.deleted:
            continue
        if (
            item.source_type == "daily-log"
            and item.session_id == session_id
            and item.day_key == day_key
            and item.dedupe_key == dedupe_key
        ):
            return item
    return None


def _merge_into(record: MemoryRecord, candidate: ExtractedCandidate, now: int) -> None:
    record.updated_at = max(record.updated_at, now)
    record.last_accessed_at = now
    record.confidence = max(record.confidence, candidate.confidence)
    record.importance = max(record.importance, candidate.importance)
    record.keywords = unique_words([*record.keywords, *candidate.keywords])
    record.summary = summarize(f"{record.summary} {candidate.summary}", MERGED_SUMMARY_CHARS)
    if record.first_seen_at is None:
        record.first_seen_at = record.created_at
    record.last_seen_at = now
    record.hit_count = (record.hit_count or 1) + 1
    record.chunk_id = candidate.chunk_id or record.chunk_id
    record.source_ref = candidate.source_ref or record.source_ref


def _new_record(
    candidate: ExtractedCandidate,
    *,
    platform_key: str,
    session_id: str,
    day_key: str,
    dedupe_key: str,
    now: int,
) -> MemoryRecord:
    return MemoryRecord(
        id=uuid4().hex[:8],
        platform_key=platform_key,
        session_id=session_id,
        scope="session",
        type=candidate.type,
        content=candidate.content,
        summary=candidate.summary,
        keywords=list(candidate.keywords),
        confidence=candidate.confidence,
        importance=candidate.importance,
        created_at=now,
        updated_at=now,
        last_accessed_at=now,
        source_type="daily-log",
        day_key=day_key,
        dedupe_key=dedupe_key,
        hit_count=1,
        first_seen_at=now,
        last_seen_at=now,
        chunk_id=candidate.chunk_id,
        source_ref=candidate.source_ref,
    )


def process_daily_log_candidates(
    items: list[MemoryRecord],
    candidates: Sequence[ExtractedCandidate],
    *,
    platform_key: str,
    session_id: str,
    policy: DailyLogPolicy,
    now: int,
    max_new: int | None = None,
) -> DailyLogResult:
    """Filter, dedupe and quota-limit candidates into daily-log records.

    In ``write`` mode new records are appended to ``items`` and duplicates are
    merged in place. ``shadow`` mode walks the same decisions and produces the
    same statistics without touching ``items``. ``max_new`` further caps the
    number of records inserted by this call.
    """
    day_key = to_day_key(now)
    shadow = policy.mode == "shadow"
    turn_cap = policy.max_per_turn if max_new is None else min(policy.max_per_turn, max(0, max_new))
    remaining_for_day = max(0, policy.max_per_day - count_daily_log_entries(items, platform_key, day_key))
    inserted_this_turn = 0
    stats = DailyLogWriteStats()
    touched: list[MemoryRecord] = []
    inserted: list[MemoryRecord] = []
    # Keys a shadow run would have inserted, so repeats count as dedupes.
    shadow_keys: set[str] = set()

    for candidate in candidates:
        stats.attempted += 1

        if not is_daily_log_type(candidate.type):
            stats.reject("type_not_allowed")
            continue

        rejection = evaluate_quality_gate(candidate, policy.min_confidence)
        if rejection:
            stats.reject(rejection)
            continue

        dedupe_key = build_dedupe_key(candidate)
        duplicate = _find_duplicate(
            items,
            platform_key=platform_key,
            session_id=session_id,
            day_key=day_key,
            dedupe_key=dedupe_key,
        )
        if duplicate is not None or dedupe_key in shadow_keys:
            stats.accepted += 1
            stats.deduped += 1
            if not shadow and duplicate is not None:
                _merge_into(duplicate, candidate, now)
                if all(record is not duplicate for record in touched):
                    touched.append(duplicate)
            continue

        if inserted_this_turn >= turn_cap:
            stats.reject("quota_turn")
            stats.skipped_quota += 1
            continue
        if remaining_for_day <= 0:
            stats.reject("quota_day")
            stats.skipped_quota += 1
            continue

        stats.accepted += 1
        inserted_this_turn += 1
        remaining_for_day -= 1

        if shadow:
            shadow_keys.add(dedupe_key)
            continue

        record = _new_record(
            candidate,
            platform_key=platform_key,
            session_id=session_id,
            day_key=day_key,
            dedupe_key=dedupe_key,
            now=now,
        )
        items.append(record)
        touched.append(record)
        inserted.append(record)

    return DailyLogResult(touched=touched, inserted=inserted, stats=stats, mode=policy.mode)


def format_daily_log_line(
    platform_key: str, session_id: str, mode: str, stats: DailyLogWriteStats
) -> str:
    line = (
        f"daily-log mode={mode} platform={platform_key} session={session_id} "
        f"attempted={stats.attempted} accepted={stats.accepted} deduped={stats.deduped} "
        f"rejected={stats.rejected} skippedQuota={stats.skipped_quota}"
    )
    if stats.rejected_by_reason:
        reasons = ",".join(f"{reason}:{count}" for reason, count in stats.rejected_by_reason.items())
        line = f"{line} rejectReasons={reasons}"
    return line


def log_daily_log_stats(
    platform_key: str, session_id: str, mode: str, stats: DailyLogWriteStats
) -> None:
    if stats.attempted == 0:
        return
    logger.info(format_daily_log_line(platform_key, session_id, mode, stats))
