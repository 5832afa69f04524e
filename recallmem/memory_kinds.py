from __future__ import annotations

from typing import Final, Literal

MemoryScope = Literal["session", "user"]
MemoryType = Literal["preference", "rule", "decision", "fix", "fact"]
MemorySourceType = Literal["explicit", "daily-log"]
DailyLogMode = Literal["write", "shadow"]

ALLOWED_SCOPES: Final[tuple[str, ...]] = ("session", "user")
ALLOWED_MEMORY_TYPES: Final[tuple[str, ...]] = ("preference", "rule", "decision", "fix", "fact")
ALLOWED_SOURCE_TYPES: Final[tuple[str, ...]] = ("explicit", "daily-log")

# Raw preferences stay on the explicit path only.
DAILY_LOG_TYPES: Final[frozenset[str]] = frozenset({"rule", "decision", "fix", "fact"})


def normalize_memory_type(kind: str) -> str:
    return (kind or "").strip().lower()


def validate_memory_type(kind: str) -> str:
    normalized = normalize_memory_type(kind)
    if normalized in ALLOWED_MEMORY_TYPES:
        return normalized
    raise ValueError(
        f"Invalid memory type '{normalized}'. Allowed types: {', '.join(ALLOWED_MEMORY_TYPES)}"
    )


def is_daily_log_type(kind: str) -> bool:
    return normalize_memory_type(kind) in DAILY_LOG_TYPES
