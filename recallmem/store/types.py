from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from ..memory_kinds import (
    ALLOWED_MEMORY_TYPES,
    ALLOWED_SCOPES,
    ALLOWED_SOURCE_TYPES,
    DailyLogMode,
    MemoryScope,
    MemorySourceType,
    MemoryType,
)

SOURCE_REF_VERSION = 1


@dataclass
class SourceRef:
    path: str
    offset: int
    line: int
    version: int = SOURCE_REF_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "path": self.path,
            "offset": self.offset,
            "line": self.line,
        }

    @classmethod
    def from_dict(cls, raw: object) -> SourceRef | None:
        if not isinstance(raw, dict):
            return None
        path = raw.get("path")
        if not isinstance(path, str) or not path:
            return None
        return cls(
            path=path,
            offset=max(0, _as_int(raw.get("offset"), 0)),
            line=max(1, _as_int(raw.get("line"), 1)),
            version=_as_int(raw.get("version"), SOURCE_REF_VERSION),
        )


@dataclass
class MemoryRecord:
    id: str
    platform_key: str
    scope: MemoryScope
    type: MemoryType
    content: str
    summary: str
    keywords: list[str] = field(default_factory=list)
    confidence: float = 0.0
    importance: float = 0.0
    pinned: bool = False
    deleted: bool = False
    created_at: int = 0
    updated_at: int = 0
    last_accessed_at: int = 0
    session_id: str | None = None
    day_key: str | None = None
    dedupe_key: str | None = None
    hit_count: int | None = None
    first_seen_at: int | None = None
    last_seen_at: int | None = None
    source_type: MemorySourceType | None = None
    chunk_id: str | None = None
    source_ref: SourceRef | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "platformKey": self.platform_key,
            "scope": self.scope,
            "type": self.type,
            "content": self.content,
            "summary": self.summary,
            "keywords": list(self.keywords),
            "confidence": self.confidence,
            "importance": self.importance,
            "pinned": self.pinned,
            "deleted": self.deleted,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastAccessedAt": self.last_accessed_at,
        }
        optional = {
            "sessionId": self.session_id,
            "dayKey": self.day_key,
            "dedupeKey": self.dedupe_key,
            "hitCount": self.hit_count,
            "firstSeenAt": self.first_seen_at,
            "lastSeenAt": self.last_seen_at,
            "sourceType": self.source_type,
            "chunkId": self.chunk_id,
            "sourceRef": self.source_ref.to_dict() if self.source_ref else None,
        }
        for key, value in optional.items():
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, raw: object) -> MemoryRecord | None:
        """Decode one on-disk record, returning None when it is unusable."""
        if not isinstance(raw, dict):
            return None
        record_id = raw.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            return None
        scope = raw.get("scope")
        kind = raw.get("type")
        if scope not in ALLOWED_SCOPES or kind not in ALLOWED_MEMORY_TYPES:
            return None
        content = _as_str(raw.get("content"))
        summary = _as_str(raw.get("summary")) or content
        keywords = raw.get("keywords")
        source_type = raw.get("sourceType")
        created_at = _as_int(raw.get("createdAt"), 0)
        updated_at = _as_int(raw.get("updatedAt"), created_at)
        return cls(
            id=record_id,
            platform_key=_as_str(raw.get("platformKey")),
            scope=scope,
            type=kind,
            content=content,
            summary=summary,
            keywords=[k for k in keywords if isinstance(k, str)] if isinstance(keywords, list) else [],
            confidence=_as_float(raw.get("confidence"), 0.0),
            importance=_as_float(raw.get("importance"), 0.0),
            pinned=raw.get("pinned") is True,
            deleted=raw.get("deleted") is True,
            created_at=created_at,
            updated_at=updated_at,
            last_accessed_at=_as_int(raw.get("lastAccessedAt"), updated_at),
            session_id=_optional_str(raw.get("sessionId")),
            day_key=_optional_str(raw.get("dayKey")),
            dedupe_key=_optional_str(raw.get("dedupeKey")),
            hit_count=_optional_int(raw.get("hitCount")),
            first_seen_at=_optional_int(raw.get("firstSeenAt")),
            last_seen_at=_optional_int(raw.get("lastSeenAt")),
            source_type=source_type if source_type in ALLOWED_SOURCE_TYPES else None,
            chunk_id=_optional_str(raw.get("chunkId")),
            source_ref=SourceRef.from_dict(raw.get("sourceRef")),
        )


@dataclass
class MemoryState:
    items: list[MemoryRecord] = field(default_factory=list)
    # Keyed by "<platformKey>:<sessionId>".
    session_enabled: dict[str, bool] = field(default_factory=dict)


@dataclass
class ExtractedCandidate:
    scope: MemoryScope
    type: MemoryType
    content: str
    summary: str
    keywords: list[str]
    confidence: float
    importance: float
    chunk_id: str | None = None
    source_ref: SourceRef | None = None


@dataclass
class DailyLogPolicy:
    enabled: bool = True
    mode: DailyLogMode = "write"
    min_confidence: float = 0.65
    max_per_turn: int = 3
    max_per_day: int = 30


@dataclass
class CompactionWritePolicy:
    enabled: bool = False
    min_token_delta: int = 8000
    min_removed_messages: int = 4
    max_per_run: int = 1
    extractor: str = "rule"


@dataclass
class DailyLogWriteStats:
    attempted: int = 0
    accepted: int = 0
    deduped: int = 0
    rejected: int = 0
    skipped_quota: int = 0
    rejected_by_reason: dict[str, int] = field(default_factory=dict)

    def reject(self, reason: str) -> None:
        self.rejected += 1
        self.rejected_by_reason[reason] = self.rejected_by_reason.get(reason, 0) + 1


@dataclass
class DailyLogResult:
    touched: list[MemoryRecord]
    inserted: list[MemoryRecord]
    stats: DailyLogWriteStats
    mode: str


@dataclass
class RecallResult:
    enabled: bool
    items: list[MemoryRecord]
    prompt_append: str | None = None


@dataclass
class ToggleResult:
    ok: bool
    enabled: bool


@dataclass
class MutateResult:
    ok: bool
    reason: str | None = None
    item: MemoryRecord | None = None


def _as_str(value: object) -> str:
    return value if isinstance(value, str) else ""


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return default


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value)
    return None


def _as_float(value: object, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return default
