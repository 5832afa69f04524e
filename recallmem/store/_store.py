from __future__ import annotations

import dataclasses
import hashlib
import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from uuid import uuid4

from .. import db
from ..extraction import extract_memory_candidates
from ..memory_kinds import MemorySourceType, validate_memory_type
from ..semantic import (
    DEFAULT_HASH_DIMENSIONS,
    EmbeddingProvider,
    HashEmbeddingProvider,
    clamp_embedding_dimensions,
    normalize_embedding_vector,
)
from ..text import clamp_int, normalize_content, normalize_whitespace, unique_words
from . import daily_log as store_daily_log
from . import recall as store_recall
from .layers import LayeredStateStore
from .types import (
    DailyLogPolicy,
    DailyLogResult,
    DailyLogWriteStats,
    ExtractedCandidate,
    MemoryRecord,
    MemoryState,
    MutateResult,
    RecallResult,
    SourceRef,
    ToggleResult,
)
from .utils import now_ms, session_key, to_day_key
from .vectors import VectorStore

logger = logging.getLogger(__name__)

MAX_CANDIDATES_PER_TURN = 6
MAX_EXPLICIT_PER_TURN = 3
DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 50
MAX_RECALL_LIMIT = 8
CHUNK_ID_CHARS = 16

# Candidate types that originate from the user side of a turn.
USER_SIDE_TYPES = frozenset({"fact", "rule", "preference"})


class MemoryStore:
    """File-backed memory service for one ``base_dir``.

    Records live in the layered JSON store; embeddings are cached in an
    optional sqlite vector store. Every public operation is serialized on one
    re-entrant lock.
    """

    def __init__(
        self,
        base_dir: Path | str,
        *,
        vector_store_path: Path | str | None = None,
        max_items_per_user: int = 500,
        default_recall_limit: int = 5,
        semantic_recall_enabled: bool = True,
        embedding_provider: EmbeddingProvider | None = None,
        embedding_dimensions: int | None = None,
        daily_log_policy: DailyLogPolicy | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.vector_store_path = (
            Path(vector_store_path).expanduser()
            if vector_store_path
            else self.base_dir / db.DEFAULT_VECTOR_DB_NAME
        )
        self.max_items_per_user = max(1, int(max_items_per_user))
        self.default_recall_limit = default_recall_limit
        self.semantic_recall_enabled = semantic_recall_enabled
        self.embedding_dimensions = clamp_embedding_dimensions(
            embedding_dimensions
            or (embedding_provider.dimensions if embedding_provider else DEFAULT_HASH_DIMENSIONS)
        )
        self.embedding_provider: EmbeddingProvider = embedding_provider or HashEmbeddingProvider(
            self.embedding_dimensions
        )
        self.daily_log_policy = store_daily_log.normalize_daily_log_policy(daily_log_policy)
        self._clock = clock or now_ms
        self._layers = LayeredStateStore(self.base_dir)
        self._vectors: VectorStore | None = None
        self._state = MemoryState()
        self._initialized = False
        self._lock = threading.RLock()

    @property
    def state(self) -> MemoryState:
        return self._state

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            loaded = self._layers.load_merged_state()
            self._state = loaded.state
            if loaded.legacy_path is not None:
                self._layers.save_state(self._state)
                self._layers.backup_legacy_state(loaded.legacy_path)
            self._open_vector_store()
            self._backfill_missing_embeddings()
            self._initialized = True
            logger.info(
                "memory store initialized base_dir=%s items=%s semantic=%s",
                self.base_dir,
                len(self._state.items),
                self.semantic_recall_enabled,
            )

    def close(self) -> None:
        with self._lock:
            if self._vectors is not None:
                self._vectors.close()
                self._vectors = None
            self._initialized = False

    def is_session_enabled(self, platform_key: str, session_id: str) -> bool:
        with self._lock:
            self.initialize()
            return self._state.session_enabled.get(session_key(platform_key, session_id)) is not False

    def set_session_enabled(self, platform_key: str, session_id: str, enabled: bool) -> ToggleResult:
        with self._lock:
            self.initialize()
            self._state.session_enabled[session_key(platform_key, session_id)] = bool(enabled)
            self._layers.save_state(self._state)
            return ToggleResult(ok=True, enabled=bool(enabled))

    def record_turn(
        self,
        platform_key: str,
        session_id: str,
        user_text: str,
        assistant_text: str,
        *,
        source_type: MemorySourceType = "explicit",
        max_new: int | None = None,
    ) -> DailyLogResult | None:
        with self._lock:
            self.initialize()
            if not self.is_session_enabled(platform_key, session_id):
                return None
            candidates = extract_memory_candidates(user_text, assistant_text)
            candidates = candidates[:MAX_CANDIDATES_PER_TURN]
            if not candidates:
                return None
            now = self._clock()
            attach_provenance(
                candidates,
                platform_key=platform_key,
                session_id=session_id,
                source_type=source_type,
                day_key=to_day_key(now),
                user_text=user_text,
                assistant_text=assistant_text,
            )
            if source_type == "daily-log":
                return self._record_daily_log(platform_key, session_id, candidates, now, max_new)
            return self._record_explicit(
                platform_key, session_id, candidates[:MAX_EXPLICIT_PER_TURN], now, max_new
            )

    def _record_explicit(
        self,
        platform_key: str,
        session_id: str,
        candidates: Sequence[ExtractedCandidate],
        now: int,
        max_new: int | None,
    ) -> DailyLogResult:
        stats = DailyLogWriteStats()
        touched: list[MemoryRecord] = []
        inserted: list[MemoryRecord] = []
        for candidate in candidates:
            stats.attempted += 1
            duplicate = self._find_explicit_duplicate(platform_key, candidate.content)
            if duplicate is not None:
                duplicate.updated_at = max(duplicate.updated_at, now)
                duplicate.last_accessed_at = now
                duplicate.confidence = max(duplicate.confidence, candidate.confidence)
                duplicate.importance = max(duplicate.importance, candidate.importance)
                duplicate.keywords = unique_words([*duplicate.keywords, *candidate.keywords])
                duplicate.source_type = duplicate.source_type or "explicit"
                stats.accepted += 1
                stats.deduped += 1
                touched.append(duplicate)
                continue
            if max_new is not None and len(inserted) >= max_new:
                stats.reject("quota_turn")
                stats.skipped_quota += 1
                continue
            record = MemoryRecord(
                id=uuid4().hex[:8],
                platform_key=platform_key,
                session_id=session_id if candidate.scope == "session" else None,
                scope=candidate.scope,
                type=candidate.type,
                content=candidate.content,
                summary=candidate.summary,
                keywords=list(candidate.keywords),
                confidence=candidate.confidence,
                importance=candidate.importance,
                created_at=now,
                updated_at=now,
                last_accessed_at=now,
                day_key=to_day_key(now) if candidate.scope == "session" else None,
                source_type="explicit",
                chunk_id=candidate.chunk_id,
                source_ref=candidate.source_ref,
            )
            self._state.items.append(record)
            stats.accepted += 1
            touched.append(record)
            inserted.append(record)
        self._commit_touched(platform_key, touched)
        return DailyLogResult(touched=touched, inserted=inserted, stats=stats, mode="explicit")

    def _record_daily_log(
        self,
        platform_key: str,
        session_id: str,
        candidates: Sequence[ExtractedCandidate],
        now: int,
        max_new: int | None,
    ) -> DailyLogResult | None:
        policy = self.daily_log_policy
        if not policy.enabled:
            return None
        result = store_daily_log.process_daily_log_candidates(
            self._state.items,
            candidates,
            platform_key=platform_key,
            session_id=session_id,
            policy=policy,
            now=now,
            max_new=max_new,
        )
        store_daily_log.log_daily_log_stats(platform_key, session_id, result.mode, result.stats)
        if result.mode != "shadow":
            self._commit_touched(platform_key, result.touched)
        return result

    def _find_explicit_duplicate(self, platform_key: str, content: str) -> MemoryRecord | None:
        key = normalize_content(content)
        for item in self._state.items:
            if item.platform_key != platform_key or item.deleted:
                continue
            if item.source_type == "daily-log":
                continue
            if normalize_content(item.content) == key:
                return item
        return None

    def _commit_touched(self, platform_key: str, touched: Sequence[MemoryRecord]) -> None:
        if not touched:
            return
        evicted = self._evict_over_capacity(platform_key)
        self._layers.save_state(self._state)
        for record in touched:
            if not record.deleted:
                self._upsert_embedding(record)
        self._delete_embeddings(evicted)

    def _evict_over_capacity(self, platform_key: str) -> list[str]:
        active = [
            item for item in self._state.items if item.platform_key == platform_key and not item.deleted
        ]
        if len(active) <= self.max_items_per_user:
            return []
        active.sort(
            key=lambda item: (
                not item.pinned,
                -(item.importance * 0.6 + item.confidence * 0.4),
                -item.updated_at,
            )
        )
        now = self._clock()
        evicted: list[str] = []
        for item in active[self.max_items_per_user :]:
            item.deleted = True
            item.updated_at = max(item.updated_at, now)
            evicted.append(item.id)
        logger.info("memory capacity eviction platform=%s evicted=%s", platform_key, len(evicted))
        return evicted

    def recall(
        self,
        platform_key: str,
        session_id: str,
        query: str,
        limit: int | None = None,
    ) -> RecallResult:
        with self._lock:
            self.initialize()
            if not self.is_session_enabled(platform_key, session_id):
                return RecallResult(enabled=False, items=[])
            limit_value = clamp_int(
                limit if limit is not None else self.default_recall_limit, 1, MAX_RECALL_LIMIT
            )
            now = self._clock()
            candidates = self._visible(platform_key, session_id)
            day_filter = store_recall.parse_day_filter(query or "", to_day_key(now))
            if day_filter is not None:
                query = store_recall.strip_day_phrases(query)
                candidates = [
                    item
                    for item in candidates
                    if item.scope == "session" and day_filter.contains(item.day_key)
                ]
            query_vector = self._embed_text(query or "")
            vectors = (
                self._load_embeddings([item.id for item in candidates])
                if query_vector is not None
                else {}
            )
            ranked = store_recall.rank_records(
                candidates,
                query=query or "",
                query_vector=query_vector,
                vectors=vectors,
                now=now,
                limit=limit_value,
            )
            items = [entry.record for entry in ranked]
            return RecallResult(
                enabled=True,
                items=items,
                prompt_append=store_recall.build_memory_prompt(items),
            )

    def list(
        self,
        platform_key: str,
        session_id: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[MemoryRecord]:
        with self._lock:
            self.initialize()
            now = self._clock()
            visible = self._visible(platform_key, session_id)
            visible.sort(key=lambda item: (not item.pinned, -item.updated_at))
            return [
                dataclasses.replace(item, last_accessed_at=item.last_accessed_at or now)
                for item in visible[: clamp_int(limit, 1, MAX_LIST_LIMIT)]
            ]

    def daily_log_by_day(
        self,
        platform_key: str,
        session_id: str,
        day_key: str,
        limit: int = DEFAULT_LIST_LIMIT,
        types: Iterable[str] | None = None,
    ) -> list[MemoryRecord]:
        allowed = {validate_memory_type(kind) for kind in types} if types else None
        with self._lock:
            self.initialize()
            records = [
                item
                for item in self._state.items
                if item.platform_key == platform_key
                and not item.deleted
                and item.source_type == "daily-log"
                and item.session_id == session_id
                and item.day_key == day_key
                and (allowed is None or item.type in allowed)
            ]
            records.sort(key=lambda item: -item.updated_at)
            return [dataclasses.replace(item) for item in records[: clamp_int(limit, 1, MAX_LIST_LIMIT)]]

    def pin(self, platform_key: str, memory_id: str) -> MutateResult:
        with self._lock:
            self.initialize()
            item = self._find_active(platform_key, memory_id)
            if item is None:
                return MutateResult(ok=False, reason="memory not found")
            item.pinned = True
            item.updated_at = max(item.updated_at, self._clock())
            self._layers.save_state(self._state)
            return MutateResult(ok=True, item=item)

    def forget(self, platform_key: str, memory_id: str) -> MutateResult:
        with self._lock:
            self.initialize()
            item = self._find_active(platform_key, memory_id)
            if item is None:
                return MutateResult(ok=False, reason="memory not found")
            item.deleted = True
            item.updated_at = max(item.updated_at, self._clock())
            self._layers.save_state(self._state)
            self._delete_embeddings([item.id])
            return MutateResult(ok=True, item=item)

    def _find_active(self, platform_key: str, memory_id: str) -> MemoryRecord | None:
        for item in self._state.items:
            if item.id == memory_id and item.platform_key == platform_key and not item.deleted:
                return item
        return None

    def _visible(self, platform_key: str, session_id: str | None) -> list[MemoryRecord]:
        return [
            item for item in self._state.items if is_visible(item, platform_key, session_id)
        ]

    def _open_vector_store(self) -> None:
        if not self.semantic_recall_enabled:
            return
        vectors = VectorStore(self.vector_store_path, self.embedding_dimensions)
        if not vectors.enabled:
            logger.warning("semantic recall disabled: failed to initialize vector store")
            self.semantic_recall_enabled = False
            return
        self._vectors = vectors

    def _backfill_missing_embeddings(self) -> None:
        if self._vectors is None:
            return
        existing = self._vectors.list_ids()
        backfilled = 0
        for item in self._state.items:
            if item.deleted or item.id in existing:
                continue
            if self._upsert_embedding(item):
                backfilled += 1
        self._delete_embeddings([item.id for item in self._state.items if item.deleted])
        if backfilled:
            logger.info("backfilled embeddings count=%s", backfilled)

    def _load_embeddings(self, memory_ids: Sequence[str]) -> dict[str, list[float]]:
        if self._vectors is None or not self.semantic_recall_enabled:
            return {}
        return self._vectors.load(memory_ids)

    def _upsert_embedding(self, record: MemoryRecord) -> bool:
        if self._vectors is None or not self.semantic_recall_enabled or record.deleted:
            return False
        embedding = self._embed_text(embedding_text(record))
        return self._vectors.upsert(record, embedding)

    def _delete_embeddings(self, memory_ids: Sequence[str]) -> None:
        if self._vectors is None or not memory_ids:
            return
        self._vectors.delete(set(memory_ids))

    def _embed_text(self, text: str) -> list[float] | None:
        if not self.semantic_recall_enabled:
            return None
        compact = normalize_whitespace(text)
        if not compact:
            return None
        try:
            vector = self.embedding_provider.embed(compact)
        except Exception as exc:
            logger.warning("embedding failed; continuing without vector error=%s", exc, exc_info=exc)
            return None
        return normalize_embedding_vector(vector, self.embedding_dimensions)


def is_visible(record: MemoryRecord, platform_key: str, session_id: str | None) -> bool:
    if record.platform_key != platform_key or record.deleted:
        return False
    if record.scope == "session":
        return bool(session_id) and record.session_id == session_id
    return True


def embedding_text(record: MemoryRecord) -> str:
    parts = [record.type, record.summary, record.content, " ".join(record.keywords)]
    return " ".join(part for part in parts if part)


def attach_provenance(
    candidates: Sequence[ExtractedCandidate],
    *,
    platform_key: str,
    session_id: str,
    source_type: str,
    day_key: str,
    user_text: str,
    assistant_text: str,
) -> None:
    """Stamp each candidate with where it sits in the turn transcript.

    The transcript is ``user_text`` followed by a newline and
    ``assistant_text``; offsets are character offsets into it.
    """
    path = f"{source_type}/{platform_key}/{session_id}/{day_key}.log"
    user = user_text or ""
    assistant_offset = len(user) + 1
    assistant_line = user.count("\n") + 2
    for candidate in candidates:
        if candidate.type in USER_SIDE_TYPES:
            offset, line = _locate(user, user.strip()), 1
            line += user[:offset].count("\n")
        else:
            assistant = assistant_text or ""
            local = _locate(assistant, assistant.strip())
            offset = assistant_offset + local
            line = assistant_line + assistant[:local].count("\n")
        candidate.source_ref = SourceRef(path=path, offset=offset, line=line)
        candidate.chunk_id = build_chunk_id(path, offset, candidate.content)


def build_chunk_id(path: str, offset: int, content: str) -> str:
    digest = hashlib.sha256(f"{path}\n{offset}\n{normalize_content(content)}".encode())
    return digest.hexdigest()[:CHUNK_ID_CHARS]


def _locate(text: str, needle: str) -> int:
    if not needle:
        return 0
    index = text.find(needle)
    return index if index >= 0 else 0
