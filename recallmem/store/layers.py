from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from .types import MemoryRecord, MemoryState
from .utils import (
    merge_records,
    normalize_day_key,
    now_ms,
    parse_session_key,
    read_json_file,
    resolve_storage_day_key,
    session_key,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

STORAGE_FILE_VERSION = 1
LEGACY_STATE_FILE = "state.json"
LEGACY_BACKUP_FILE = "state.v1.backup.json"
USER_LAYER_DIR = "user"
DAILY_LAYER_DIR = "daily"
USER_LAYER_FILE = "memories.json"
# Characters kept verbatim in platform directory names.
PLATFORM_DIR_SAFE_CHARS = ":@"


@dataclass
class LoadedLayer:
    items: list[MemoryRecord] = field(default_factory=list)
    session_enabled: dict[str, bool] = field(default_factory=dict)


@dataclass
class StateLoadResult:
    state: MemoryState
    legacy_path: Path | None = None


@dataclass
class _PlatformPayload:
    user_items: list[MemoryRecord] = field(default_factory=list)
    daily_by_day: dict[str, list[MemoryRecord]] = field(default_factory=dict)
    session_enabled: dict[str, bool] = field(default_factory=dict)


class LayeredStateStore:
    """Per-platform user/daily JSON layers with one-time legacy migration.

    Layout under ``base_dir``::

        <platform>/user/memories.json
        <platform>/daily/<YYYY-MM-DD>.json
        state.json                # legacy, migrated once
        state.v1.backup.json      # migration backup

    Load, save and backup calls are serialized on one lock per instance.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.legacy_state_path = self.base_dir / LEGACY_STATE_FILE
        self.legacy_backup_path = self.base_dir / LEGACY_BACKUP_FILE
        self._lock = threading.Lock()

    def load_merged_state(self) -> StateLoadResult:
        with self._lock:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            layered = self._load_layered_state()
            legacy = self._load_legacy_state()
            state = merge_loaded_states(layered, legacy)
            return StateLoadResult(
                state=state,
                legacy_path=self.legacy_state_path if legacy is not None else None,
            )

    def save_state(self, state: MemoryState) -> None:
        with self._lock:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            expected: set[Path] = set()
            updated_at = now_ms()
            for platform_key, payload in build_platform_payloads(state).items():
                if payload.user_items or payload.session_enabled:
                    user_path = self.user_memory_path(platform_key)
                    write_json_atomic(
                        user_path,
                        {
                            "version": STORAGE_FILE_VERSION,
                            "updatedAt": updated_at,
                            "items": [item.to_dict() for item in payload.user_items],
                            "sessionEnabled": payload.session_enabled,
                        },
                    )
                    expected.add(user_path)
                for day_key, items in payload.daily_by_day.items():
                    daily_path = self.daily_memory_path(platform_key, day_key)
                    write_json_atomic(
                        daily_path,
                        {
                            "version": STORAGE_FILE_VERSION,
                            "updatedAt": updated_at,
                            "items": [item.to_dict() for item in items],
                        },
                    )
                    expected.add(daily_path)
            self._cleanup_layered_files(expected)

    def backup_legacy_state(self, legacy_path: Path) -> None:
        with self._lock:
            if self.legacy_backup_path.exists():
                legacy_path.unlink(missing_ok=True)
                logger.info("legacy state removed; backup already present path=%s", legacy_path)
                return
            legacy_path.rename(self.legacy_backup_path)
            logger.info("legacy state migrated backup=%s", self.legacy_backup_path)

    def platform_dir_path(self, platform_key: str) -> Path:
        return self.base_dir / encode_platform_dir(platform_key)

    def user_memory_path(self, platform_key: str) -> Path:
        return self.platform_dir_path(platform_key) / USER_LAYER_DIR / USER_LAYER_FILE

    def daily_memory_path(self, platform_key: str, day_key: str) -> Path:
        return self.platform_dir_path(platform_key) / DAILY_LAYER_DIR / f"{day_key}.json"

    def _load_layered_state(self) -> LoadedLayer:
        loaded = LoadedLayer()
        for platform_key, platform_dir in self._list_platform_directories():
            self._load_user_layer(platform_key, platform_dir, loaded)
            self._load_daily_layer(platform_key, platform_dir, loaded)
        return loaded

    def _load_user_layer(self, platform_key: str, platform_dir: Path, loaded: LoadedLayer) -> None:
        raw = read_json_file(platform_dir / USER_LAYER_DIR / USER_LAYER_FILE)
        if raw is None:
            return
        for item in _extract_items(raw):
            record = normalize_loaded_record(item, platform_key)
            if record is not None:
                loaded.items.append(record)
        for session_id, enabled in _extract_session_enabled(raw):
            loaded.session_enabled[session_key(platform_key, session_id)] = enabled

    def _load_daily_layer(self, platform_key: str, platform_dir: Path, loaded: LoadedLayer) -> None:
        daily_dir = platform_dir / DAILY_LAYER_DIR
        for file_path in _list_json_files(daily_dir):
            raw = read_json_file(file_path)
            if raw is None:
                logger.warning("skipping unreadable daily layer path=%s", file_path)
                continue
            default_day_key = normalize_day_key(file_path.stem)
            for item in _extract_items(raw):
                record = normalize_loaded_record(item, platform_key, default_day_key)
                if record is not None:
                    loaded.items.append(record)

    def _load_legacy_state(self) -> LoadedLayer | None:
        if not self.legacy_state_path.exists():
            return None
        raw = read_json_file(self.legacy_state_path)
        if not isinstance(raw, dict):
            logger.warning("ignoring unreadable legacy state path=%s", self.legacy_state_path)
            return None
        loaded = LoadedLayer()
        items = raw.get("items")
        for item in items if isinstance(items, list) else []:
            record = MemoryRecord.from_dict(item)
            if record is not None and record.platform_key:
                loaded.items.append(record)
        enabled_map = raw.get("sessionEnabled")
        if isinstance(enabled_map, dict):
            for key, enabled in enabled_map.items():
                if isinstance(key, str) and isinstance(enabled, bool):
                    loaded.session_enabled[key] = enabled
        return loaded

    def _list_platform_directories(self) -> list[tuple[str, Path]]:
        try:
            entries = sorted(entry for entry in self.base_dir.iterdir() if entry.is_dir())
        except OSError:
            return []
        return [(decode_platform_dir(entry.name), entry) for entry in entries]

    def _cleanup_layered_files(self, expected: set[Path]) -> None:
        for _, platform_dir in self._list_platform_directories():
            user_path = platform_dir / USER_LAYER_DIR / USER_LAYER_FILE
            if user_path.exists() and user_path not in expected:
                user_path.unlink(missing_ok=True)
            daily_dir = platform_dir / DAILY_LAYER_DIR
            for daily_path in _list_json_files(daily_dir):
                if daily_path not in expected:
                    daily_path.unlink(missing_ok=True)
            _remove_dir_if_empty(daily_dir)
            _remove_dir_if_empty(platform_dir / USER_LAYER_DIR)
            _remove_dir_if_empty(platform_dir)


def normalize_loaded_record(
    raw: Any, platform_key: str, default_day_key: str | None = None
) -> MemoryRecord | None:
    record = MemoryRecord.from_dict(raw)
    if record is None:
        return None
    record.platform_key = platform_key
    if record.scope == "session":
        day_key = normalize_day_key(record.day_key)
        record.day_key = day_key or default_day_key or resolve_storage_day_key(record)
    return record


def merge_loaded_states(layered: LoadedLayer, legacy: LoadedLayer | None) -> MemoryState:
    merged: dict[str, MemoryRecord] = {}
    # Legacy first so layered copies win ties on updatedAt.
    for record in [*(legacy.items if legacy else []), *layered.items]:
        merged[record.id] = merge_records(merged.get(record.id), record)
    session_enabled = dict(legacy.session_enabled) if legacy else {}
    session_enabled.update(layered.session_enabled)
    return MemoryState(items=list(merged.values()), session_enabled=session_enabled)


def build_platform_payloads(state: MemoryState) -> dict[str, _PlatformPayload]:
    payloads: dict[str, _PlatformPayload] = {}
    for record in state.items:
        if not record.platform_key:
            continue
        payload = payloads.setdefault(record.platform_key, _PlatformPayload())
        if record.scope == "session":
            day_key = resolve_storage_day_key(record)
            payload.daily_by_day.setdefault(day_key, []).append(record)
        else:
            payload.user_items.append(record)
    for key, enabled in state.session_enabled.items():
        if not isinstance(enabled, bool):
            continue
        parsed = parse_session_key(key)
        if parsed is None:
            continue
        platform_key, session_id = parsed
        if not platform_key:
            continue
        payloads.setdefault(platform_key, _PlatformPayload()).session_enabled[session_id] = enabled
    return payloads


def encode_platform_dir(platform_key: str) -> str:
    """Map an opaque platform key onto a single directory name under the base dir."""
    if not platform_key:
        raise ValueError("platform key must not be empty")
    encoded = quote(platform_key, safe=PLATFORM_DIR_SAFE_CHARS)
    if set(encoded) == {"."}:
        # "." and ".." would resolve outside the platform directory.
        encoded = encoded.replace(".", "%2E")
    return encoded


def decode_platform_dir(name: str) -> str:
    return unquote(name)


def _extract_items(raw: Any) -> list[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict) and isinstance(raw.get("items"), list):
        return raw["items"]
    return []


def _extract_session_enabled(raw: Any) -> list[tuple[str, bool]]:
    if not isinstance(raw, dict):
        return []
    enabled_map = raw.get("sessionEnabled")
    if not isinstance(enabled_map, dict):
        return []
    entries: list[tuple[str, bool]] = []
    for key, enabled in enabled_map.items():
        if not isinstance(key, str) or not isinstance(enabled, bool):
            continue
        parsed = parse_session_key(key)
        entries.append((parsed[1] if parsed else key, enabled))
    return entries


def _list_json_files(dir_path: Path) -> list[Path]:
    try:
        return sorted(
            entry for entry in dir_path.iterdir() if entry.is_file() and entry.suffix == ".json"
        )
    except OSError:
        return []


def _remove_dir_if_empty(dir_path: Path) -> None:
    try:
        dir_path.rmdir()
    except OSError:
        # Missing or not empty.
        return
