from __future__ import annotations

import datetime as dt
import json
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any

from .types import MemoryRecord

DAY_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def to_day_key(timestamp_ms: int) -> str:
    return dt.datetime.fromtimestamp(timestamp_ms / 1000, tz=dt.UTC).strftime("%Y-%m-%d")


def day_key_offset(day_key: str, days: int) -> str:
    day = dt.date.fromisoformat(day_key)
    return (day + dt.timedelta(days=days)).isoformat()


def normalize_day_key(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized if DAY_KEY_RE.match(normalized) else None


def resolve_storage_day_key(record: MemoryRecord, *, fallback_ms: int | None = None) -> str:
    existing = normalize_day_key(record.day_key)
    if existing:
        return existing
    source = record.created_at or record.updated_at or fallback_ms or now_ms()
    return to_day_key(source)


def session_key(platform_key: str, session_id: str) -> str:
    return f"{platform_key}:{session_id}"


def parse_session_key(key: str) -> tuple[str, str] | None:
    separator = key.rfind(":")
    if separator <= 0 or separator >= len(key) - 1:
        return None
    return key[:separator], key[separator + 1 :]


def merge_records(current: MemoryRecord | None, incoming: MemoryRecord) -> MemoryRecord:
    """Pick the surviving copy of one record id; ties go to the incoming copy."""
    if current is None:
        return incoming
    if incoming.updated_at >= current.updated_at:
        return incoming
    return current


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.tmp-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json_file(path: Path) -> Any | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
