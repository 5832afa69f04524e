from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Sequence
from pathlib import Path

from .. import db
from ..semantic import parse_embedding
from .types import MemoryRecord

logger = logging.getLogger(__name__)


class VectorStore:
    """One cached embedding per memory record, keyed by record id.

    When the database cannot be opened the store disables itself and every
    operation becomes a no-op, so recall falls back to keyword scoring.
    """

    def __init__(self, db_path: Path | str, dimensions: int, *, enabled: bool = True) -> None:
        self.db_path = Path(db_path).expanduser()
        self.dimensions = dimensions
        self.conn: sqlite3.Connection | None = None
        self.enabled = False
        if enabled:
            self._open()

    def _open(self) -> None:
        try:
            conn = db.connect(self.db_path, check_same_thread=False)
            db.initialize_schema(conn)
        except (OSError, sqlite3.Error) as exc:
            logger.warning(
                "vector store disabled path=%s error=%s", self.db_path, exc, exc_info=exc
            )
            return
        self.conn = conn
        self.enabled = True

    def load(self, memory_ids: Sequence[str]) -> dict[str, list[float]]:
        if self.conn is None or not memory_ids:
            return {}
        placeholders = ",".join(["?"] * len(memory_ids))
        rows = self.conn.execute(
            f"""
            SELECT memory_id, vector_json
            FROM memory_vectors
            WHERE memory_id IN ({placeholders})
            """,
            list(memory_ids),
        ).fetchall()
        vectors: dict[str, list[float]] = {}
        for row in rows:
            vector = parse_embedding(row["vector_json"], self.dimensions)
            if vector is not None:
                vectors[row["memory_id"]] = vector
        return vectors

    def upsert(self, record: MemoryRecord, embedding: Sequence[float] | None) -> bool:
        if self.conn is None or record.deleted or not embedding:
            return False
        self.conn.execute(
            """
            INSERT INTO memory_vectors(memory_id, platform_key, vector_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(memory_id) DO UPDATE SET
                platform_key = excluded.platform_key,
                vector_json = excluded.vector_json,
                updated_at = excluded.updated_at
            """,
            (record.id, record.platform_key, json.dumps(list(embedding)), record.updated_at),
        )
        self.conn.commit()
        return True

    def delete(self, memory_ids: Iterable[str]) -> int:
        ids = list(memory_ids)
        if self.conn is None or not ids:
            return 0
        placeholders = ",".join(["?"] * len(ids))
        cur = self.conn.execute(
            f"DELETE FROM memory_vectors WHERE memory_id IN ({placeholders})",
            ids,
        )
        self.conn.commit()
        return cur.rowcount

    def list_ids(self) -> set[str]:
        if self.conn is None:
            return set()
        rows = self.conn.execute("SELECT memory_id FROM memory_vectors").fetchall()
        return {row["memory_id"] for row in rows}

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
        self.enabled = False
