from __future__ import annotations

from ._store import MemoryStore
from .layers import LayeredStateStore
from .types import (
    CompactionWritePolicy,
    DailyLogPolicy,
    DailyLogResult,
    MemoryRecord,
    MemoryState,
    MutateResult,
    RecallResult,
    SourceRef,
    ToggleResult,
)
from .vectors import VectorStore

__all__ = [
    "CompactionWritePolicy",
    "DailyLogPolicy",
    "DailyLogResult",
    "LayeredStateStore",
    "MemoryRecord",
    "MemoryState",
    "MemoryStore",
    "MutateResult",
    "RecallResult",
    "SourceRef",
    "ToggleResult",
    "VectorStore",
]
