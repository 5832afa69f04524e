from pathlib import Path

from recallmem.semantic import HashEmbeddingProvider
from recallmem.store.types import MemoryRecord
from recallmem.store.vectors import VectorStore


def _record(record_id: str, *, deleted: bool = False) -> MemoryRecord:
    return MemoryRecord(
        id=record_id,
        platform_key="discord:42",
        scope="user",
        type="rule",
        content="Always run the linter before committing",
        summary="Always run the linter before committing",
        deleted=deleted,
        created_at=1_000,
        updated_at=1_000,
    )


def test_upsert_load_delete_round_trip(tmp_path: Path) -> None:
    provider = HashEmbeddingProvider(64)
    store = VectorStore(tmp_path / "vectors.sqlite", 64)
    assert store.enabled

    first = provider.embed("linter before commit")
    second = provider.embed("use pnpm")
    assert store.upsert(_record("a1"), first)
    assert store.upsert(_record("b2"), second)
    assert store.upsert(_record("a1"), second)

    loaded = store.load(["a1", "b2", "missing"])
    assert set(loaded) == {"a1", "b2"}
    assert loaded["a1"] == loaded["b2"]
    assert store.list_ids() == {"a1", "b2"}

    assert store.delete(["a1"]) == 1
    assert store.list_ids() == {"b2"}
    store.close()


def test_upsert_skips_deleted_or_missing_embedding(tmp_path: Path) -> None:
    store = VectorStore(tmp_path / "vectors.sqlite", 64)

    assert not store.upsert(_record("gone", deleted=True), [1.0] + [0.0] * 63)
    assert not store.upsert(_record("empty"), None)
    assert store.list_ids() == set()
    store.close()


def test_init_failure_disables_store(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")

    store = VectorStore(blocker / "vectors.sqlite", 64)

    assert not store.enabled
    assert store.load(["a"]) == {}
    assert not store.upsert(_record("a"), [1.0] * 64)
    assert store.list_ids() == set()


def test_disabled_store_does_not_open(tmp_path: Path) -> None:
    path = tmp_path / "vectors.sqlite"
    store = VectorStore(path, 64, enabled=False)

    assert not store.enabled
    assert not path.exists()
