import json
from pathlib import Path

import pytest

from recallmem.config import (
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
    resolve_embedding_runtime,
)
from recallmem.remote_embeddings import RemoteEmbeddingProvider
from recallmem.semantic import HashEmbeddingProvider


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="config must be an object"):
        read_config_file(config_path)


def test_get_config_path_honours_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = tmp_path / "custom.json"
    monkeypatch.setenv("RECALLMEM_CONFIG", str(custom))

    assert get_config_path() == custom


def test_load_config_defaults_when_file_missing() -> None:
    cfg = load_config()

    assert cfg.max_items_per_user == 500
    assert cfg.default_recall_limit == 5
    assert cfg.embedding_strategy == "hash"
    assert cfg.daily_log_policy().max_per_day == 30
    assert cfg.compaction_write_policy().enabled is False


def test_load_config_ignores_malformed_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{broken")

    assert load_config(config_path).daily_log_mode == "write"


def test_env_overrides_file_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"daily_log_max_per_turn": 5, "daily_log_mode": "write", "unknown": 1})
    )
    monkeypatch.setenv("RECALLMEM_DAILY_LOG_MODE", "SHADOW")
    monkeypatch.setenv("RECALLMEM_COMPACTION_WRITE_ENABLED", "yes")

    cfg = load_config(config_path)

    assert cfg.daily_log_max_per_turn == 5
    assert cfg.daily_log_mode == "shadow"
    assert cfg.compaction_write_enabled is True
    assert not hasattr(cfg, "unknown")


def test_invalid_numbers_warn_and_keep_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECALLMEM_DAILY_LOG_MAX_PER_DAY", "lots")
    monkeypatch.setenv("RECALLMEM_DAILY_LOG_MIN_CONFIDENCE", "high")

    with pytest.warns(RuntimeWarning, match="Invalid"):
        cfg = load_config()

    assert cfg.daily_log_max_per_day == 30
    assert cfg.daily_log_min_confidence == 0.65


def test_policies_clamp_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECALLMEM_DAILY_LOG_MAX_PER_TURN", "99")
    monkeypatch.setenv("RECALLMEM_DAILY_LOG_MIN_CONFIDENCE", "1.7")
    monkeypatch.setenv("RECALLMEM_COMPACTION_MAX_PER_RUN", "0")
    monkeypatch.setenv("RECALLMEM_COMPACTION_MIN_TOKEN_DELTA", "500000")

    cfg = load_config()

    assert cfg.daily_log_policy().max_per_turn == 20
    assert cfg.daily_log_policy().min_confidence == 1.0
    assert cfg.compaction_write_policy().max_per_run == 1
    assert cfg.compaction_write_policy().min_token_delta == 200000


def test_openai_env_fallbacks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-fallback")
    monkeypatch.setenv("OPENAI_API_URL", "https://api.example/v1")
    monkeypatch.setenv("RECALLMEM_EMBEDDING_API_URL", "  ")

    overrides = get_env_overrides()

    assert overrides["embedding_api_key"] == "sk-fallback"
    assert overrides["embedding_api_url"] == "https://api.example/v1"


def test_resolve_embedding_runtime_hash_default() -> None:
    runtime = resolve_embedding_runtime(load_config())

    assert runtime.semantic_recall_enabled
    assert runtime.strategy == "hash"
    assert runtime.dimensions == 256
    assert isinstance(runtime.provider, HashEmbeddingProvider)


def test_resolve_embedding_runtime_openai(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECALLMEM_EMBEDDING_STRATEGY", "openai")
    monkeypatch.setenv("RECALLMEM_EMBEDDING_API_KEY", "sk-test")
    monkeypatch.setenv("RECALLMEM_EMBEDDING_API_URL", "https://api.example/v1/chat/completions")
    monkeypatch.setenv("RECALLMEM_EMBEDDING_TIMEOUT_MS", "10")

    runtime = resolve_embedding_runtime(load_config())

    assert runtime.strategy == "openai"
    assert runtime.dimensions == 1536
    assert isinstance(runtime.provider, RemoteEmbeddingProvider)
    assert runtime.provider.endpoint == "https://api.example/v1/embeddings"
    assert runtime.provider.timeout_s == 1.0


def test_resolve_embedding_runtime_falls_back_without_credentials(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("RECALLMEM_EMBEDDING_STRATEGY", "openai")
    monkeypatch.setenv("RECALLMEM_EMBEDDING_DIMENSIONS", "32")

    runtime = resolve_embedding_runtime(load_config())

    assert runtime.strategy == "hash"
    assert runtime.dimensions == 64
    assert "falling back to hash embeddings" in caplog.text


def test_semantic_recall_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECALLMEM_SEMANTIC_RECALL_ENABLED", "false")

    runtime = resolve_embedding_runtime(load_config())

    assert runtime.semantic_recall_enabled is False
    assert runtime.provider is None
