from __future__ import annotations

import json
import logging
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .remote_embeddings import (
    DEFAULT_REMOTE_DIMENSIONS,
    DEFAULT_REMOTE_MODEL,
    DEFAULT_REMOTE_TIMEOUT_MS,
    MIN_REMOTE_TIMEOUT_MS,
    RemoteEmbeddingProvider,
)
from .semantic import (
    DEFAULT_HASH_DIMENSIONS,
    EmbeddingProvider,
    HashEmbeddingProvider,
    clamp_embedding_dimensions,
)
from .store.types import CompactionWritePolicy, DailyLogPolicy
from .text import clamp, clamp_int

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/recallmem/config.json").expanduser()
DEFAULT_BASE_DIR = Path("~/.recallmem").expanduser()

CONFIG_ENV_OVERRIDES = {
    "base_dir": "RECALLMEM_BASE_DIR",
    "vector_store_path": "RECALLMEM_VECTOR_STORE_PATH",
    "max_items_per_user": "RECALLMEM_MAX_ITEMS_PER_USER",
    "default_recall_limit": "RECALLMEM_DEFAULT_RECALL_LIMIT",
    "semantic_recall_enabled": "RECALLMEM_SEMANTIC_RECALL_ENABLED",
    "embedding_strategy": "RECALLMEM_EMBEDDING_STRATEGY",
    "embedding_api_key": "RECALLMEM_EMBEDDING_API_KEY",
    "embedding_api_url": "RECALLMEM_EMBEDDING_API_URL",
    "embedding_model": "RECALLMEM_EMBEDDING_MODEL",
    "embedding_dimensions": "RECALLMEM_EMBEDDING_DIMENSIONS",
    "embedding_timeout_ms": "RECALLMEM_EMBEDDING_TIMEOUT_MS",
    "daily_log_enabled": "RECALLMEM_DAILY_LOG_ENABLED",
    "daily_log_mode": "RECALLMEM_DAILY_LOG_MODE",
    "daily_log_min_confidence": "RECALLMEM_DAILY_LOG_MIN_CONFIDENCE",
    "daily_log_max_per_turn": "RECALLMEM_DAILY_LOG_MAX_PER_TURN",
    "daily_log_max_per_day": "RECALLMEM_DAILY_LOG_MAX_PER_DAY",
    "compaction_write_enabled": "RECALLMEM_COMPACTION_WRITE_ENABLED",
    "compaction_min_token_delta": "RECALLMEM_COMPACTION_MIN_TOKEN_DELTA",
    "compaction_min_removed_messages": "RECALLMEM_COMPACTION_MIN_REMOVED_MESSAGES",
    "compaction_max_per_run": "RECALLMEM_COMPACTION_MAX_PER_RUN",
}

# Fallbacks consulted when the dedicated variable is unset.
ENV_FALLBACKS = {
    "embedding_api_key": ("OPENAI_API_KEY",),
    "embedding_api_url": ("OPENAI_BASE_URL", "OPENAI_API_URL"),
    "embedding_model": ("OPENAI_EMBEDDING_MODEL",),
}

INT_KEYS = {
    "max_items_per_user",
    "default_recall_limit",
    "embedding_dimensions",
    "embedding_timeout_ms",
    "daily_log_max_per_turn",
    "daily_log_max_per_day",
    "compaction_min_token_delta",
    "compaction_min_removed_messages",
    "compaction_max_per_run",
}
FLOAT_KEYS = {"daily_log_min_confidence"}
BOOL_KEYS = {"semantic_recall_enabled", "daily_log_enabled", "compaction_write_enabled"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("RECALLMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is None or not value.strip():
            for fallback in ENV_FALLBACKS.get(key, ()):
                value = os.getenv(fallback)
                if value and value.strip():
                    break
        if value is not None and value.strip():
            overrides[key] = value.strip()
    return overrides


@dataclass
class RecallMemConfig:
    base_dir: str = str(DEFAULT_BASE_DIR)
    vector_store_path: str | None = None
    max_items_per_user: int = 500
    default_recall_limit: int = 5

    semantic_recall_enabled: bool = True
    # "hash" (local, offline) or "openai" (OpenAI-compatible HTTP endpoint).
    embedding_strategy: str = "hash"
    embedding_api_key: str | None = None
    embedding_api_url: str | None = None
    embedding_model: str = DEFAULT_REMOTE_MODEL
    embedding_dimensions: int | None = None
    embedding_timeout_ms: int = DEFAULT_REMOTE_TIMEOUT_MS

    daily_log_enabled: bool = True
    daily_log_mode: str = "write"
    daily_log_min_confidence: float = 0.65
    daily_log_max_per_turn: int = 3
    daily_log_max_per_day: int = 30

    compaction_write_enabled: bool = False
    compaction_min_token_delta: int = 8000
    compaction_min_removed_messages: int = 4
    compaction_max_per_run: int = 1

    def daily_log_policy(self) -> DailyLogPolicy:
        return DailyLogPolicy(
            enabled=self.daily_log_enabled,
            mode="shadow" if self.daily_log_mode == "shadow" else "write",
            min_confidence=clamp(self.daily_log_min_confidence, 0.0, 1.0),
            max_per_turn=clamp_int(self.daily_log_max_per_turn, 1, 20),
            max_per_day=clamp_int(self.daily_log_max_per_day, 1, 200),
        )

    def compaction_write_policy(self) -> CompactionWritePolicy:
        return CompactionWritePolicy(
            enabled=self.compaction_write_enabled,
            min_token_delta=clamp_int(self.compaction_min_token_delta, 1, 200000),
            min_removed_messages=clamp_int(self.compaction_min_removed_messages, 1, 200),
            max_per_run=clamp_int(self.compaction_max_per_run, 1, 10),
        )


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int | None, *, key: str) -> int | None:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> RecallMemConfig:
    cfg = RecallMemConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: RecallMemConfig, data: dict[str, Any]) -> RecallMemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        if key in {"embedding_strategy", "daily_log_mode"} and isinstance(value, str):
            setattr(cfg, key, value.strip().lower())
            continue
        setattr(cfg, key, value)
    return cfg


@dataclass
class EmbeddingRuntime:
    semantic_recall_enabled: bool
    strategy: str
    dimensions: int
    provider: EmbeddingProvider | None


def resolve_embedding_runtime(cfg: RecallMemConfig) -> EmbeddingRuntime:
    if not cfg.semantic_recall_enabled:
        logger.info("semantic recall disabled by config")
        return EmbeddingRuntime(False, "hash", DEFAULT_HASH_DIMENSIONS, None)

    if cfg.embedding_strategy == "openai":
        if cfg.embedding_api_key and cfg.embedding_api_url:
            dimensions = clamp_embedding_dimensions(
                cfg.embedding_dimensions or DEFAULT_REMOTE_DIMENSIONS
            )
            provider = RemoteEmbeddingProvider(
                api_key=cfg.embedding_api_key,
                base_url=cfg.embedding_api_url,
                model=cfg.embedding_model or DEFAULT_REMOTE_MODEL,
                dimensions=dimensions,
                timeout_ms=max(MIN_REMOTE_TIMEOUT_MS, cfg.embedding_timeout_ms),
            )
            logger.info(
                "embedding strategy=openai model=%s dimensions=%s", provider.model, dimensions
            )
            return EmbeddingRuntime(True, "openai", dimensions, provider)
        logger.warning(
            "embedding strategy=openai requested but api key/base url missing; "
            "set RECALLMEM_EMBEDDING_API_KEY and RECALLMEM_EMBEDDING_API_URL. "
            "falling back to hash embeddings"
        )

    dimensions = clamp_embedding_dimensions(cfg.embedding_dimensions or DEFAULT_HASH_DIMENSIONS)
    logger.info("embedding strategy=hash dimensions=%s", dimensions)
    return EmbeddingRuntime(True, "hash", dimensions, HashEmbeddingProvider(dimensions))
