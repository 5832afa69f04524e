from __future__ import annotations

import os
from pathlib import Path

import pytest

from recallmem.config import CONFIG_ENV_OVERRIDES, ENV_FALLBACKS


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    for fallbacks in ENV_FALLBACKS.values():
        for env_var in fallbacks:
            monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("RECALLMEM_CONFIG", os.fspath(tmp_path / "config" / "config.json"))
