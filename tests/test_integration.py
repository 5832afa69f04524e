from pathlib import Path
from typing import Any

import pytest

from recallmem.config import RecallMemConfig
from recallmem.ingest.compaction import (
    count_removed_messages,
    extract_compacted_turn_texts,
    normalize_message_text,
)
from recallmem.integration import (
    AUTO_INJECT_HEADER,
    MEMORY_TOOL_POLICY_APPEND,
    MemoryRunContext,
    append_system_prompt,
    create_memory_integration,
    create_memory_integration_from_config,
    resolve_compaction_write_policy,
)
from recallmem.store import MemoryStore
from recallmem.store.types import CompactionWritePolicy
from recallmem.store.utils import to_day_key

NOW = 1_760_000_000_000
PLATFORM = "discord:42"
SESSION = "s-1"
CONTEXT = MemoryRunContext(platform_key=PLATFORM, session_id=SESSION, user_text="how do I install?")


class FakePluginContext:
    def __init__(self) -> None:
        self.services: dict[str, Any] = {}
        self.tools: dict[str, Any] = {}
        self.hooks: dict[str, list[Any]] = {}

    def register_service(self, name: str, service: Any) -> None:
        self.services[name] = service

    def register_tools(self, tools: dict[str, Any]) -> None:
        self.tools.update(tools)

    def register_hook(self, name: str, hook: Any) -> None:
        self.hooks.setdefault(name, []).append(hook)

    def run_before(self, system_prompt: Any) -> Any:
        payload = {"context": {}, "system_prompt": system_prompt, "tools": self.tools}
        for hook in self.hooks["before_run"]:
            result = hook(payload)
            if result:
                payload["system_prompt"] = result["system_prompt"]
        return payload["system_prompt"]


def _service(tmp_path: Path) -> MemoryStore:
    return MemoryStore(
        tmp_path / "memory",
        semantic_recall_enabled=False,
        clock=lambda: NOW,
    )


def _setup(tmp_path: Path, policy: CompactionWritePolicy | None = None):
    integration = create_memory_integration(
        service=_service(tmp_path), compaction_write_policy=policy
    )
    integration.initialize()
    host = FakePluginContext()
    integration.engine_plugin.initialize(host)
    return integration, host


def _compaction_payload(removed: int = 4, delta: int = 9000) -> dict[str, Any]:
    previous = [{"role": "system", "content": "You are a coding agent."}]
    for index in range(removed // 2):
        previous.append({"role": "user", "content": f"Please check step {index}"})
        previous.append(
            {
                "role": "assistant",
                "content": f"Fixed the flaky login test {index} by resetting the stale cache.",
            }
        )
    kept = [{"role": "user", "content": "what next?"}]
    return {
        "context": {},
        "previous_messages": previous[1:] + kept,
        "new_messages": [{"role": "user", "content": "[COMPACTED_CONTEXT] summary"}, *kept],
        "event": {
            "attempt": 1,
            "trigger": "auto",
            "forced": False,
            "before_message_count": removed + 1,
            "after_message_count": 2,
            "before_estimated_tokens": 10_000 + delta,
            "after_estimated_tokens": 10_000,
            "strategy": "summary",
        },
    }


def test_registers_service_tools_and_hooks(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path)

    assert host.services == {"memory_service": integration.service}
    assert set(host.tools) == {"memory_recall", "memory_record"}
    assert len(host.hooks["before_run"]) == 1
    assert len(host.hooks["on_compacted"]) == 1

    _, enabled_host = _setup(tmp_path / "other", CompactionWritePolicy(enabled=True))
    assert len(enabled_host.hooks["before_run"]) == 2


def test_before_run_without_context_only_appends_policy(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path)
    integration.service.record_turn(PLATFORM, SESSION, "Profile: my name is Jasper.", "")

    prompt = host.run_before("base prompt")

    assert prompt == f"base prompt\n\n{MEMORY_TOOL_POLICY_APPEND}"
    assert AUTO_INJECT_HEADER not in prompt


def test_before_run_with_context_injects_user_facts_and_rules(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path)
    service = integration.service
    service.record_turn(PLATFORM, SESSION, "Profile: my name is Jasper.", "")
    service.record_turn(PLATFORM, SESSION, "You must use pnpm for installs", "")
    service.record_turn(PLATFORM, SESSION, "I prefer tabs over spaces", "")

    with integration.run_context(CONTEXT):
        prompt = host.run_before("base prompt")

    assert MEMORY_TOOL_POLICY_APPEND in prompt
    assert AUTO_INJECT_HEADER in prompt
    assert "(fact) Profile: my name is Jasper." in prompt
    assert "(rule) You must use pnpm for installs" in prompt
    assert "tabs" not in prompt


def test_auto_injection_respects_character_budget(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path)
    for index in range(4):
        integration.service.record_turn(
            PLATFORM, SESSION, f"Rule {index}: you must " + "follow the style guide " * 8, ""
        )

    with integration.run_context(CONTEXT):
        prompt = host.run_before(None)

    injected = prompt["append"].split(MEMORY_TOOL_POLICY_APPEND)[1]
    lines = [line for line in injected.strip().splitlines() if line]
    assert lines[0] == AUTO_INJECT_HEADER
    assert 1 <= len(lines) - 1 < 4
    assert sum(len(line) for line in lines) <= 520


def test_append_system_prompt_preserves_form() -> None:
    assert append_system_prompt(None, "extra") == {"append": "extra"}
    assert append_system_prompt("base", "  extra ") == "base\n\nextra"
    assert append_system_prompt({"append": "one"}, "two") == {"append": "one\n\ntwo"}
    assert append_system_prompt({"append": " "}, "two") == {"append": "two"}
    assert append_system_prompt("base", "   ") == "base"
    wrapped = append_system_prompt(lambda: "dynamic", "extra")
    assert callable(wrapped)
    assert wrapped() == "dynamic\n\nextra"


def test_tools_require_run_context(tmp_path: Path) -> None:
    _, host = _setup(tmp_path)

    with pytest.raises(RuntimeError, match="active engine run context"):
        host.tools["memory_recall"].execute(query="pnpm")


def test_memory_record_and_recall_tools(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path)

    with integration.run_context(CONTEXT):
        recorded = host.tools["memory_record"].execute(content="Use pnpm for installs", kind="rule")
        recalled = host.tools["memory_recall"].execute(query="pnpm")
        defaulted = host.tools["memory_recall"].execute()

    assert recorded["ok"] and recorded["stored"] and recorded["kind"] == "rule"
    assert recorded["item"]["type"] == "rule"
    assert recorded["item"]["source"]["source_ref"]["path"].startswith(f"explicit/{PLATFORM}/")
    assert recalled["count"] == 1
    assert recalled["items"][0]["summary"].endswith("Use pnpm for installs")
    assert defaulted["query"] == CONTEXT.user_text


def test_memory_record_rejects_unknown_kind(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path)

    with integration.run_context(CONTEXT), pytest.raises(ValueError, match="Invalid memory kind"):
        host.tools["memory_record"].execute(content="x", kind="secret")


def test_compaction_write_respects_thresholds(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path, CompactionWritePolicy(enabled=True))
    on_compacted = host.hooks["on_compacted"][0]

    with integration.run_context(CONTEXT):
        on_compacted(_compaction_payload(delta=100))
        on_compacted(_compaction_payload(removed=2))

    assert integration.service.daily_log_by_day(PLATFORM, SESSION, to_day_key(NOW)) == []


def test_compaction_write_quota_per_run(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path, CompactionWritePolicy(enabled=True, max_per_run=1))
    on_compacted = host.hooks["on_compacted"][0]

    with integration.run_context(CONTEXT):
        host.run_before("base")
        on_compacted(_compaction_payload(removed=4))
        on_compacted(_compaction_payload(removed=6))
        stored = integration.service.daily_log_by_day(PLATFORM, SESSION, to_day_key(NOW))
        assert len(stored) == 1
        assert stored[0].source_type == "daily-log"

        host.run_before("base")
        on_compacted(_compaction_payload(removed=6))

    stored = integration.service.daily_log_by_day(PLATFORM, SESSION, to_day_key(NOW))
    assert len(stored) == 2


def test_compaction_without_context_is_ignored(tmp_path: Path) -> None:
    integration, host = _setup(tmp_path, CompactionWritePolicy(enabled=True))

    host.hooks["on_compacted"][0](_compaction_payload())

    assert integration.service.daily_log_by_day(PLATFORM, SESSION, to_day_key(NOW)) == []


def test_compaction_message_helpers() -> None:
    structured = {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Running   tests"},
            {"type": "tool-call", "tool_name": "bash", "input": {"cmd": "pytest"}},
            {"type": "tool-result", "toolName": "bash", "output": "ok"},
            {"type": "image"},
        ],
    }
    assert normalize_message_text(structured) == (
        'Running tests [tool-call:bash] {"cmd": "pytest"} [tool-result:bash] "ok"'
    )
    assert normalize_message_text({"role": "user", "content": "[COMPACTED_CONTEXT] old"}) == ""

    previous = [
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
    ]
    assert count_removed_messages(previous, [{"role": "user", "content": "c"}]) == 2
    assert count_removed_messages(previous, previous) == 0
    assert extract_compacted_turn_texts(previous[:1], []) == (
        "a",
        "Compaction retained user context.",
    )
    assert extract_compacted_turn_texts([{"role": "system", "content": "s"}], []) is None


def test_record_daily_log_fails_open(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    integration, _ = _setup(tmp_path)

    def boom(*args: Any, **kwargs: Any) -> None:
        raise OSError("disk full")

    integration.service.record_turn = boom  # type: ignore[method-assign]
    integration.record_daily_log(PLATFORM, SESSION, "hi", "Fixed the flaky login test for good.")

    assert "daily-log write failed" in caplog.text


def test_resolve_compaction_write_policy_clamps() -> None:
    policy = resolve_compaction_write_policy(
        CompactionWritePolicy(enabled=True, min_token_delta=0, min_removed_messages=999, max_per_run=50)
    )

    assert (policy.min_token_delta, policy.min_removed_messages, policy.max_per_run) == (1, 200, 10)


def test_create_from_config(tmp_path: Path) -> None:
    cfg = RecallMemConfig(
        base_dir=str(tmp_path / "memory"),
        vector_store_path=str(tmp_path / "vectors.sqlite"),
        compaction_write_enabled=True,
        daily_log_mode="shadow",
    )

    integration = create_memory_integration_from_config(cfg)
    integration.initialize()

    assert integration.engine_plugin.compaction_write_policy.enabled
    assert integration.service.daily_log_policy.mode == "shadow"
    assert integration.service.embedding_dimensions == 256
    assert integration.service.semantic_recall_enabled
    integration.service.close()
