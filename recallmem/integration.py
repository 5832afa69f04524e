from __future__ import annotations

import contextvars
import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from .config import RecallMemConfig, load_config, resolve_embedding_runtime
from .ingest.compaction import count_removed_messages, extract_compacted_turn_texts
from .store import MemoryStore
from .store.types import CompactionWritePolicy, MemoryRecord
from .text import clamp_int, normalize_content

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PLUGIN_NAME = "memory-plugin"
DEFAULT_PLUGIN_VERSION = "0.0.1"
SERVICE_NAME = "memory_service"

MEMORY_TOOL_POLICY_APPEND = "\n".join(
    [
        "## Memory Tool Policy (On-Demand)",
        "Memory access is tool-based. Do not read/write memory on every turn.",
        "Use `memory_recall` only when memory is relevant to the current task.",
        "Use `memory_record` only when the user provides stable profile/preferences/rules "
        "or when a fix is worth remembering.",
        "If user intent conflicts with recalled memory, follow the latest user instruction.",
    ]
)

AUTO_INJECT_HEADER = (
    "Persistent user memory (auto-injected each run; follow latest user instruction on conflict):"
)
AUTO_INJECT_LIST_LIMIT = 30
AUTO_INJECT_MAX_ITEMS = 4
AUTO_INJECT_CHAR_BUDGET = 520

RECORD_KINDS = ("preference", "rule", "fix", "profile")
DEFAULT_RECORD_KIND = "profile"
RECORD_TOOL_LIST_LIMIT = 20

MEMORY_RECALL_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "Natural language recall query. Defaults to current user message when omitted.",
        },
        "limit": {
            "type": "integer",
            "minimum": 1,
            "maximum": 8,
            "description": "Maximum number of memory items to return.",
        },
    },
}

MEMORY_RECORD_INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "content": {"type": "string", "minLength": 1, "description": "The memory content to store."},
        "kind": {
            "type": "string",
            "enum": list(RECORD_KINDS),
            "description": "Memory kind. rule/profile are user-level; preference/fix are "
            "session-level. Defaults to profile.",
        },
    },
    "required": ["content"],
}


@dataclass(frozen=True)
class MemoryRunContext:
    platform_key: str
    session_id: str
    user_text: str = ""


class RunContextAdapter:
    """Carries the active run context for the current thread or task."""

    def __init__(self, name: str = "recallmem_run_context") -> None:
        self._var: contextvars.ContextVar[MemoryRunContext | None] = contextvars.ContextVar(
            name, default=None
        )

    def get_context(self) -> MemoryRunContext | None:
        return self._var.get()

    @contextmanager
    def run_context(self, context: MemoryRunContext) -> Iterator[MemoryRunContext]:
        token = self._var.set(context)
        try:
            yield context
        finally:
            self._var.reset(token)

    def with_context(self, context: MemoryRunContext, run: Callable[[], T]) -> T:
        with self.run_context(context):
            return run()


class PluginContext(Protocol):
    def register_service(self, name: str, service: Any) -> None: ...

    def register_tools(self, tools: Mapping[str, MemoryTool]) -> None: ...

    def register_hook(self, name: str, hook: Callable[[dict[str, Any]], Any]) -> None: ...


@dataclass
class MemoryTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    execute: Callable[..., dict[str, Any]]


SystemPrompt = str | Callable[[], str] | Mapping[str, str] | None


def append_system_prompt(base: SystemPrompt, append: str) -> SystemPrompt:
    """Append a block to a system prompt, preserving the prompt's form."""
    addition = append.strip()
    if not addition:
        return base if base is not None else {"append": ""}
    if base is None:
        return {"append": addition}
    if isinstance(base, str):
        return f"{base}\n\n{addition}"
    if callable(base):
        inner = base
        return lambda: f"{inner()}\n\n{addition}"
    current = str(base.get("append") or "").strip()
    return {"append": f"{current}\n\n{addition}" if current else addition}


def resolve_compaction_write_policy(
    policy: CompactionWritePolicy | None = None,
) -> CompactionWritePolicy:
    if policy is None:
        return CompactionWritePolicy()
    return CompactionWritePolicy(
        enabled=bool(policy.enabled),
        min_token_delta=clamp_int(policy.min_token_delta, 1, 200000),
        min_removed_messages=clamp_int(policy.min_removed_messages, 1, 200),
        max_per_run=clamp_int(policy.max_per_run, 1, 10),
        extractor="rule",
    )


def record_turn_payload(content: str, kind: str) -> tuple[str, str]:
    normalized = content.strip()
    if kind == "rule":
        return f"Rule: must follow this constraint. {normalized}", "Acknowledged."
    if kind == "fix":
        return f"Issue context: {normalized}", f"Fixed and resolved: {normalized}"
    if kind == "profile":
        return f"Profile: {normalized}", "Profile captured."
    return f"Remember this preference for later: {normalized}", "Noted."


def summarize_memory_item(item: MemoryRecord) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": item.id,
        "scope": item.scope,
        "type": item.type,
        "summary": item.summary,
        "content": item.content,
        "pinned": item.pinned,
        "updated_at": item.updated_at,
    }
    if item.chunk_id or item.source_ref:
        summary["source"] = {
            "chunk_id": item.chunk_id,
            "source_ref": item.source_ref.to_dict() if item.source_ref else None,
        }
    return summary


def build_auto_injected_prompt(service: MemoryStore, context: MemoryRunContext) -> str | None:
    listed = service.list(
        context.platform_key, session_id=context.session_id, limit=AUTO_INJECT_LIST_LIMIT
    )
    selected = [
        item
        for item in listed
        if item.scope == "user"
        and item.type in {"rule", "fact"}
        and item.source_type != "daily-log"
    ][:AUTO_INJECT_MAX_ITEMS]
    if not selected:
        return None
    lines = [AUTO_INJECT_HEADER]
    used = len(AUTO_INJECT_HEADER)
    for index, item in enumerate(selected, start=1):
        flags = item.type + (", pinned" if item.pinned else "")
        summary = item.summary.strip() or item.content.strip()
        line = f"{index}. ({flags}) {summary}"
        if used + len(line) > AUTO_INJECT_CHAR_BUDGET and len(lines) > 1:
            break
        lines.append(line)
        used += len(line)
    return "\n".join(lines) if len(lines) > 1 else None


class MemoryEnginePlugin:
    """Host-engine plugin exposing memory tools and run hooks."""

    def __init__(
        self,
        service: MemoryStore,
        get_run_context: Callable[[], MemoryRunContext | None],
        *,
        name: str = DEFAULT_PLUGIN_NAME,
        version: str = DEFAULT_PLUGIN_VERSION,
        tool_policy_append: str = MEMORY_TOOL_POLICY_APPEND,
        compaction_write_policy: CompactionWritePolicy | None = None,
    ) -> None:
        self.name = name
        self.version = version
        self.service = service
        self.get_run_context = get_run_context
        self.tool_policy_append = tool_policy_append
        self.compaction_write_policy = resolve_compaction_write_policy(compaction_write_policy)
        self.compaction_writes_in_run = 0

    def initialize(self, context: PluginContext) -> None:
        context.register_service(SERVICE_NAME, self.service)
        context.register_tools(self.tools())
        context.register_hook("before_run", self.before_run)
        if self.compaction_write_policy.enabled:
            context.register_hook("before_run", self.reset_run_quota)
        context.register_hook("on_compacted", self.on_compacted)

    def tools(self) -> dict[str, MemoryTool]:
        return {
            "memory_recall": MemoryTool(
                name="memory_recall",
                description="Recall relevant memory items for the current user/session when needed.",
                input_schema=MEMORY_RECALL_INPUT_SCHEMA,
                execute=self.memory_recall,
            ),
            "memory_record": MemoryTool(
                name="memory_record",
                description=(
                    "Persist an important preference/rule/fix/profile into memory when "
                    "explicitly useful."
                ),
                input_schema=MEMORY_RECORD_INPUT_SCHEMA,
                execute=self.memory_record,
            ),
        }

    def _require_run_context(self) -> MemoryRunContext:
        context = self.get_run_context()
        if context is None:
            raise RuntimeError("memory tools require active engine run context")
        return context

    def before_run(self, payload: dict[str, Any]) -> dict[str, Any]:
        prompt = append_system_prompt(payload.get("system_prompt"), self.tool_policy_append)
        context = self.get_run_context()
        if context is None:
            return {"system_prompt": prompt}
        try:
            injected = build_auto_injected_prompt(self.service, context)
        except Exception as exc:
            logger.warning(
                "auto-inject failed platform=%s session=%s error=%s",
                context.platform_key,
                context.session_id,
                exc,
                exc_info=exc,
            )
            injected = None
        logger.debug("auto-injected user memory prompt: %s", injected or "none")
        if injected:
            prompt = append_system_prompt(prompt, injected)
        return {"system_prompt": prompt}

    def reset_run_quota(self, payload: dict[str, Any]) -> None:
        self.compaction_writes_in_run = 0

    def should_write_compaction(self, payload: Mapping[str, Any]) -> bool:
        policy = self.compaction_write_policy
        if not policy.enabled:
            return False
        if self.compaction_writes_in_run >= policy.max_per_run:
            return False
        event = payload.get("event") or {}
        token_delta = int(event.get("before_estimated_tokens") or 0) - int(
            event.get("after_estimated_tokens") or 0
        )
        if token_delta < policy.min_token_delta:
            return False
        removed = count_removed_messages(
            payload.get("previous_messages") or [], payload.get("new_messages") or []
        )
        return removed >= policy.min_removed_messages

    def on_compacted(self, payload: dict[str, Any]) -> None:
        context = self.get_run_context()
        if context is None or not self.should_write_compaction(payload):
            return
        texts = extract_compacted_turn_texts(
            payload.get("previous_messages") or [], payload.get("new_messages") or []
        )
        if texts is None:
            return
        user_text, assistant_text = texts
        remaining = self.compaction_write_policy.max_per_run - self.compaction_writes_in_run
        try:
            result = self.service.record_turn(
                context.platform_key,
                context.session_id,
                user_text,
                assistant_text,
                source_type="daily-log",
                max_new=remaining,
            )
        except Exception as exc:
            logger.warning(
                "compaction memory write failed platform=%s session=%s error=%s",
                context.platform_key,
                context.session_id,
                exc,
                exc_info=exc,
            )
            return
        if result is not None and result.mode != "shadow":
            self.compaction_writes_in_run += len(result.inserted)

    def memory_recall(self, query: str | None = None, limit: int | None = None) -> dict[str, Any]:
        context = self._require_run_context()
        recall_query = (query or "").strip() or context.user_text
        recalled = self.service.recall(
            context.platform_key, context.session_id, recall_query, limit=limit
        )
        return {
            "enabled": recalled.enabled,
            "count": len(recalled.items),
            "query": recall_query,
            "prompt_append": recalled.prompt_append,
            "items": [summarize_memory_item(item) for item in recalled.items],
        }

    def memory_record(self, content: str, kind: str | None = None) -> dict[str, Any]:
        context = self._require_run_context()
        normalized_content = (content or "").strip()
        if not normalized_content:
            raise ValueError("memory content must not be empty")
        record_kind = (kind or DEFAULT_RECORD_KIND).strip().lower()
        if record_kind not in RECORD_KINDS:
            raise ValueError(
                f"Invalid memory kind '{record_kind}'. Allowed kinds: {', '.join(RECORD_KINDS)}"
            )
        user_text, assistant_text = record_turn_payload(normalized_content, record_kind)
        self.service.record_turn(
            context.platform_key,
            context.session_id,
            user_text,
            assistant_text,
            source_type="explicit",
        )
        listed = self.service.list(
            context.platform_key, session_id=context.session_id, limit=RECORD_TOOL_LIST_LIMIT
        )
        target = normalize_content(normalized_content)
        matched = next(
            (
                item
                for item in listed
                if target in normalize_content(item.content)
                or target in normalize_content(item.summary)
            ),
            None,
        )
        return {
            "ok": True,
            "kind": record_kind,
            "stored": matched is not None,
            "item": summarize_memory_item(matched) if matched else None,
        }


@dataclass
class MemoryIntegration:
    service: MemoryStore
    engine_plugin: MemoryEnginePlugin
    adapter: RunContextAdapter = field(default_factory=RunContextAdapter)

    def initialize(self) -> None:
        self.service.initialize()

    def get_run_context(self) -> MemoryRunContext | None:
        return self.adapter.get_context()

    def with_run_context(self, context: MemoryRunContext, run: Callable[[], T]) -> T:
        return self.adapter.with_context(context, run)

    def run_context(self, context: MemoryRunContext):
        return self.adapter.run_context(context)

    def record_daily_log(
        self,
        platform_key: str,
        session_id: str,
        user_text: str,
        assistant_text: str,
        *,
        source: str = "dispatcher",
    ) -> None:
        """Write a completed turn through the daily-log pipeline; never raises."""
        user = (user_text or "").strip()
        assistant = (assistant_text or "").strip()
        if not user and not assistant:
            return
        try:
            self.service.record_turn(
                platform_key, session_id, user, assistant, source_type="daily-log"
            )
        except Exception as exc:
            logger.warning(
                "%s daily-log write failed platform=%s session=%s error=%s",
                source,
                platform_key,
                session_id,
                exc,
                exc_info=exc,
            )


def create_memory_integration(
    *,
    service: MemoryStore | None = None,
    run_context_adapter: RunContextAdapter | None = None,
    plugin_name: str = DEFAULT_PLUGIN_NAME,
    plugin_version: str = DEFAULT_PLUGIN_VERSION,
    tool_policy_append: str = MEMORY_TOOL_POLICY_APPEND,
    compaction_write_policy: CompactionWritePolicy | None = None,
    **service_options: Any,
) -> MemoryIntegration:
    if service is None:
        service = MemoryStore(**service_options)
    adapter = run_context_adapter or RunContextAdapter()
    plugin = MemoryEnginePlugin(
        service,
        adapter.get_context,
        name=plugin_name,
        version=plugin_version,
        tool_policy_append=tool_policy_append,
        compaction_write_policy=compaction_write_policy,
    )
    return MemoryIntegration(service=service, engine_plugin=plugin, adapter=adapter)


def create_memory_integration_from_config(
    cfg: RecallMemConfig | None = None, **options: Any
) -> MemoryIntegration:
    cfg = cfg or load_config()
    runtime = resolve_embedding_runtime(cfg)
    service = MemoryStore(
        cfg.base_dir,
        vector_store_path=cfg.vector_store_path,
        max_items_per_user=cfg.max_items_per_user,
        default_recall_limit=cfg.default_recall_limit,
        semantic_recall_enabled=runtime.semantic_recall_enabled,
        embedding_provider=runtime.provider,
        embedding_dimensions=runtime.dimensions,
        daily_log_policy=cfg.daily_log_policy(),
    )
    return create_memory_integration(
        service=service,
        compaction_write_policy=cfg.compaction_write_policy(),
        **options,
    )
