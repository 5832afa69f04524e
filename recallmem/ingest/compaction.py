from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

COMPACTED_CONTEXT_PREFIX = "[COMPACTED_CONTEXT]"
DEFAULT_USER_TEXT = "Compaction retained assistant context."
DEFAULT_ASSISTANT_TEXT = "Compaction retained user context."

_WHITESPACE_RE = re.compile(r"\s+")

Message = Mapping[str, Any]


def normalize_message_text(message: Message) -> str:
    """Flatten one chat message into comparable single-line text.

    Compaction summaries (``[COMPACTED_CONTEXT]...``) flatten to "".
    """
    content = message.get("content")
    if isinstance(content, str):
        compact = _WHITESPACE_RE.sub(" ", content).strip()
        if not compact or compact.startswith(COMPACTED_CONTEXT_PREFIX):
            return ""
        return compact
    if not isinstance(content, list):
        return ""

    segments: list[str] = []
    for part in content:
        if not isinstance(part, Mapping):
            continue
        part_type = part.get("type")
        tool_name = part.get("tool_name") or part.get("toolName")
        if part_type == "text" and isinstance(part.get("text"), str):
            segments.append(part["text"])
        elif part_type == "tool-call" and tool_name:
            segments.append(f"[tool-call:{tool_name}] {_safe_json(part.get('input'))}")
        elif part_type == "tool-result" and tool_name:
            segments.append(f"[tool-result:{tool_name}] {_safe_json(part.get('output'))}")
    return _WHITESPACE_RE.sub(" ", " ".join(segments)).strip()


def _safe_json(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _messages_equivalent(left: Message, right: Message) -> bool:
    if left.get("role") != right.get("role"):
        return False
    return normalize_message_text(left) == normalize_message_text(right)


def get_removed_prefix(
    previous_messages: Sequence[Message], new_messages: Sequence[Message]
) -> list[Message]:
    """Messages of ``previous_messages`` that compaction dropped.

    Both lists are matched from the tail; whatever precedes the shared
    suffix in ``previous_messages`` was removed.
    """
    previous_index = len(previous_messages) - 1
    next_index = len(new_messages) - 1
    while previous_index >= 0 and next_index >= 0:
        if not _messages_equivalent(previous_messages[previous_index], new_messages[next_index]):
            break
        previous_index -= 1
        next_index -= 1
    if previous_index < 0:
        return []
    return list(previous_messages[: previous_index + 1])


def count_removed_messages(
    previous_messages: Sequence[Message], new_messages: Sequence[Message]
) -> int:
    return len(get_removed_prefix(previous_messages, new_messages))


def extract_compacted_turn_texts(
    previous_messages: Sequence[Message], new_messages: Sequence[Message]
) -> tuple[str, str] | None:
    removed = get_removed_prefix(previous_messages, new_messages)
    if not removed:
        return None
    user_parts: list[str] = []
    assistant_parts: list[str] = []
    for message in removed:
        role = message.get("role")
        if role == "system":
            continue
        text = normalize_message_text(message)
        if not text:
            continue
        if role == "user":
            user_parts.append(text)
        elif role == "assistant":
            assistant_parts.append(text)
    user_text = "\n".join(user_parts)
    assistant_text = "\n".join(assistant_parts)
    if not user_text and not assistant_text:
        return None
    return user_text or DEFAULT_USER_TEXT, assistant_text or DEFAULT_ASSISTANT_TEXT
