from __future__ import annotations

import re

from .store.types import ExtractedCandidate
from .text import normalize_content, normalize_whitespace, summarize, tokenize

PROFILE_PATTERN = re.compile(
    r"(^profile:|my name is|call me|i go by|我叫|我的名字是"
    r"|名字是|称呼我)",
    re.IGNORECASE,
)
PREFERENCE_PATTERN = re.compile(
    r"(prefer|always|never|please use|remember|default to|请用|以后"
    r"|记住|默认|不要|必须)",
    re.IGNORECASE,
)
RULE_PATTERN = re.compile(
    r"(rule|constraint|must|should|require|规范|约束|必须|禁止)",
    re.IGNORECASE,
)
FIX_PATTERN = re.compile(
    r"(fixed|resolved|workaround|root cause|已修复|问题原因"
    r"|解决方案)",
    re.IGNORECASE,
)
DECISION_PATTERN = re.compile(
    r"(decide|decision|choose|selected|we will|plan is|adopt|采用|决定"
    r"|方案是)",
    re.IGNORECASE,
)

USER_SUMMARY_CHARS = 120
ASSISTANT_CONTENT_CHARS = 180
ASSISTANT_SUMMARY_CHARS = 100


def extract_memory_candidates(user_text: str, assistant_text: str) -> list[ExtractedCandidate]:
    """Classify one conversation turn into memory candidates.

    User text yields at most one candidate (profile fact, rule or preference,
    in that priority). Assistant text may yield both a fix and a decision.
    """
    results: list[ExtractedCandidate] = []
    user = (user_text or "").strip()
    if user:
        candidate = _classify_user_text(user)
        if candidate is not None:
            results.append(candidate)

    assistant = (assistant_text or "").strip()
    if assistant:
        if FIX_PATTERN.search(assistant):
            results.append(_assistant_candidate(assistant, "fix", confidence=0.7, importance=0.65))
        if DECISION_PATTERN.search(assistant):
            results.append(
                _assistant_candidate(assistant, "decision", confidence=0.68, importance=0.62)
            )

    return dedupe_candidates(results)


def dedupe_candidates(candidates: list[ExtractedCandidate]) -> list[ExtractedCandidate]:
    seen: set[str] = set()
    deduped: list[ExtractedCandidate] = []
    for candidate in candidates:
        key = normalize_content(candidate.content)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(candidate)
    return deduped


def _classify_user_text(text: str) -> ExtractedCandidate | None:
    content = normalize_whitespace(text)
    if PROFILE_PATTERN.search(text):
        return ExtractedCandidate(
            scope="user",
            type="fact",
            content=content,
            summary=summarize(text, USER_SUMMARY_CHARS),
            keywords=tokenize(text),
            confidence=0.78,
            importance=0.78,
        )
    is_rule = RULE_PATTERN.search(text) is not None
    if not is_rule and not PREFERENCE_PATTERN.search(text):
        return None
    return ExtractedCandidate(
        scope="user" if is_rule else "session",
        type="rule" if is_rule else "preference",
        content=content,
        summary=summarize(text, USER_SUMMARY_CHARS),
        keywords=tokenize(text),
        confidence=0.72,
        importance=0.8 if is_rule else 0.65,
    )


def _assistant_candidate(
    text: str, kind: str, *, confidence: float, importance: float
) -> ExtractedCandidate:
    return ExtractedCandidate(
        scope="session",
        type=kind,
        content=summarize(text, ASSISTANT_CONTENT_CHARS),
        summary=summarize(text, ASSISTANT_SUMMARY_CHARS),
        keywords=tokenize(text),
        confidence=confidence,
        importance=importance,
    )
