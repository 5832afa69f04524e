from recallmem.extraction import dedupe_candidates, extract_memory_candidates
from recallmem.store.types import ExtractedCandidate


def test_profile_statement_yields_user_fact() -> None:
    candidates = extract_memory_candidates("Profile: my name is Jasper.", "")

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.scope == "user"
    assert candidate.type == "fact"
    assert candidate.confidence == 0.78
    assert "Jasper" in candidate.content


def test_rule_wins_over_preference() -> None:
    candidates = extract_memory_candidates("You must always use pnpm in this repo", "")

    assert len(candidates) == 1
    assert candidates[0].type == "rule"
    assert candidates[0].scope == "user"
    assert candidates[0].confidence == 0.72
    assert candidates[0].importance == 0.8


def test_preference_is_session_scoped() -> None:
    candidates = extract_memory_candidates("I prefer tabs over spaces", "")

    assert [(c.scope, c.type, c.importance) for c in candidates] == [
        ("session", "preference", 0.65)
    ]


def test_chinese_rule_pattern() -> None:
    candidates = extract_memory_candidates("代码规范：禁止使用 any 类型", "")

    assert candidates[0].type == "rule"


def test_assistant_fix_and_decision_sharing_text_collapse() -> None:
    assistant = "Root cause was a stale cache; fixed it. We will adopt the new loader."
    candidates = extract_memory_candidates("", assistant)

    # Both patterns match the same text, so dedup keeps only the fix.
    assert [c.type for c in candidates] == ["fix"]
    assert candidates[0].scope == "session"
    assert candidates[0].confidence == 0.7


def test_assistant_decision() -> None:
    candidates = extract_memory_candidates("", "We decided to keep SQLite for the vector cache.")

    assert [(c.type, c.confidence, c.importance) for c in candidates] == [
        ("decision", 0.68, 0.62)
    ]


def test_plain_chatter_yields_nothing() -> None:
    assert extract_memory_candidates("hello there", "sure, here you go") == []


def test_dedupe_candidates_keeps_first_occurrence() -> None:
    first = ExtractedCandidate("user", "rule", "Use  PNPM", "Use PNPM", [], 0.7, 0.8)
    second = ExtractedCandidate("session", "fix", "use pnpm", "use pnpm", [], 0.7, 0.65)

    assert dedupe_candidates([first, second]) == [first]
