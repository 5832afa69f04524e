from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence
from typing import Protocol

from .text import clamp_int, normalize_whitespace, tokenize, unique_words

MIN_EMBEDDING_DIMENSIONS = 64
MAX_EMBEDDING_DIMENSIONS = 4096
DEFAULT_HASH_DIMENSIONS = 256

TOKEN_WEIGHT = 1.4
NGRAM_WEIGHT = 0.6
NGRAM_SIZE = 3
MAX_NGRAMS = 120

SEMANTIC_SYNONYMS: dict[str, tuple[str, ...]] = {
    "bug": ("issue", "error", "defect", "problem"),
    "fix": ("resolve", "repair", "patch", "correct"),
    "refactor": ("cleanup", "restructure", "rewrite"),
    "optimize": ("improve", "speed", "performance", "tune"),
    "memory": ("remember", "recall", "context"),
    "preference": ("prefer", "default", "habit"),
    "rule": ("constraint", "must", "policy", "guideline"),
}

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619


class EmbeddingProvider(Protocol):
    dimensions: int

    def embed(self, text: str) -> list[float]: ...


def clamp_embedding_dimensions(value: int) -> int:
    return clamp_int(value, MIN_EMBEDDING_DIMENSIONS, MAX_EMBEDDING_DIMENSIONS)


class HashEmbeddingProvider:
    """Deterministic offline embedder built from hashed tokens and trigrams."""

    def __init__(self, dimensions: int = DEFAULT_HASH_DIMENSIONS) -> None:
        self.dimensions = clamp_embedding_dimensions(dimensions)

    def embed(self, text: str) -> list[float]:
        normalized = normalize_whitespace(text).lower()
        vector = [0.0] * self.dimensions
        if not normalized:
            return vector
        for token in expand_semantic_tokens(tokenize(normalized)):
            _add_hashed_weight(vector, f"tok:{token}", TOKEN_WEIGHT)
        for ngram in build_character_ngrams(normalized, NGRAM_SIZE, MAX_NGRAMS):
            _add_hashed_weight(vector, f"chr:{ngram}", NGRAM_WEIGHT)
        return normalize_embedding_vector(vector, self.dimensions)


def expand_semantic_tokens(tokens: Sequence[str]) -> list[str]:
    expanded: list[str] = []
    for token in tokens:
        expanded.append(token)
        expanded.extend(SEMANTIC_SYNONYMS.get(token, ()))
    return unique_words(expanded)


def build_character_ngrams(text: str, n: int, max_count: int) -> list[str]:
    compact = re.sub(r"\s+", "", text)
    if len(compact) < n:
        return [compact] if compact else []
    count = min(max_count, len(compact) - n + 1)
    return [compact[i : i + n] for i in range(count)]


def fnv1a_32(text: str) -> int:
    # Hashes UTF-16 code units so indexes stay stable across implementations.
    value = _FNV_OFFSET
    raw = text.encode("utf-16-le")
    for i in range(0, len(raw), 2):
        value ^= raw[i] | (raw[i + 1] << 8)
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value


def _add_hashed_weight(vector: list[float], key: str, weight: float) -> None:
    hashed = fnv1a_32(key)
    index = hashed % len(vector)
    sign = 1.0 if (hashed & 1) == 0 else -1.0
    vector[index] += sign * weight


def normalize_embedding_vector(vector: Sequence[float], dimensions: int) -> list[float]:
    trimmed = [float(value) for value in vector[:dimensions]]
    if len(trimmed) < dimensions:
        trimmed.extend([0.0] * (dimensions - len(trimmed)))
    norm = math.sqrt(sum(value * value for value in trimmed))
    if norm == 0:
        return trimmed
    scale = 1.0 / norm
    return [value * scale for value in trimmed]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    size = min(len(left), len(right))
    if size == 0:
        return 0.0
    dot = 0.0
    left_norm = 0.0
    right_norm = 0.0
    for i in range(size):
        lv = left[i]
        rv = right[i]
        dot += lv * rv
        left_norm += lv * lv
        right_norm += rv * rv
    if left_norm == 0 or right_norm == 0:
        return 0.0
    cosine = dot / (math.sqrt(left_norm) * math.sqrt(right_norm))
    return min(1.0, max(0.0, cosine))


def parse_embedding(raw: str | None, dimensions: int) -> list[float] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, list):
        return None
    values = [finite_or_zero(value) for value in parsed[:dimensions]]
    return normalize_embedding_vector(values, dimensions)


def finite_or_zero(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value) if math.isfinite(value) else 0.0
