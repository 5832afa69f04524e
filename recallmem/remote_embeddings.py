from __future__ import annotations

import json
from typing import Any

import httpx

from .semantic import clamp_embedding_dimensions, finite_or_zero, normalize_embedding_vector

DEFAULT_REMOTE_MODEL = "text-embedding-3-small"
DEFAULT_REMOTE_DIMENSIONS = 1536
DEFAULT_REMOTE_TIMEOUT_MS = 15000
MIN_REMOTE_TIMEOUT_MS = 1000
ERROR_PREVIEW_CHARS = 300


class EmbeddingError(RuntimeError):
    pass


def normalize_embedding_base_url(value: str) -> str:
    trimmed = value.strip().rstrip("/")
    if trimmed.endswith("/chat/completions"):
        trimmed = trimmed[: -len("/chat/completions")]
    return trimmed


class RemoteEmbeddingProvider:
    """OpenAI-compatible `/embeddings` client."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str = DEFAULT_REMOTE_MODEL,
        dimensions: int = DEFAULT_REMOTE_DIMENSIONS,
        timeout_ms: int = DEFAULT_REMOTE_TIMEOUT_MS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = f"{normalize_embedding_base_url(base_url)}/embeddings"
        self.model = model
        self.dimensions = clamp_embedding_dimensions(dimensions)
        self.timeout_s = max(MIN_REMOTE_TIMEOUT_MS, timeout_ms) / 1000.0
        self._transport = transport

    def embed(self, text: str) -> list[float]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {"model": self.model, "input": text}
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
                response = client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise EmbeddingError(
                f"embedding API request timed out after {self.timeout_s:.1f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"embedding API request failed: {exc}") from exc

        if not response.is_success:
            preview = _response_preview(response)
            raise EmbeddingError(
                f"embedding API request failed with status {response.status_code}: {preview}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise EmbeddingError("embedding API returned a non-JSON response") from exc

        vector = _first_embedding(body)
        if not vector:
            raise EmbeddingError("embedding API response is missing data[0].embedding")
        values = [finite_or_zero(value) for value in vector]
        return normalize_embedding_vector(values, self.dimensions)


def _first_embedding(body: Any) -> list[Any] | None:
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if not isinstance(first, dict):
        return None
    embedding = first.get("embedding")
    if not isinstance(embedding, list):
        return None
    return embedding


def _response_preview(response: httpx.Response) -> str:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return json.dumps(response.json(), ensure_ascii=False)[:ERROR_PREVIEW_CHARS]
        except ValueError:
            pass
    return response.text[:ERROR_PREVIEW_CHARS]

