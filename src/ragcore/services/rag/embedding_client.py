from __future__ import annotations

from typing import Protocol

import httpx

EMBEDDING_MAX_INPUT_CHARS = 8000


class EmbeddingClientError(RuntimeError):
    pass


class EmbeddingClient(Protocol):
    @property
    def model_id(self) -> str: ...

    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OpenAIEmbeddingClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        max_input_chars: int = EMBEDDING_MAX_INPUT_CHARS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_input_chars = max_input_chars

    @property
    def model_id(self) -> str:
        return self._model

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={
                    "model": self._model,
                    "input": [text[: self._max_input_chars] for text in texts],
                },
                headers=headers,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc)) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingClientError(f"Invalid embeddings payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise EmbeddingClientError("Invalid embeddings payload: expected an object")

        data = payload.get("data")
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data")

        # Providers may return items out of order; "index" ties them back to inputs.
        items = [item for item in data if isinstance(item, dict)]
        if len(items) == len(data) and all(isinstance(item.get("index"), int) for item in items):
            items.sort(key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for item in items:
            embedding = item.get("embedding")
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError("Invalid embeddings payload: missing embedding vector")
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise EmbeddingClientError(f"Invalid embeddings payload: {exc}") from exc

        if len(vectors) != len(texts):
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        return vectors
