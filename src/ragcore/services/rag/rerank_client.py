from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx


class RerankClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class RerankResult:
    index: int
    relevance_score: float


class RerankClient(Protocol):
    def rerank(self, *, query: str, documents: list[str], top_n: int) -> list[RerankResult]: ...


class CohereRerankClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def rerank(self, *, query: str, documents: list[str], top_n: int) -> list[RerankResult]:
        if not documents:
            return []

        try:
            response = httpx.post(
                f"{self._base_url}/rerank",
                json={
                    "model": self._model,
                    "query": query,
                    "documents": documents,
                    "top_n": max(1, min(top_n, len(documents))),
                },
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RerankClientError(str(exc)) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RerankClientError(f"Invalid rerank payload: {exc}") from exc
        if not isinstance(payload, dict):
            raise RerankClientError("Invalid rerank payload: expected an object")

        results = payload.get("results")
        if not isinstance(results, list):
            raise RerankClientError("Invalid rerank payload: missing results")

        parsed: list[RerankResult] = []
        for item in results:
            index = item.get("index") if isinstance(item, dict) else None
            score = item.get("relevance_score") if isinstance(item, dict) else None
            if not isinstance(index, int) or not isinstance(score, (int, float)):
                raise RerankClientError("Invalid rerank payload: malformed result")
            if not 0 <= index < len(documents):
                raise RerankClientError(f"Invalid rerank payload: index {index} out of range")
            parsed.append(RerankResult(index=index, relevance_score=float(score)))

        return parsed
