from __future__ import annotations

import httpx
import pytest

from ragcore.services.rag.refine import Reranker
from ragcore.services.rag.rerank_client import CohereRerankClient, RerankClientError, RerankResult
from ragcore.services.rag.types import ParentChunk, ScoredChunk


class _FakeResponse:
    def __init__(self, payload: object, *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://rerank.example/v2/rerank")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> object:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _document(chunk_id: str) -> ParentChunk:
    return ParentChunk(
        id=chunk_id,
        file_id="doc",
        source_path="/deals/doc.txt",
        source_name="doc.txt",
        content=f"content {chunk_id}",
        chunk_index=0,
        total_chunks=1,
        content_hash=chunk_id,
    )


def _client() -> CohereRerankClient:
    return CohereRerankClient(
        base_url="https://rerank.example/v2",
        model="rerank-v3.5",
        api_key="rk-test",
        timeout_seconds=7,
    )


def test_rerank_client_posts_documents_and_parses_results(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    def fake_post(
        url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float
    ) -> _FakeResponse:
        captured["url"] = url
        captured["json"] = json
        captured["headers"] = headers
        captured["timeout"] = timeout
        return _FakeResponse(
            {
                "results": [
                    {"index": 1, "relevance_score": 0.91},
                    {"index": 0, "relevance_score": 0.12},
                ]
            }
        )

    monkeypatch.setattr("ragcore.services.rag.rerank_client.httpx.post", fake_post)

    results = _client().rerank(query="rent escalation", documents=["a", "b"], top_n=5)

    assert results == [
        RerankResult(index=1, relevance_score=0.91),
        RerankResult(index=0, relevance_score=0.12),
    ]
    assert captured["url"] == "https://rerank.example/v2/rerank"
    assert captured["json"] == {
        "model": "rerank-v3.5",
        "query": "rent escalation",
        "documents": ["a", "b"],
        "top_n": 2,
    }
    assert captured["headers"] == {"Authorization": "Bearer rk-test"}
    assert captured["timeout"] == 7


def test_rerank_client_rejects_out_of_range_index(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(
        url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float
    ) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse({"results": [{"index": 4, "relevance_score": 0.5}]})

    monkeypatch.setattr("ragcore.services.rag.rerank_client.httpx.post", fake_post)

    with pytest.raises(RerankClientError, match="out of range"):
        _client().rerank(query="q", documents=["a"], top_n=1)


def test_rerank_client_wraps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(
        url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float
    ) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse({}, status_code=500)

    monkeypatch.setattr("ragcore.services.rag.rerank_client.httpx.post", fake_post)

    with pytest.raises(RerankClientError):
        _client().rerank(query="q", documents=["a"], top_n=1)


@pytest.mark.parametrize(
    "payload",
    [ValueError("Expecting value: line 1 column 1 (char 0)"), ["unexpected"]],
    ids=["non-json", "non-object"],
)
def test_rerank_client_wraps_malformed_bodies(
    monkeypatch: pytest.MonkeyPatch, payload: object
) -> None:
    def fake_post(
        url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float
    ) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse(payload)

    monkeypatch.setattr("ragcore.services.rag.rerank_client.httpx.post", fake_post)

    with pytest.raises(RerankClientError, match="Invalid rerank payload"):
        _client().rerank(query="q", documents=["a"], top_n=1)


def test_reranker_passes_through_on_malformed_body(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(
        url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float
    ) -> _FakeResponse:
        del url, json, headers, timeout
        return _FakeResponse(ValueError("Expecting value: line 1 column 1 (char 0)"))

    monkeypatch.setattr("ragcore.services.rag.rerank_client.httpx.post", fake_post)
    candidates = [ScoredChunk(chunk=_document("c1"), score=0.5)]

    outcome = Reranker(_client()).rerank("q", candidates)

    assert outcome.reranked is False
    assert outcome.results == candidates


def test_rerank_client_returns_empty_for_no_documents() -> None:
    assert _client().rerank(query="q", documents=[], top_n=3) == []
