from __future__ import annotations

from pathlib import Path
from threading import Lock

import pytest

from ragcore.config import get_settings
from ragcore.llm import LLMClientError
from ragcore.services.rag.embedding_client import EmbeddingClientError
from ragcore.services.rag.engine import RagEngine
from ragcore.services.rag.index_store import JsonSnapshotStore
from ragcore.services.rag.loader import LocalFileLister, PlainTextExtractor
from ragcore.services.rag.query import (
    HYDE_SYSTEM_PROMPT,
    HybridWeights,
    HydeQueryExpander,
    cosine_similarity,
    embed_query,
    hybrid_search,
    rank_scored,
    score_chunks,
)
from ragcore.services.rag.scope import InMemoryScopeAssociation
from ragcore.services.rag.types import ChildChunk, ParentChunk, ScoredChunk


class FakeEmbeddingClient:
    def __init__(self, *, failing_texts: set[str] | None = None) -> None:
        self.failing_texts = failing_texts or set()
        self.calls: list[list[str]] = []

    @property
    def model_id(self) -> str:
        return "fake-embed"

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if any(text in self.failing_texts for text in texts):
            raise EmbeddingClientError("embedding provider timeout")

        vectors: list[list[float]] = []
        for text in texts:
            normalized = text.lower()
            vectors.append(
                [
                    float(normalized.count("automation") + normalized.count("robotics")),
                    float(normalized.count("finance") + normalized.count("accounting")),
                    0.01,
                ]
            )
        return vectors


class FakeCompletionClient:
    def __init__(self, answer: str = "", *, error: Exception | None = None) -> None:
        self.answer = answer
        self.error = error
        self.prompts: list[tuple[str, str]] = []

    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        self.prompts.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        return self.answer


def _child(chunk_id: str, content: str, embedding: list[float], parent_id: str = "p") -> ChildChunk:
    return ChildChunk(
        id=chunk_id,
        file_id="doc",
        source_path="/docs/doc.txt",
        source_name="doc.txt",
        content=content,
        chunk_index=0,
        total_chunks=1,
        content_hash=chunk_id,
        parent_id=parent_id,
        embedding=embedding,
    )


def _parent(chunk_id: str, content: str, embedding: list[float]) -> ParentChunk:
    return ParentChunk(
        id=chunk_id,
        file_id="doc",
        source_path="/docs/doc.txt",
        source_name="doc.txt",
        content=content,
        chunk_index=0,
        total_chunks=1,
        content_hash=chunk_id,
        embedding=embedding,
    )


def _scored(chunk_id: str, score: float) -> ScoredChunk:
    return ScoredChunk(chunk=_child(chunk_id, chunk_id, [1.0]), score=score)


def test_cosine_similarity_handles_zero_vectors() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_hybrid_weights_must_sum_to_one() -> None:
    assert HybridWeights().combine(1.0, 0.0) == pytest.approx(0.7)
    assert HybridWeights().combine(0.0, 1.0) == pytest.approx(0.3)
    assert HybridWeights.from_vector_weight(0.5).bm25 == pytest.approx(0.5)
    with pytest.raises(ValueError, match="sum to 1"):
        HybridWeights(vector=0.7, bm25=0.7)


def test_hybrid_score_is_monotonic_and_bounded() -> None:
    weights = HybridWeights()
    sweep = [step / 10 for step in range(-10, 11)]

    for fixed in (0.0, 0.5, 1.0):
        by_vector = [weights.combine(value, fixed) for value in sweep]
        by_bm25 = [weights.combine(fixed, value) for value in sweep if value >= 0.0]

        assert by_vector == sorted(by_vector)
        assert by_bm25 == sorted(by_bm25)
        for score in by_vector + by_bm25:
            assert -weights.vector - 1e-9 <= score <= 1.0 + 1e-9


def test_score_chunks_fuses_vector_and_bm25_scores_over_children_only() -> None:
    chunks = [
        _parent("p", "robotics automation robotics automation", [1.0, 0.0]),
        _child("c1", "robotics automation cell", [1.0, 0.0]),
        _child("c2", "finance accounting review", [0.0, 1.0]),
    ]

    scored = score_chunks(chunks, query_embedding=[1.0, 0.0], query_text="robotics automation")

    assert [item.chunk.id for item in scored] == ["c1", "c2"]
    top = scored[0]
    assert top.vector_score == pytest.approx(1.0)
    assert 0.0 < top.bm25_score <= 1.0
    assert top.score == pytest.approx(0.7 * top.vector_score + 0.3 * top.bm25_score)
    assert scored[1].bm25_score == 0.0
    assert scored[1].score == pytest.approx(0.0)


def test_rank_scored_applies_threshold_when_enough_results_pass() -> None:
    scored = [_scored("a", 0.9), _scored("b", 0.1), _scored("c", 0.5), _scored("d", 0.3)]

    ranked = rank_scored(scored)

    assert [item.chunk.id for item in ranked] == ["a", "c", "d"]


def test_rank_scored_falls_back_to_top_three() -> None:
    scored = [_scored("a", 0.1), _scored("b", 0.9), _scored("c", 0.05), _scored("d", 0.2)]

    ranked = rank_scored(scored)

    assert [item.chunk.id for item in ranked] == ["b", "d", "a"]


def test_rank_scored_keeps_scan_order_for_ties_and_respects_limit() -> None:
    scored = [_scored(name, 0.5) for name in ("first", "second", "third", "fourth")]

    assert [item.chunk.id for item in rank_scored(scored)] == ["first", "second", "third", "fourth"]
    assert [item.chunk.id for item in rank_scored(scored, limit=2)] == ["first", "second"]


def test_hybrid_search_rejects_empty_query() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        hybrid_search([], query="   ", embedding_client=FakeEmbeddingClient())


def test_hybrid_search_without_children_returns_empty() -> None:
    client = FakeEmbeddingClient()
    parents = [_parent("p", "robotics automation", [1.0, 0.0, 0.0])]

    assert hybrid_search(parents, query="robotics", embedding_client=client) == []
    assert client.calls == []


def test_hyde_expander_prefixes_hypothetical_passage() -> None:
    completion = FakeCompletionClient("  Robotics cells cut downtime by a third.  ")

    expanded = HydeQueryExpander(completion).expand("How much downtime did robotics save?")

    assert expanded.used_hyde
    assert expanded.text == (
        "How much downtime did robotics save?\n\nRobotics cells cut downtime by a third."
    )
    assert completion.prompts == [(HYDE_SYSTEM_PROMPT, "How much downtime did robotics save?")]


@pytest.mark.parametrize(
    "completion",
    [
        None,
        FakeCompletionClient(error=LLMClientError("rate limited")),
        FakeCompletionClient("   "),
    ],
    ids=["disabled", "llm-error", "blank-answer"],
)
def test_hyde_expander_falls_back_to_raw_query(completion: FakeCompletionClient | None) -> None:
    expanded = HydeQueryExpander(completion).expand("cap rate")

    assert expanded.used_hyde is False
    assert expanded.text == "cap rate"


def test_embed_query_retries_with_raw_query_when_hyde_text_fails() -> None:
    expanded = HydeQueryExpander(FakeCompletionClient("automation passage")).expand("robotics")
    client = FakeEmbeddingClient(failing_texts={expanded.text})

    vector = embed_query(expanded, client)

    assert vector == [1.0, 0.0, 0.01]
    assert client.calls == [[expanded.text], ["robotics"]]


def test_hybrid_search_returns_empty_when_query_embedding_fails() -> None:
    client = FakeEmbeddingClient(failing_texts={"robotics"})
    chunks = [_child("c1", "robotics automation", [1.0, 0.0, 0.0])]

    assert hybrid_search(chunks, query="robotics", embedding_client=client) == []


def _indexed_engine(tmp_path: Path, **engine_kwargs) -> RagEngine:
    source_dir = tmp_path / "docs"
    source_dir.mkdir(parents=True)
    (source_dir / "robotics.txt").write_text(
        "Robotics automation on the assembly line reduced maintenance downtime "
        "for the automation cell.",
        encoding="utf-8",
    )
    (source_dir / "finance.txt").write_text(
        "The financial forecast shows revenue growth and stable accounting margins "
        "for the finance committee.",
        encoding="utf-8",
    )
    (source_dir / "notes.txt").write_text(
        "General meeting notes about parking, cafeteria hours and the holiday calendar.",
        encoding="utf-8",
    )

    engine = RagEngine(
        settings=get_settings(),
        store=JsonSnapshotStore(tmp_path / "rag_index"),
        embedding_client=FakeEmbeddingClient(),
        indexing_lock=Lock(),
        sleeper=lambda _seconds: None,
        **engine_kwargs,
    )
    engine.index_collection("deal-1", LocalFileLister(source_dir), PlainTextExtractor())
    return engine


def test_engine_search_returns_expanded_parents_ranked(tmp_path: Path) -> None:
    engine = _indexed_engine(tmp_path)

    results = engine.search("deal-1", "robotics automation maintenance", top_k=3)

    assert results
    assert all(isinstance(item.chunk, ParentChunk) for item in results)
    assert results[0].chunk.source_name == "robotics.txt"
    assert len({item.chunk.id for item in results}) == len(results)
    assert [item.score for item in results] == sorted(
        (item.score for item in results), reverse=True
    )


def test_engine_search_uses_hyde_text_for_embedding_and_raw_query_for_bm25(
    tmp_path: Path,
) -> None:
    completion = FakeCompletionClient("Accounting and finance teams own the forecast.")
    engine = _indexed_engine(tmp_path, completion_client=completion)

    results = engine.search("deal-1", "who owns it?", top_k=1)

    assert len(results) == 1
    assert results[0].chunk.source_name == "finance.txt"
    assert completion.prompts[0][1] == "who owns it?"


def test_engine_search_loads_persisted_snapshot_on_demand(tmp_path: Path) -> None:
    _indexed_engine(tmp_path)
    restarted = RagEngine(
        settings=get_settings(),
        store=JsonSnapshotStore(tmp_path / "rag_index"),
        embedding_client=FakeEmbeddingClient(),
        indexing_lock=Lock(),
    )

    results = restarted.search("deal-1", "finance accounting", top_k=1)

    assert [item.chunk.source_name for item in results] == ["finance.txt"]
    assert restarted.is_indexed("deal-1")


def test_engine_search_unknown_collection_returns_empty(tmp_path: Path) -> None:
    engine = RagEngine(
        settings=get_settings(),
        store=JsonSnapshotStore(tmp_path / "rag_index"),
        embedding_client=FakeEmbeddingClient(),
        indexing_lock=Lock(),
    )

    assert engine.search("missing", "robotics") == []


def test_engine_get_context_prefers_scoped_documents(tmp_path: Path) -> None:
    association = InMemoryScopeAssociation(
        {"finance-deal": [str(tmp_path / "docs" / "finance.txt")]}
    )
    engine = _indexed_engine(tmp_path, scope_association=association)

    results = engine.search("deal-1", "robotics automation", top_k=2, scope_id="finance-deal")
    rag_context = engine.get_context("deal-1", "robotics automation", top_k=2, scope_id="finance-deal")

    assert [item.chunk.source_name for item in results] == ["finance.txt", "robotics.txt"]
    assert [item.out_of_scope for item in results] == [False, True]
    assert rag_context.context.startswith("[1] finance.txt (Section 1/2)\n")
    assert "[2] robotics.txt (Section 1/2) [outside requested scope]" in rag_context.context
    assert [source.out_of_scope for source in rag_context.sources] == [False, True]


def test_engine_search_uses_embedder_passed_at_indexing(tmp_path: Path) -> None:
    source_dir = tmp_path / "docs"
    source_dir.mkdir()
    (source_dir / "robotics.txt").write_text(
        "Robotics automation cut downtime on the assembly line.", encoding="utf-8"
    )
    embedder = FakeEmbeddingClient()
    engine = RagEngine(
        settings=get_settings(),
        store=JsonSnapshotStore(tmp_path / "rag_index"),
        indexing_lock=Lock(),
    )

    engine.index_collection(
        "deal-1", LocalFileLister(source_dir), PlainTextExtractor(), embedder=embedder
    )
    results = engine.search("deal-1", "robotics automation", top_k=1)

    assert [item.chunk.source_name for item in results] == ["robotics.txt"]
    assert embedder.calls[-1] == ["robotics automation"]
