from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Sequence

from ragcore.llm import CompletionClient, LLMClientError
from ragcore.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from ragcore.services.rag.tokenizer import CorpusStats, bm25_score, normalize_bm25, tokenize
from ragcore.services.rag.types import Chunk, ChildChunk, ScoredChunk

logger = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.7
BM25_WEIGHT = 0.3
MIN_RELEVANCE_THRESHOLD = 0.25
MIN_RESULT_FLOOR = 3
HYDE_MAX_CHARS = 1200

HYDE_SYSTEM_PROMPT = (
    "Write a short, factual passage (3-5 sentences) that would directly answer the "
    "user's question, as it might appear in a business document. Do not mention "
    "that the passage is hypothetical."
)


@dataclass(frozen=True)
class HybridWeights:
    vector: float = VECTOR_WEIGHT
    bm25: float = BM25_WEIGHT

    def __post_init__(self) -> None:
        if self.vector < 0 or self.bm25 < 0:
            raise ValueError("hybrid weights must be >= 0")
        if not math.isclose(self.vector + self.bm25, 1.0, abs_tol=1e-9):
            raise ValueError("hybrid weights must sum to 1")

    @classmethod
    def from_vector_weight(cls, vector_weight: float) -> HybridWeights:
        return cls(vector=vector_weight, bm25=1.0 - vector_weight)

    def combine(self, vector_score: float, bm25_score: float) -> float:
        return self.vector * vector_score + self.bm25 * bm25_score


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def score_chunks(
    chunks: Sequence[Chunk],
    *,
    query_embedding: Sequence[float],
    query_text: str,
    weights: HybridWeights | None = None,
) -> list[ScoredChunk]:
    weights = weights or HybridWeights()
    candidates = [chunk for chunk in chunks if isinstance(chunk, ChildChunk)]
    if not candidates:
        return []

    tokenized = [tokenize(chunk.content) for chunk in candidates]
    stats = CorpusStats.from_documents(tokenized)
    query_tokens = tokenize(query_text)

    scored: list[ScoredChunk] = []
    for chunk, doc_tokens in zip(candidates, tokenized):
        vector_score = cosine_similarity(query_embedding, chunk.embedding)
        lexical_score = normalize_bm25(bm25_score(query_tokens, doc_tokens, stats))
        scored.append(
            ScoredChunk(
                chunk=chunk,
                score=weights.combine(vector_score, lexical_score),
                vector_score=vector_score,
                bm25_score=lexical_score,
            )
        )
    return scored


def rank_scored(
    scored: Sequence[ScoredChunk],
    *,
    min_relevance: float = MIN_RELEVANCE_THRESHOLD,
    min_results: int = MIN_RESULT_FLOOR,
    limit: int | None = None,
) -> list[ScoredChunk]:
    # sorted() is stable, so equal scores keep scan order.
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    relevant = [item for item in ranked if item.score >= min_relevance]
    selected = relevant if len(relevant) >= min_results else ranked[:min_results]

    logger.debug(
        "[rag] hybrid ranking candidates=%d relevant=%d threshold=%.2f",
        len(ranked),
        len(relevant),
        min_relevance,
    )
    return selected if limit is None else selected[:limit]


@dataclass(frozen=True)
class ExpandedQuery:
    query: str
    text: str
    hypothetical: str | None = None

    @property
    def used_hyde(self) -> bool:
        return self.hypothetical is not None


class HydeQueryExpander:
    def __init__(
        self,
        completion_client: CompletionClient | None,
        *,
        max_chars: int = HYDE_MAX_CHARS,
    ) -> None:
        self._completion_client = completion_client
        self._max_chars = max_chars

    @staticmethod
    def raw(query: str) -> ExpandedQuery:
        return ExpandedQuery(query=query, text=query)

    def expand(self, query: str) -> ExpandedQuery:
        if self._completion_client is None:
            return self.raw(query)

        try:
            passage = self._completion_client.complete(
                system_prompt=HYDE_SYSTEM_PROMPT,
                user_prompt=query,
            )
        except LLMClientError as exc:
            logger.warning("[rag] hyde expansion failed, using raw query error=%s", exc)
            return self.raw(query)

        passage = passage.strip()[: self._max_chars]
        if not passage:
            return self.raw(query)
        return ExpandedQuery(query=query, text=f"{query}\n\n{passage}", hypothetical=passage)


def embed_query(expanded: ExpandedQuery, embedding_client: EmbeddingClient) -> list[float] | None:
    attempts = [expanded.text, expanded.query] if expanded.used_hyde else [expanded.query]
    for position, text in enumerate(attempts):
        try:
            return embedding_client.embed_texts([text])[0]
        except (EmbeddingClientError, IndexError) as exc:
            retrying = position + 1 < len(attempts)
            logger.warning(
                "[rag] query embedding failed hyde=%s retrying=%s error=%s",
                expanded.used_hyde and position == 0,
                retrying,
                exc,
            )
    return None


def hybrid_search(
    chunks: Sequence[Chunk],
    *,
    query: str,
    embedding_client: EmbeddingClient,
    expander: HydeQueryExpander | None = None,
    weights: HybridWeights | None = None,
    min_relevance: float = MIN_RELEVANCE_THRESHOLD,
    limit: int | None = None,
) -> list[ScoredChunk]:
    normalized_query = query.strip()
    if not normalized_query:
        raise ValueError("query must not be empty")
    if not any(isinstance(chunk, ChildChunk) for chunk in chunks):
        return []

    expanded = (expander or HydeQueryExpander(None)).expand(normalized_query)
    query_embedding = embed_query(expanded, embedding_client)
    if query_embedding is None:
        return []

    scored = score_chunks(
        chunks,
        query_embedding=query_embedding,
        query_text=normalized_query,
        weights=weights,
    )
    return rank_scored(scored, min_relevance=min_relevance, limit=limit)
