from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Sequence

from ragcore.services.rag.rerank_client import RerankClient, RerankClientError, RerankResult
from ragcore.services.rag.scope import ScopeAssociation, path_contains
from ragcore.services.rag.types import ChildChunk, ParentChunk, ScoredChunk

logger = logging.getLogger(__name__)

RERANK_POOL_MULTIPLIER = 4
RERANK_POOL_MINIMUM = 20


def candidate_pool_size(top_n: int) -> int:
    return max(top_n * RERANK_POOL_MULTIPLIER, RERANK_POOL_MINIMUM)


@dataclass(frozen=True)
class RerankOutcome:
    results: list[ScoredChunk]
    reranked: bool


def merge_rerank_scores(
    candidates: Sequence[ScoredChunk],
    results: Sequence[RerankResult],
) -> list[ScoredChunk]:
    rerank_scores: dict[int, float] = {}
    for result in results:
        previous = rerank_scores.get(result.index)
        if previous is None or result.relevance_score > previous:
            rerank_scores[result.index] = result.relevance_score

    merged: list[ScoredChunk] = []
    for index, candidate in enumerate(candidates):
        rerank_score = rerank_scores.get(index)
        if rerank_score is None:
            merged.append(candidate)
            continue
        merged.append(
            replace(
                candidate,
                score=max(candidate.score, rerank_score),
                rerank_score=rerank_score,
            )
        )

    return sorted(merged, key=lambda item: item.score, reverse=True)


class Reranker:
    def __init__(self, client: RerankClient | None) -> None:
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @staticmethod
    def passthrough(candidates: Sequence[ScoredChunk]) -> RerankOutcome:
        return RerankOutcome(results=list(candidates), reranked=False)

    def rerank(self, query: str, candidates: Sequence[ScoredChunk]) -> RerankOutcome:
        if self._client is None or not candidates:
            return self.passthrough(candidates)

        try:
            results = self._client.rerank(
                query=query,
                documents=[candidate.chunk.content for candidate in candidates],
                top_n=len(candidates),
            )
        except RerankClientError as exc:
            logger.warning("[rag] rerank failed, keeping hybrid order error=%s", exc)
            return self.passthrough(candidates)

        return RerankOutcome(results=merge_rerank_scores(candidates, results), reranked=True)


def expand_parents(
    results: Sequence[ScoredChunk],
    parents_by_id: dict[str, ParentChunk],
) -> list[ScoredChunk]:
    expanded: list[ScoredChunk] = []
    seen: set[str] = set()

    for item in results:
        chunk = item.chunk
        if isinstance(chunk, ChildChunk):
            parent = parents_by_id.get(chunk.parent_id)
            if parent is not None:
                if parent.id not in seen:
                    seen.add(parent.id)
                    expanded.append(replace(item, chunk=parent))
                continue

        if chunk.id in seen:
            continue
        seen.add(chunk.id)
        expanded.append(item)

    return expanded


def _documents_for_scope(association: ScopeAssociation, scope_id: str) -> set[str]:
    try:
        return set(association.documents_for_scope(scope_id))
    except Exception as exc:
        logger.warning("[rag] scope document lookup failed scope_id=%s error=%s", scope_id, exc)
        return set()


def _scopes_for_document(association: ScopeAssociation, path: str) -> tuple[str, ...]:
    try:
        return tuple(association.scopes_for_document(path))
    except Exception as exc:
        logger.warning("[rag] document scope lookup failed path=%s error=%s", path, exc)
        return ()


def apply_scope(
    results: Sequence[ScoredChunk],
    *,
    scope_id: str,
    association: ScopeAssociation,
    top_k: int,
) -> list[ScoredChunk]:
    scope_documents = _documents_for_scope(association, scope_id)
    in_scope: list[ScoredChunk] = []
    other: list[ScoredChunk] = []

    for item in results:
        source_path = item.chunk.source_path
        scope_ids = _scopes_for_document(association, source_path)
        belongs = scope_id in scope_ids or any(
            path_contains(document, source_path) for document in scope_documents
        )
        annotated = replace(item, scope_ids=scope_ids, out_of_scope=not belongs)
        (in_scope if belongs else other).append(annotated)

    selected = in_scope[:top_k]
    if len(selected) < top_k:
        selected.extend(other[: top_k - len(selected)])

    logger.info(
        "[rag] scoped results scope_id=%s in_scope=%d backfilled=%d",
        scope_id,
        min(len(in_scope), top_k),
        max(0, len(selected) - len(in_scope)),
    )
    return selected


def refine(
    query: str,
    candidates: Sequence[ScoredChunk],
    top_n: int,
    *,
    reranker: Reranker,
    parents_by_id: dict[str, ParentChunk],
    scope_id: str | None = None,
    association: ScopeAssociation | None = None,
) -> list[ScoredChunk]:
    if top_n <= 0:
        return []

    pool = list(candidates[: candidate_pool_size(top_n)])
    outcome = reranker.rerank(query, pool)
    expanded = expand_parents(outcome.results, parents_by_id)

    if scope_id is not None:
        if association is None:
            logger.warning("[rag] scope_id=%s given without a scope association", scope_id)
        else:
            return apply_scope(expanded, scope_id=scope_id, association=association, top_k=top_n)

    return expanded[:top_n]
