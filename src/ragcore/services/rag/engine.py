from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from time import sleep
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from ragcore.config import Settings, get_settings
from ragcore.llm import CompletionClient, OpenAIChatClient
from ragcore.services.rag.chunker import ChunkerConfig, HierarchicalChunker
from ragcore.services.rag.context import build_context
from ragcore.services.rag.embedding_client import EmbeddingClient, OpenAIEmbeddingClient
from ragcore.services.rag.errors import EmbedderNotConfiguredError, IndexingInProgressError
from ragcore.services.rag.index_store import JsonSnapshotStore, SnapshotStore
from ragcore.services.rag.ingest import build_index
from ragcore.services.rag.loader import FileLister, TextExtractor
from ragcore.services.rag.query import HybridWeights, HydeQueryExpander, hybrid_search
from ragcore.services.rag.refine import Reranker, candidate_pool_size, refine
from ragcore.services.rag.rerank_client import CohereRerankClient, RerankClient
from ragcore.services.rag.scope import ScopeAssociation
from ragcore.services.rag.sqlite_store import SqliteSnapshotStore
from ragcore.services.rag.types import (
    IndexingStatus,
    IndexResult,
    IndexSnapshot,
    RagContext,
    ScoredChunk,
)

logger = logging.getLogger(__name__)

# One indexing run per process, whichever engine instance asks.
_INDEXING_LOCK = Lock()


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if not settings.embed_api_key:
        raise EmbedderNotConfiguredError()
    return OpenAIEmbeddingClient(
        base_url=settings.embed_base_url,
        model=settings.embed_model,
        api_key=settings.embed_api_key,
        timeout_seconds=settings.http_timeout_seconds,
        max_input_chars=settings.embed_max_input_chars,
    )


def build_completion_client(settings: Settings) -> CompletionClient | None:
    if not settings.hyde_enabled or not settings.llm_api_key:
        return None
    return OpenAIChatClient(
        base_url=settings.llm_base_url,
        default_model=settings.llm_model,
        fallback_model=settings.llm_fallback_model,
        api_key=settings.llm_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )


def build_rerank_client(settings: Settings) -> RerankClient | None:
    if not settings.rerank_api_key:
        return None
    return CohereRerankClient(
        base_url=settings.rerank_base_url,
        model=settings.rerank_model,
        api_key=settings.rerank_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )


def build_snapshot_store(settings: Settings) -> SnapshotStore:
    if settings.rag_snapshot_backend == "sqlite":
        return SqliteSnapshotStore(Path(settings.rag_db_path))
    if settings.rag_snapshot_backend != "json":
        raise ValueError(f"Unsupported snapshot backend: {settings.rag_snapshot_backend}")
    return JsonSnapshotStore(Path(settings.rag_index_dir))


class RagEngine:
    """Owns the active snapshot of every collection and the indexing lock.

    A finished indexing run replaces the collection's snapshot in one swap, so
    concurrent searches see either the old or the new snapshot, never a mix.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        store: SnapshotStore | None = None,
        embedding_client: EmbeddingClient | None = None,
        completion_client: CompletionClient | None = None,
        rerank_client: RerankClient | None = None,
        scope_association: ScopeAssociation | None = None,
        chunker: HierarchicalChunker | None = None,
        indexing_lock: Lock | None = None,
        sleeper: Callable[[float], None] = sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or build_snapshot_store(self._settings)
        self._embedding_client = embedding_client
        self._expander = HydeQueryExpander(completion_client)
        self._reranker = Reranker(rerank_client)
        self._scope_association = scope_association
        self._chunker = chunker or HierarchicalChunker(
            ChunkerConfig(
                parent_size=self._settings.parent_chunk_size,
                parent_overlap=self._settings.parent_chunk_overlap,
                child_size=self._settings.child_chunk_size,
                child_overlap=self._settings.child_chunk_overlap,
            )
        )
        self._weights = HybridWeights.from_vector_weight(self._settings.vector_weight)
        self._indexing_lock = indexing_lock or _INDEXING_LOCK
        self._sleeper = sleeper
        self._state_lock = Lock()
        self._snapshots: dict[str, IndexSnapshot] = {}
        self._embedders: dict[str, EmbeddingClient] = {}
        self._active_collection_id: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        scope_association: ScopeAssociation | None = None,
    ) -> RagEngine:
        settings = settings or get_settings()
        return cls(
            settings=settings,
            store=build_snapshot_store(settings),
            completion_client=build_completion_client(settings),
            rerank_client=build_rerank_client(settings),
            scope_association=scope_association,
        )

    def _require_embedder(self) -> EmbeddingClient:
        if self._embedding_client is None:
            self._embedding_client = build_embedding_client(self._settings)
        return self._embedding_client

    def _embedder_for(self, collection_id: str) -> EmbeddingClient:
        with self._state_lock:
            embedder = self._embedders.get(collection_id)
        return embedder or self._require_embedder()

    def _embedding_model_id(self, collection_id: str) -> str | None:
        try:
            return self._embedder_for(collection_id).model_id
        except EmbedderNotConfiguredError:
            return None

    def _swap(self, snapshot: IndexSnapshot, embedder: EmbeddingClient | None = None) -> None:
        with self._state_lock:
            if embedder is not None:
                self._embedders[snapshot.collection_id] = embedder
            self._snapshots[snapshot.collection_id] = snapshot
            self._active_collection_id = snapshot.collection_id

    def _load_usable(self, collection_id: str, embedding_model: str | None) -> IndexSnapshot | None:
        snapshot = self._store.load(collection_id, embedding_model=embedding_model)
        if snapshot is None:
            return None
        if not snapshot.chunks:
            logger.info("[rag] cached snapshot empty, rebuilding collection_id=%s", collection_id)
            return None
        return snapshot

    def index_collection(
        self,
        collection_id: str,
        file_lister: FileLister,
        text_extractor: TextExtractor,
        embedder: EmbeddingClient | None = None,
        force_full: bool = False,
    ) -> IndexResult:
        embedding_client = embedder or self._embedder_for(collection_id)

        if not self._indexing_lock.acquire(blocking=False):
            raise IndexingInProgressError(collection_id)

        try:
            previous = None
            if force_full:
                logger.info("[rag] full rebuild requested collection_id=%s", collection_id)
            else:
                previous = self.snapshot(collection_id)
                if (
                    previous is None
                    or not previous.chunks
                    or previous.embedding_model != embedding_client.model_id
                ):
                    previous = self._load_usable(collection_id, embedding_client.model_id)

            snapshot, result = build_index(
                collection_id=collection_id,
                file_lister=file_lister,
                text_extractor=text_extractor,
                embedding_client=embedding_client,
                chunker=self._chunker,
                previous=previous,
                batch_size=self._settings.embed_batch_size,
                batch_delay_seconds=self._settings.embed_batch_delay_seconds,
                sleeper=self._sleeper,
            )

            if not result.from_cache:
                try:
                    self._store.save(snapshot)
                except (OSError, SQLAlchemyError) as exc:
                    logger.error(
                        "[rag] snapshot save failed collection_id=%s error=%s", collection_id, exc
                    )

            self._swap(snapshot, embedding_client)
            return result
        finally:
            self._indexing_lock.release()

    def try_load_cached(self, collection_id: str) -> bool:
        current = self.snapshot(collection_id)
        if current is not None and current.chunks:
            return True

        snapshot = self._load_usable(collection_id, self._embedding_model_id(collection_id))
        if snapshot is None:
            return False
        self._swap(snapshot)
        logger.info(
            "[rag] loaded cached snapshot collection_id=%s chunks=%d files=%d",
            collection_id,
            len(snapshot.chunks),
            len(snapshot.file_records),
        )
        return True

    def search(
        self,
        collection_id: str,
        query: str,
        top_k: int = 5,
        scope_id: str | None = None,
    ) -> list[ScoredChunk]:
        snapshot = self.snapshot(collection_id)
        if snapshot is None and self.try_load_cached(collection_id):
            snapshot = self.snapshot(collection_id)
        if snapshot is None or not snapshot.chunks:
            return []

        candidates = hybrid_search(
            snapshot.chunks,
            query=query,
            embedding_client=self._embedder_for(collection_id),
            expander=self._expander,
            weights=self._weights,
            min_relevance=self._settings.min_relevance,
            limit=candidate_pool_size(top_k),
        )
        results = refine(
            query,
            candidates,
            top_k,
            reranker=self._reranker,
            parents_by_id=snapshot.parents_by_id(),
            scope_id=scope_id,
            association=self._scope_association,
        )
        logger.info(
            "[rag] search collection_id=%s candidates=%d returned=%d scope_id=%s",
            collection_id,
            len(candidates),
            len(results),
            scope_id,
        )
        return results

    def get_context(
        self,
        collection_id: str,
        query: str,
        top_k: int = 5,
        scope_id: str | None = None,
    ) -> RagContext:
        return build_context(self.search(collection_id, query, top_k=top_k, scope_id=scope_id))

    def snapshot(self, collection_id: str) -> IndexSnapshot | None:
        with self._state_lock:
            return self._snapshots.get(collection_id)

    def is_indexed(self, collection_id: str) -> bool:
        snapshot = self.snapshot(collection_id)
        return snapshot is not None and bool(snapshot.chunks)

    def status(self, collection_id: str | None = None) -> IndexingStatus:
        with self._state_lock:
            resolved_id = collection_id or self._active_collection_id
            snapshot = self._snapshots.get(resolved_id) if resolved_id else None
        return IndexingStatus(
            is_indexing=self._indexing_lock.locked(),
            chunk_count=len(snapshot.chunks) if snapshot is not None else 0,
            last_updated=snapshot.last_updated if snapshot is not None else None,
            collection_id=snapshot.collection_id if snapshot is not None else None,
        )

    def clear(self, collection_id: str | None = None) -> None:
        """Forget in-memory snapshots; persisted snapshots and indexing embedders stay."""
        with self._state_lock:
            if collection_id is None:
                self._snapshots.clear()
                self._active_collection_id = None
                return
            self._snapshots.pop(collection_id, None)
            if self._active_collection_id == collection_id:
                self._active_collection_id = None
