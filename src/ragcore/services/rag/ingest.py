from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from time import sleep, time
from typing import Callable

from ragcore.services.rag.chunker import HierarchicalChunker
from ragcore.services.rag.embedding_client import EmbeddingClient
from ragcore.services.rag.loader import FileLister, TextExtractor
from ragcore.services.rag.types import (
    Chunk,
    ChildChunk,
    FileRecord,
    IndexResult,
    IndexSnapshot,
    ParentChunk,
    SourceFile,
)

logger = logging.getLogger(__name__)

EMBEDDING_BATCH_SIZE = 100
EMBEDDING_BATCH_DELAY_SECONDS = 0.2
MIN_CONTENT_CHARS = 50


@dataclass(frozen=True)
class ChangeSet:
    unchanged: list[SourceFile]
    changed: list[SourceFile]
    deleted: list[str]

    @property
    def has_changes(self) -> bool:
        return bool(self.changed or self.deleted)


def detect_changes(files: list[SourceFile], previous: IndexSnapshot | None) -> ChangeSet:
    previous_records = previous.file_records if previous is not None else {}

    unchanged: list[SourceFile] = []
    changed: list[SourceFile] = []
    for source in files:
        record = previous_records.get(source.file_id)
        if record is not None and record.content_hash == source.content_hash:
            unchanged.append(source)
        else:
            changed.append(source)

    current_ids = {source.file_id for source in files}
    deleted = sorted(file_id for file_id in previous_records if file_id not in current_ids)
    return ChangeSet(unchanged=unchanged, changed=changed, deleted=deleted)


def extract_and_chunk(
    files: list[SourceFile],
    *,
    text_extractor: TextExtractor,
    chunker: HierarchicalChunker,
) -> list[Chunk]:
    pending: list[Chunk] = []
    for source in files:
        try:
            extraction = text_extractor.extract(source)
        except Exception as exc:
            logger.warning("[rag] extraction failed file=%s error=%s", source.path, exc)
            continue

        if not extraction.usable:
            logger.info(
                "[rag] skipping file=%s status=%s detail=%s",
                source.path,
                extraction.status.value,
                extraction.detail,
            )
            continue
        if len(extraction.text.strip()) < MIN_CONTENT_CHARS:
            logger.info("[rag] skipping file=%s reason=too-short", source.path)
            continue

        chunks = chunker.chunk(
            extraction.text,
            file_id=source.file_id,
            source_path=source.path,
            source_name=source.name,
            pages=extraction.pages,
        )
        if not chunks:
            logger.info("[rag] skipping file=%s reason=no-chunks", source.path)
            continue
        pending.extend(chunks)

    return pending


def embed_pending_chunks(
    pending: list[Chunk],
    *,
    embedding_client: EmbeddingClient,
    batch_size: int = EMBEDDING_BATCH_SIZE,
    batch_delay_seconds: float = EMBEDDING_BATCH_DELAY_SECONDS,
    sleeper: Callable[[float], None] = sleep,
) -> list[Chunk]:
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    embedded: list[Chunk] = []
    total_batches = (len(pending) + batch_size - 1) // batch_size

    for batch_number in range(total_batches):
        batch = pending[batch_number * batch_size : (batch_number + 1) * batch_size]
        try:
            vectors = embedding_client.embed_texts([chunk.content for chunk in batch])
            if len(vectors) != len(batch):
                raise ValueError(f"expected {len(batch)} vectors, got {len(vectors)}")
        except Exception as exc:
            logger.error(
                "[rag] embedding batch failed batch=%d/%d chunks=%d error=%s",
                batch_number + 1,
                total_batches,
                len(batch),
                exc,
            )
        else:
            embedded.extend(
                replace(chunk, embedding=list(vector)) for chunk, vector in zip(batch, vectors)
            )

        if batch_number < total_batches - 1 and batch_delay_seconds > 0:
            sleeper(batch_delay_seconds)

    return reconcile_hierarchy(embedded)


def reconcile_hierarchy(chunks: list[Chunk]) -> list[Chunk]:
    parent_ids = {chunk.id for chunk in chunks if isinstance(chunk, ParentChunk)}
    children = [
        chunk for chunk in chunks if isinstance(chunk, ChildChunk) and chunk.parent_id in parent_ids
    ]
    referenced = {chunk.parent_id for chunk in children}
    return [
        chunk
        for chunk in chunks
        if (isinstance(chunk, ParentChunk) and chunk.id in referenced)
        or (isinstance(chunk, ChildChunk) and chunk.parent_id in parent_ids)
    ]


def merge_snapshot(
    *,
    collection_id: str,
    previous: IndexSnapshot | None,
    changes: ChangeSet,
    new_chunks: list[Chunk],
    embedding_model: str | None,
    now: float,
) -> IndexSnapshot:
    unchanged_ids = {source.file_id for source in changes.unchanged}
    retained: list[Chunk] = []
    file_records: dict[str, FileRecord] = {}

    if previous is not None:
        retained = [chunk for chunk in previous.chunks if chunk.file_id in unchanged_ids]
        file_records = {
            file_id: record
            for file_id, record in previous.file_records.items()
            if file_id in unchanged_ids
        }

    chunk_counts: dict[str, int] = {}
    for chunk in new_chunks:
        chunk_counts[chunk.file_id] = chunk_counts.get(chunk.file_id, 0) + 1

    for source in changes.changed:
        count = chunk_counts.get(source.file_id, 0)
        if count == 0:
            continue
        file_records[source.file_id] = FileRecord(
            file_id=source.file_id,
            source_path=source.path,
            last_modified=source.last_modified,
            content_hash=source.content_hash,
            chunk_count=count,
        )

    return IndexSnapshot(
        collection_id=collection_id,
        chunks=retained + new_chunks,
        file_records=file_records,
        last_updated=now,
        embedding_model=embedding_model,
    )


def build_index(
    *,
    collection_id: str,
    file_lister: FileLister,
    text_extractor: TextExtractor,
    embedding_client: EmbeddingClient,
    chunker: HierarchicalChunker,
    previous: IndexSnapshot | None,
    batch_size: int = EMBEDDING_BATCH_SIZE,
    batch_delay_seconds: float = EMBEDDING_BATCH_DELAY_SECONDS,
    sleeper: Callable[[float], None] = sleep,
    clock: Callable[[], float] = time,
) -> tuple[IndexSnapshot, IndexResult]:
    files = file_lister.list_files()
    changes = detect_changes(files, previous)

    if previous is not None and not changes.has_changes:
        logger.info(
            "[rag] index unchanged collection_id=%s chunks=%d files=%d",
            collection_id,
            len(previous.chunks),
            len(previous.file_records),
        )
        return previous, IndexResult(
            chunk_count=len(previous.chunks),
            file_count=len(previous.file_records),
            from_cache=True,
        )

    logger.info(
        "[rag] indexing collection_id=%s files=%d unchanged=%d changed=%d deleted=%d",
        collection_id,
        len(files),
        len(changes.unchanged),
        len(changes.changed),
        len(changes.deleted),
    )

    pending = extract_and_chunk(changes.changed, text_extractor=text_extractor, chunker=chunker)
    new_chunks = embed_pending_chunks(
        pending,
        embedding_client=embedding_client,
        batch_size=batch_size,
        batch_delay_seconds=batch_delay_seconds,
        sleeper=sleeper,
    )

    snapshot = merge_snapshot(
        collection_id=collection_id,
        previous=previous,
        changes=changes,
        new_chunks=new_chunks,
        embedding_model=embedding_client.model_id,
        now=clock(),
    )
    logger.info(
        "[rag] indexing finished collection_id=%s chunks=%d files=%d embedded=%d/%d",
        collection_id,
        len(snapshot.chunks),
        len(snapshot.file_records),
        len(new_chunks),
        len(pending),
    )
    return snapshot, IndexResult(
        chunk_count=len(snapshot.chunks),
        file_count=len(snapshot.file_records),
        from_cache=False,
    )
