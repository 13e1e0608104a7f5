from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
import re
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ragcore.services.rag.types import (
    SCHEMA_VERSION,
    Chunk,
    ChildChunk,
    FileRecord,
    IndexSnapshot,
    ParentChunk,
)

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE_RE = re.compile(r"\s+")
MAX_FILENAME_STEM = 100


class SnapshotStore(Protocol):
    def save(self, snapshot: IndexSnapshot) -> None: ...

    def load(
        self, collection_id: str, *, embedding_model: str | None = None
    ) -> IndexSnapshot | None: ...


class ChunkPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    file_id: str
    source_path: str
    source_name: str
    content: str
    content_hash: str
    embedding: list[float]
    chunk_index: int = Field(ge=0)
    total_chunks: int = Field(ge=1)
    chunk_type: Literal["parent", "child"]
    parent_id: str | None = None
    page_number: int | None = None
    section_heading: str | None = None

    @model_validator(mode="after")
    def _check_parent_reference(self) -> ChunkPayload:
        if self.chunk_type == "child" and not self.parent_id:
            raise ValueError(f"child chunk {self.id} has no parent_id")
        if self.chunk_type == "parent" and self.parent_id is not None:
            raise ValueError(f"parent chunk {self.id} must not carry parent_id")
        return self


class FileRecordPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file_id: str
    source_path: str
    last_modified: float
    content_hash: str
    chunk_count: int = Field(ge=0)


class SnapshotPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int
    collection_id: str
    last_updated: float
    embedding_model: str | None = None
    chunks: list[ChunkPayload]
    file_records: dict[str, FileRecordPayload]


def chunk_to_payload(chunk: Chunk) -> ChunkPayload:
    return ChunkPayload(
        id=chunk.id,
        file_id=chunk.file_id,
        source_path=chunk.source_path,
        source_name=chunk.source_name,
        content=chunk.content,
        content_hash=chunk.content_hash,
        embedding=list(chunk.embedding),
        chunk_index=chunk.chunk_index,
        total_chunks=chunk.total_chunks,
        chunk_type=chunk.chunk_type,
        parent_id=chunk.parent_id if isinstance(chunk, ChildChunk) else None,
        page_number=chunk.page_number,
        section_heading=chunk.section_heading,
    )


def chunk_from_payload(payload: ChunkPayload) -> Chunk:
    common = {
        "id": payload.id,
        "file_id": payload.file_id,
        "source_path": payload.source_path,
        "source_name": payload.source_name,
        "content": payload.content,
        "chunk_index": payload.chunk_index,
        "total_chunks": payload.total_chunks,
        "content_hash": payload.content_hash,
        "page_number": payload.page_number,
        "section_heading": payload.section_heading,
        "embedding": list(payload.embedding),
    }
    if payload.chunk_type == "child" and payload.parent_id is not None:
        return ChildChunk(parent_id=payload.parent_id, **common)
    return ParentChunk(**common)


def snapshot_to_payload(snapshot: IndexSnapshot) -> SnapshotPayload:
    return SnapshotPayload(
        schema_version=snapshot.schema_version,
        collection_id=snapshot.collection_id,
        last_updated=snapshot.last_updated,
        embedding_model=snapshot.embedding_model,
        chunks=[chunk_to_payload(chunk) for chunk in snapshot.chunks],
        file_records={
            file_id: FileRecordPayload(
                file_id=record.file_id,
                source_path=record.source_path,
                last_modified=record.last_modified,
                content_hash=record.content_hash,
                chunk_count=record.chunk_count,
            )
            for file_id, record in snapshot.file_records.items()
        },
    )


def snapshot_from_payload(payload: SnapshotPayload) -> IndexSnapshot:
    return IndexSnapshot(
        collection_id=payload.collection_id,
        chunks=[chunk_from_payload(chunk) for chunk in payload.chunks],
        file_records={
            file_id: FileRecord(
                file_id=record.file_id,
                source_path=record.source_path,
                last_modified=record.last_modified,
                content_hash=record.content_hash,
                chunk_count=record.chunk_count,
            )
            for file_id, record in payload.file_records.items()
        },
        last_updated=payload.last_updated,
        schema_version=payload.schema_version,
        embedding_model=payload.embedding_model,
    )


def snapshot_rejection_reason(
    snapshot: IndexSnapshot,
    *,
    collection_id: str,
    embedding_model: str | None,
) -> str | None:
    if snapshot.schema_version != SCHEMA_VERSION:
        return f"schema version mismatch (found={snapshot.schema_version} expected={SCHEMA_VERSION})"
    if snapshot.collection_id != collection_id:
        return f"collection mismatch (found={snapshot.collection_id!r})"
    if embedding_model is not None and snapshot.embedding_model != embedding_model:
        return f"embedding model mismatch (found={snapshot.embedding_model!r} expected={embedding_model!r})"

    parents = snapshot.parents_by_id()
    for chunk in snapshot.child_chunks():
        parent = parents.get(chunk.parent_id)
        if parent is None or parent.file_id != chunk.file_id:
            return f"dangling parent reference chunk_id={chunk.id}"
    return None


def snapshot_filename(collection_id: str) -> str:
    safe_name = _WHITESPACE_RE.sub("_", _UNSAFE_FILENAME_RE.sub("_", collection_id))
    safe_name = safe_name[-MAX_FILENAME_STEM:] or "collection"
    digest = hashlib.sha256(collection_id.encode("utf-8")).hexdigest()[:8]
    return f"{safe_name}-{digest}.json"


class JsonSnapshotStore:
    def __init__(self, index_dir: Path) -> None:
        self._index_dir = index_dir

    def path_for(self, collection_id: str) -> Path:
        return self._index_dir / snapshot_filename(collection_id)

    def save(self, snapshot: IndexSnapshot) -> None:
        path = self.path_for(snapshot.collection_id)
        tmp_path = path.with_suffix(f"{path.suffix}.tmp")
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            tmp_path.write_text(snapshot_to_payload(snapshot).model_dump_json(), encoding="utf-8")
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        logger.info(
            "[rag] snapshot saved collection_id=%s chunks=%d path=%s",
            snapshot.collection_id,
            len(snapshot.chunks),
            path,
        )

    def load(
        self, collection_id: str, *, embedding_model: str | None = None
    ) -> IndexSnapshot | None:
        path = self.path_for(collection_id)
        if not path.exists():
            return None

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("[rag] snapshot unreadable collection_id=%s error=%s", collection_id, exc)
            return None

        if not isinstance(raw, dict) or raw.get("schema_version") != SCHEMA_VERSION:
            found = raw.get("schema_version") if isinstance(raw, dict) else None
            logger.info(
                "[rag] snapshot schema version mismatch collection_id=%s found=%s expected=%s",
                collection_id,
                found,
                SCHEMA_VERSION,
            )
            return None

        try:
            snapshot = snapshot_from_payload(SnapshotPayload.model_validate(raw))
        except ValidationError as exc:
            logger.warning(
                "[rag] snapshot invalid collection_id=%s errors=%d",
                collection_id,
                exc.error_count(),
            )
            return None

        reason = snapshot_rejection_reason(
            snapshot, collection_id=collection_id, embedding_model=embedding_model
        )
        if reason is not None:
            logger.info("[rag] snapshot rejected collection_id=%s reason=%s", collection_id, reason)
            return None

        return snapshot
