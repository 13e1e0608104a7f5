from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Union

SCHEMA_VERSION = 5


@dataclass(frozen=True)
class ParentChunk:
    id: str
    file_id: str
    source_path: str
    source_name: str
    content: str
    chunk_index: int
    total_chunks: int
    content_hash: str
    page_number: int | None = None
    section_heading: str | None = None
    embedding: list[float] = field(default_factory=list)

    chunk_type: Literal["parent"] = field(default="parent", init=False)


@dataclass(frozen=True)
class ChildChunk:
    id: str
    file_id: str
    source_path: str
    source_name: str
    content: str
    chunk_index: int
    total_chunks: int
    content_hash: str
    parent_id: str
    page_number: int | None = None
    section_heading: str | None = None
    embedding: list[float] = field(default_factory=list)

    chunk_type: Literal["child"] = field(default="child", init=False)


Chunk = Union[ParentChunk, ChildChunk]


@dataclass(frozen=True)
class FileRecord:
    file_id: str
    source_path: str
    last_modified: float
    content_hash: str
    chunk_count: int


@dataclass(frozen=True)
class IndexSnapshot:
    collection_id: str
    chunks: list[Chunk]
    file_records: dict[str, FileRecord]
    last_updated: float
    schema_version: int = SCHEMA_VERSION
    embedding_model: str | None = None

    def child_chunks(self) -> list[ChildChunk]:
        return [chunk for chunk in self.chunks if isinstance(chunk, ChildChunk)]

    def parents_by_id(self) -> dict[str, ParentChunk]:
        return {chunk.id: chunk for chunk in self.chunks if isinstance(chunk, ParentChunk)}


@dataclass(frozen=True)
class SourceFile:
    file_id: str
    path: str
    name: str
    last_modified: float
    content_hash: str


class ExtractionStatus(str, Enum):
    OK = "ok"
    PLACEHOLDER = "placeholder"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractionResult:
    text: str
    status: ExtractionStatus = ExtractionStatus.OK
    pages: list[tuple[int, str]] | None = None
    detail: str | None = None

    @property
    def usable(self) -> bool:
        return self.status is ExtractionStatus.OK


@dataclass(frozen=True)
class IndexResult:
    chunk_count: int
    file_count: int
    from_cache: bool


@dataclass(frozen=True)
class ScoredChunk:
    chunk: Chunk
    score: float
    vector_score: float = 0.0
    bm25_score: float = 0.0
    rerank_score: float | None = None
    out_of_scope: bool = False
    scope_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Citation:
    file_name: str
    file_path: str
    section: str
    page_number: int | None
    out_of_scope: bool


@dataclass(frozen=True)
class RagContext:
    context: str
    sources: list[Citation]


@dataclass(frozen=True)
class IndexingStatus:
    is_indexing: bool
    chunk_count: int
    last_updated: float | None
    collection_id: str | None
