from __future__ import annotations

from array import array
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ragcore.db import get_engine, sqlite_url
from ragcore.services.rag.index_store import snapshot_rejection_reason
from ragcore.services.rag.types import (
    SCHEMA_VERSION,
    Chunk,
    ChildChunk,
    FileRecord,
    IndexSnapshot,
    ParentChunk,
)

logger = logging.getLogger(__name__)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS snapshots (
        collection_id TEXT PRIMARY KEY,
        schema_version INTEGER NOT NULL,
        embedding_model TEXT,
        last_updated REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        collection_id TEXT NOT NULL,
        id TEXT NOT NULL,
        position INTEGER NOT NULL,
        file_id TEXT NOT NULL,
        source_path TEXT NOT NULL,
        source_name TEXT NOT NULL,
        content TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        chunk_type TEXT NOT NULL CHECK (chunk_type IN ('parent', 'child')),
        parent_id TEXT,
        chunk_index INTEGER NOT NULL,
        total_chunks INTEGER NOT NULL,
        page_number INTEGER,
        section_heading TEXT,
        embedding BLOB NOT NULL,
        embedding_dim INTEGER NOT NULL,
        PRIMARY KEY (collection_id, id),
        FOREIGN KEY (collection_id) REFERENCES snapshots(collection_id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_records (
        collection_id TEXT NOT NULL,
        file_id TEXT NOT NULL,
        source_path TEXT NOT NULL,
        last_modified REAL NOT NULL,
        content_hash TEXT NOT NULL,
        chunk_count INTEGER NOT NULL,
        PRIMARY KEY (collection_id, file_id),
        FOREIGN KEY (collection_id) REFERENCES snapshots(collection_id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_collection_position ON chunks(collection_id, position)",
)


def _encode_embedding(values: list[float]) -> bytes:
    # float64 keeps stored vectors bit-identical to the ones the embedder returned.
    return array("d", values).tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("d")
    vector.frombytes(blob)
    return vector.tolist()


def _ensure_schema(connection: Connection) -> None:
    for statement in _SCHEMA_STATEMENTS:
        connection.execute(text(statement))


def _chunk_row(collection_id: str, position: int, chunk: Chunk) -> dict[str, object]:
    return {
        "collection_id": collection_id,
        "id": chunk.id,
        "position": position,
        "file_id": chunk.file_id,
        "source_path": chunk.source_path,
        "source_name": chunk.source_name,
        "content": chunk.content,
        "content_hash": chunk.content_hash,
        "chunk_type": chunk.chunk_type,
        "parent_id": chunk.parent_id if isinstance(chunk, ChildChunk) else None,
        "chunk_index": chunk.chunk_index,
        "total_chunks": chunk.total_chunks,
        "page_number": chunk.page_number,
        "section_heading": chunk.section_heading,
        "embedding": _encode_embedding(list(chunk.embedding)),
        "embedding_dim": len(chunk.embedding),
    }


def _chunk_from_row(row) -> Chunk | None:
    blob = row["embedding"]
    if not isinstance(blob, bytes) or len(blob) % array("d").itemsize:
        return None
    embedding = _decode_embedding(blob)
    if len(embedding) != row["embedding_dim"]:
        return None

    common = {
        "id": row["id"],
        "file_id": row["file_id"],
        "source_path": row["source_path"],
        "source_name": row["source_name"],
        "content": row["content"],
        "chunk_index": int(row["chunk_index"]),
        "total_chunks": int(row["total_chunks"]),
        "content_hash": row["content_hash"],
        "page_number": row["page_number"],
        "section_heading": row["section_heading"],
        "embedding": embedding,
    }
    if row["chunk_type"] == "child":
        if not row["parent_id"]:
            return None
        return ChildChunk(parent_id=row["parent_id"], **common)
    return ParentChunk(**common)


class SqliteSnapshotStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    def _engine(self) -> Engine:
        return get_engine(sqlite_url(str(self._db_path)))

    def save(self, snapshot: IndexSnapshot) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        collection_id = snapshot.collection_id

        with self._engine().begin() as connection:
            _ensure_schema(connection)
            params = {"collection_id": collection_id}
            connection.execute(text("DELETE FROM chunks WHERE collection_id = :collection_id"), params)
            connection.execute(
                text("DELETE FROM file_records WHERE collection_id = :collection_id"), params
            )
            connection.execute(
                text("DELETE FROM snapshots WHERE collection_id = :collection_id"), params
            )

            connection.execute(
                text(
                    """
                    INSERT INTO snapshots (collection_id, schema_version, embedding_model, last_updated)
                    VALUES (:collection_id, :schema_version, :embedding_model, :last_updated)
                    """
                ),
                {
                    "collection_id": collection_id,
                    "schema_version": snapshot.schema_version,
                    "embedding_model": snapshot.embedding_model,
                    "last_updated": snapshot.last_updated,
                },
            )

            if snapshot.chunks:
                connection.execute(
                    text(
                        """
                        INSERT INTO chunks (
                            collection_id, id, position, file_id, source_path, source_name,
                            content, content_hash, chunk_type, parent_id, chunk_index,
                            total_chunks, page_number, section_heading, embedding, embedding_dim
                        )
                        VALUES (
                            :collection_id, :id, :position, :file_id, :source_path, :source_name,
                            :content, :content_hash, :chunk_type, :parent_id, :chunk_index,
                            :total_chunks, :page_number, :section_heading, :embedding, :embedding_dim
                        )
                        """
                    ),
                    [
                        _chunk_row(collection_id, position, chunk)
                        for position, chunk in enumerate(snapshot.chunks)
                    ],
                )

            if snapshot.file_records:
                connection.execute(
                    text(
                        """
                        INSERT INTO file_records (
                            collection_id, file_id, source_path, last_modified, content_hash, chunk_count
                        )
                        VALUES (
                            :collection_id, :file_id, :source_path, :last_modified, :content_hash, :chunk_count
                        )
                        """
                    ),
                    [
                        {
                            "collection_id": collection_id,
                            "file_id": record.file_id,
                            "source_path": record.source_path,
                            "last_modified": record.last_modified,
                            "content_hash": record.content_hash,
                            "chunk_count": record.chunk_count,
                        }
                        for record in snapshot.file_records.values()
                    ],
                )

        logger.info(
            "[rag] snapshot saved collection_id=%s chunks=%d db_path=%s",
            collection_id,
            len(snapshot.chunks),
            self._db_path,
        )

    def load(
        self, collection_id: str, *, embedding_model: str | None = None
    ) -> IndexSnapshot | None:
        if not self._db_path.exists():
            return None

        params = {"collection_id": collection_id}
        try:
            with self._engine().connect() as connection:
                header = connection.execute(
                    text(
                        """
                        SELECT schema_version, embedding_model, last_updated
                        FROM snapshots
                        WHERE collection_id = :collection_id
                        """
                    ),
                    params,
                ).mappings().first()
                if header is None:
                    return None
                if header["schema_version"] != SCHEMA_VERSION:
                    logger.info(
                        "[rag] snapshot schema version mismatch collection_id=%s found=%s expected=%s",
                        collection_id,
                        header["schema_version"],
                        SCHEMA_VERSION,
                    )
                    return None

                chunk_rows = connection.execute(
                    text(
                        """
                        SELECT * FROM chunks
                        WHERE collection_id = :collection_id
                        ORDER BY position
                        """
                    ),
                    params,
                ).mappings().all()
                record_rows = connection.execute(
                    text("SELECT * FROM file_records WHERE collection_id = :collection_id"),
                    params,
                ).mappings().all()
        except SQLAlchemyError as exc:
            logger.warning("[rag] snapshot unreadable collection_id=%s error=%s", collection_id, exc)
            return None

        chunks: list[Chunk] = []
        for row in chunk_rows:
            chunk = _chunk_from_row(row)
            if chunk is None:
                logger.warning(
                    "[rag] snapshot row invalid collection_id=%s chunk_id=%s", collection_id, row["id"]
                )
                return None
            chunks.append(chunk)

        snapshot = IndexSnapshot(
            collection_id=collection_id,
            chunks=chunks,
            file_records={
                row["file_id"]: FileRecord(
                    file_id=row["file_id"],
                    source_path=row["source_path"],
                    last_modified=float(row["last_modified"]),
                    content_hash=row["content_hash"],
                    chunk_count=int(row["chunk_count"]),
                )
                for row in record_rows
            },
            last_updated=float(header["last_updated"]),
            schema_version=int(header["schema_version"]),
            embedding_model=header["embedding_model"],
        )

        reason = snapshot_rejection_reason(
            snapshot, collection_id=collection_id, embedding_model=embedding_model
        )
        if reason is not None:
            logger.info("[rag] snapshot rejected collection_id=%s reason=%s", collection_id, reason)
            return None
        return snapshot
