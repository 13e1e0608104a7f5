from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


def _optional(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class Settings:
    rag_index_dir: str
    rag_db_path: str
    rag_snapshot_backend: str
    embed_base_url: str
    embed_model: str
    embed_api_key: str | None
    embed_batch_size: int
    embed_max_input_chars: int
    embed_batch_delay_seconds: float
    llm_base_url: str
    llm_model: str
    llm_fallback_model: str
    llm_api_key: str | None
    hyde_enabled: bool
    rerank_base_url: str
    rerank_model: str
    rerank_api_key: str | None
    http_timeout_seconds: float
    vector_weight: float
    min_relevance: float
    parent_chunk_size: int
    parent_chunk_overlap: int
    child_chunk_size: int
    child_chunk_overlap: int


@lru_cache
def get_settings() -> Settings:
    index_dir = os.getenv("RAG_INDEX_DIR", "data/rag_index")
    embed_api_key = _optional(os.getenv("RAG_EMBED_API_KEY")) or _optional(
        os.getenv("OPENAI_API_KEY")
    )
    vector_weight = _to_float(os.getenv("RAG_VECTOR_WEIGHT"), default=0.7, minimum=0.0)

    return Settings(
        rag_index_dir=index_dir,
        rag_db_path=os.getenv("RAG_DB_PATH", str(Path(index_dir) / "rag.db")),
        rag_snapshot_backend=os.getenv("RAG_SNAPSHOT_BACKEND", "json").strip().lower(),
        embed_base_url=os.getenv("RAG_EMBED_BASE_URL", "https://api.openai.com/v1"),
        embed_model=os.getenv("RAG_EMBED_MODEL", "text-embedding-3-small"),
        embed_api_key=embed_api_key,
        embed_batch_size=_to_int(os.getenv("RAG_EMBED_BATCH_SIZE"), default=100, minimum=1),
        embed_max_input_chars=_to_int(
            os.getenv("RAG_EMBED_MAX_INPUT_CHARS"), default=8000, minimum=100
        ),
        embed_batch_delay_seconds=_to_float(
            os.getenv("RAG_EMBED_BATCH_DELAY_SECONDS"), default=0.2, minimum=0.0
        ),
        llm_base_url=os.getenv("RAG_LLM_BASE_URL", "https://api.openai.com/v1"),
        llm_model=os.getenv("RAG_LLM_MODEL", "gpt-4o-mini"),
        llm_fallback_model=os.getenv("RAG_LLM_FALLBACK_MODEL", ""),
        llm_api_key=_optional(os.getenv("RAG_LLM_API_KEY")) or embed_api_key,
        hyde_enabled=_to_bool(os.getenv("RAG_HYDE_ENABLED"), default=True),
        rerank_base_url=os.getenv("RAG_RERANK_BASE_URL", "https://api.cohere.com/v2"),
        rerank_model=os.getenv("RAG_RERANK_MODEL", "rerank-v3.5"),
        rerank_api_key=_optional(os.getenv("RAG_RERANK_API_KEY")),
        http_timeout_seconds=_to_float(
            os.getenv("RAG_HTTP_TIMEOUT_SECONDS"), default=30.0, minimum=1.0
        ),
        vector_weight=min(1.0, vector_weight),
        min_relevance=_to_float(os.getenv("RAG_MIN_RELEVANCE"), default=0.25, minimum=0.0),
        parent_chunk_size=_to_int(
            os.getenv("RAG_PARENT_CHUNK_SIZE"), default=3000, minimum=200
        ),
        parent_chunk_overlap=_to_int(
            os.getenv("RAG_PARENT_CHUNK_OVERLAP"), default=200, minimum=0
        ),
        child_chunk_size=_to_int(os.getenv("RAG_CHILD_CHUNK_SIZE"), default=500, minimum=50),
        child_chunk_overlap=_to_int(
            os.getenv("RAG_CHILD_CHUNK_OVERLAP"), default=100, minimum=0
        ),
    )
