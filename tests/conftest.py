from __future__ import annotations

from collections.abc import Iterator

import pytest

from ragcore.config import get_settings
from ragcore.db import get_engine

_ISOLATED_ENV_VARS = (
    "OPENAI_API_KEY",
    "RAG_EMBED_API_KEY",
    "RAG_LLM_API_KEY",
    "RAG_RERANK_API_KEY",
    "RAG_SNAPSHOT_BACKEND",
    "RAG_EMBED_BATCH_SIZE",
    "RAG_INDEX_DIR",
    "RAG_DB_PATH",
)


@pytest.fixture(autouse=True)
def reset_caches(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in _ISOLATED_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
