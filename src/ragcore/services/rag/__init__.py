from ragcore.services.rag.engine import RagEngine
from ragcore.services.rag.errors import EmbedderNotConfiguredError, IndexingInProgressError
from ragcore.services.rag.types import IndexResult, RagContext, ScoredChunk

__all__ = [
    "EmbedderNotConfiguredError",
    "IndexResult",
    "IndexingInProgressError",
    "RagContext",
    "RagEngine",
    "ScoredChunk",
]
