class RagError(RuntimeError):
    pass


class EmbedderNotConfiguredError(RagError):
    def __init__(self, message: str = "Embedding API key not configured") -> None:
        super().__init__(message)


class IndexingInProgressError(RagError):
    """Another indexing run holds the indexing lock; retry once it finishes."""

    def __init__(self, collection_id: str) -> None:
        super().__init__(f"Indexing already in progress (requested collection_id={collection_id})")
        self.collection_id = collection_id


class TextExtractionError(RagError):
    pass
