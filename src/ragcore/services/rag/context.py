from __future__ import annotations

from typing import Sequence

from ragcore.services.rag.types import Chunk, Citation, RagContext, ScoredChunk

CONTEXT_SEPARATOR = "\n\n---\n\n"


def section_label(chunk: Chunk) -> str:
    if chunk.page_number is not None:
        return f"Page {chunk.page_number}"
    if chunk.section_heading:
        return chunk.section_heading
    if chunk.total_chunks > 1:
        return f"Section {chunk.chunk_index + 1}/{chunk.total_chunks}"
    return "Full Document"


def build_context(results: Sequence[ScoredChunk]) -> RagContext:
    """Render results as numbered passages the model can cite as ``[n]``."""
    if not results:
        return RagContext(context="", sources=[])

    parts: list[str] = []
    sources: list[Citation] = []
    for number, item in enumerate(results, start=1):
        chunk = item.chunk
        label = section_label(chunk)
        marker = " [outside requested scope]" if item.out_of_scope else ""
        parts.append(f"[{number}] {chunk.source_name} ({label}){marker}\n{chunk.content}")
        sources.append(
            Citation(
                file_name=chunk.source_name,
                file_path=chunk.source_path,
                section=label,
                page_number=chunk.page_number,
                out_of_scope=item.out_of_scope,
            )
        )

    return RagContext(context=CONTEXT_SEPARATOR.join(parts), sources=sources)
