from __future__ import annotations

from dataclasses import dataclass
import hashlib
import re

from ragcore.services.rag.types import Chunk, ChildChunk, ParentChunk

PARENT_CHUNK_SIZE = 3000
PARENT_CHUNK_OVERLAP = 200
CHILD_CHUNK_SIZE = 500
CHILD_CHUNK_OVERLAP = 100
MIN_CHUNK_CHARS = 20

PAGE_MARKER_RE = re.compile(r"--- Page (\d+) ---")

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")
_ABBREVIATION_RE = re.compile(
    r"\b(?:Mr|Mrs|Ms|Dr|Prof|Sr|Jr|St|vs|etc|e\.g|i\.e|viz|al|fig|vol|no|pp|ch|sec|cf|approx|inc|ltd|co)\.",
    re.IGNORECASE,
)
_INITIAL_RE = re.compile(r"\b[A-Z]\.")
_DOT_PLACEHOLDER = "<<DOT>>"

_MARKDOWN_HEADING_RE = re.compile(r"^#{1,6}\s+(.+?)\s*#*$")
_UNDERLINE_RE = re.compile(r"^(?:={3,}|-{3,})$")
_BULLET_PREFIXES = ("-", "*", "•", "+")


@dataclass(frozen=True)
class ChunkerConfig:
    parent_size: int = PARENT_CHUNK_SIZE
    parent_overlap: int = PARENT_CHUNK_OVERLAP
    child_size: int = CHILD_CHUNK_SIZE
    child_overlap: int = CHILD_CHUNK_OVERLAP
    min_chunk_chars: int = MIN_CHUNK_CHARS


@dataclass(frozen=True)
class Section:
    heading: str | None
    text: str


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _validate_window(size: int, overlap: int) -> None:
    if size <= 0:
        raise ValueError("chunk_size must be > 0")
    if overlap < 0:
        raise ValueError("chunk_overlap must be >= 0")
    if overlap >= size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")


def _window_split(text: str, *, size: int, overlap: int) -> list[str]:
    _validate_window(size, overlap)

    pieces: list[str] = []
    cursor = 0
    text_length = len(text)

    while cursor < text_length:
        end = min(text_length, cursor + size)
        piece = text[cursor:end].strip()
        if piece:
            pieces.append(piece)

        if end >= text_length:
            break
        cursor = end - overlap

    return pieces


def split_sentences(text: str) -> list[str]:
    def _protect(match: re.Match[str]) -> str:
        return match.group(0).replace(".", _DOT_PLACEHOLDER)

    protected = _ABBREVIATION_RE.sub(_protect, text)
    protected = _INITIAL_RE.sub(_protect, protected)

    sentences: list[str] = []
    for part in _SENTENCE_BOUNDARY_RE.split(protected):
        sentence = part.replace(_DOT_PLACEHOLDER, ".").strip()
        if sentence:
            sentences.append(sentence)
    return sentences


def split_semantic(
    text: str,
    *,
    max_size: int,
    overlap: int,
    min_chars: int = MIN_CHUNK_CHARS,
) -> list[str]:
    _validate_window(max_size, overlap)

    pieces: list[str] = []
    current = ""
    fresh = False

    def flush() -> None:
        nonlocal current, fresh
        if fresh and current.strip():
            pieces.append(current.strip())
            current = current[-overlap:] if overlap else ""
        fresh = False

    for paragraph in (p.strip() for p in _PARAGRAPH_RE.split(text)):
        if not paragraph:
            continue

        if len(paragraph) > max_size:
            flush()
            hard_size = max(1, max_size - overlap - 1)
            for sentence in split_sentences(paragraph):
                parts = (
                    _window_split(sentence, size=hard_size, overlap=0)
                    if len(sentence) > hard_size
                    else [sentence]
                )
                for part in parts:
                    if len(current) + len(part) + 1 > max_size:
                        flush()
                    joiner = " " if current and not current.endswith(" ") else ""
                    current = f"{current}{joiner}{part}"
                    fresh = True
            continue

        separator = "\n\n" if current else ""
        if len(current) + len(separator) + len(paragraph) > max_size:
            flush()
            if len(current) + 2 + len(paragraph) > max_size:
                current = ""
            separator = "\n\n" if current else ""
        current = f"{current}{separator}{paragraph}"
        fresh = True

    flush()
    return [piece for piece in pieces if len(piece) >= min_chars]


def _heading_title(line: str, next_line: str | None) -> tuple[str, int] | None:
    stripped = line.strip()
    if not stripped:
        return None

    markdown = _MARKDOWN_HEADING_RE.match(stripped)
    if markdown is not None:
        return markdown.group(1).strip(), 1

    if next_line is not None and len(stripped) <= 100 and _UNDERLINE_RE.match(next_line.strip()):
        return stripped, 2

    if stripped.startswith(_BULLET_PREFIXES):
        return None

    words = stripped.split()
    if (
        3 <= len(stripped) <= 80
        and len(words) <= 10
        and sum(char.isalpha() for char in stripped) >= 3
        and stripped == stripped.upper()
        and not stripped.endswith((".", "!", "?"))
    ):
        return stripped, 1

    if stripped.endswith(":") and len(stripped) <= 60 and len(words) <= 8 and stripped[0].isalpha():
        return stripped[:-1].strip(), 1

    return None


def detect_sections(text: str) -> list[Section]:
    lines = text.splitlines()
    sections: list[Section] = []
    heading: str | None = None
    body: list[str] = []

    def close() -> None:
        body_text = "\n".join(body).strip()
        if not body_text:
            return
        section_text = f"{heading}\n\n{body_text}" if heading else body_text
        sections.append(Section(heading=heading, text=section_text))

    index = 0
    while index < len(lines):
        next_line = lines[index + 1] if index + 1 < len(lines) else None
        title = _heading_title(lines[index], next_line)
        if title is None:
            body.append(lines[index])
            index += 1
            continue

        close()
        heading, consumed = title
        body = []
        index += consumed

    close()
    return sections


def split_pages(text: str) -> list[tuple[int, str]] | None:
    markers = list(PAGE_MARKER_RE.finditer(text))
    if not markers:
        return None

    leading = text[: markers[0].start()]
    pages: list[tuple[int, str]] = []
    for position, marker in enumerate(markers):
        end = markers[position + 1].start() if position + 1 < len(markers) else len(text)
        page_text = text[marker.end() : end]
        if position == 0 and leading.strip():
            page_text = f"{leading.rstrip()}\n\n{page_text.lstrip()}"
        pages.append((int(marker.group(1)), page_text))
    return pages


@dataclass(frozen=True)
class _Draft:
    content: str
    page_number: int | None
    section_heading: str | None
    parent_position: int | None


class HierarchicalChunker:
    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self._config = config or ChunkerConfig()
        _validate_window(self._config.parent_size, self._config.parent_overlap)
        _validate_window(self._config.child_size, self._config.child_overlap)

    @property
    def config(self) -> ChunkerConfig:
        return self._config

    def chunk(
        self,
        text: str,
        *,
        file_id: str,
        source_path: str,
        source_name: str | None = None,
        pages: list[tuple[int, str]] | None = None,
    ) -> list[Chunk]:
        segments: list[tuple[int | None, str]]
        resolved_pages = pages if pages is not None else split_pages(text)
        if resolved_pages is None:
            segments = [(None, text)]
        else:
            segments = [(number, page_text) for number, page_text in resolved_pages]

        drafts: list[_Draft] = []
        for page_number, segment in segments:
            for section in detect_sections(segment):
                for parent_text in self._parent_pieces(section.text):
                    children = split_semantic(
                        parent_text,
                        max_size=self._config.child_size,
                        overlap=self._config.child_overlap,
                        min_chars=self._config.min_chunk_chars,
                    )
                    if not children:
                        continue

                    parent_position = len(drafts)
                    drafts.append(_Draft(parent_text, page_number, section.heading, None))
                    drafts.extend(
                        _Draft(child_text, page_number, section.heading, parent_position)
                        for child_text in children
                    )

        return self._build_chunks(
            drafts,
            file_id=file_id,
            source_path=source_path,
            source_name=source_name or source_path.replace("\\", "/").rsplit("/", 1)[-1],
        )

    def _parent_pieces(self, section_text: str) -> list[str]:
        if len(section_text) <= self._config.parent_size:
            return [section_text]
        return split_semantic(
            section_text,
            max_size=self._config.parent_size,
            overlap=self._config.parent_overlap,
            min_chars=self._config.min_chunk_chars,
        )

    @staticmethod
    def _build_chunks(
        drafts: list[_Draft],
        *,
        file_id: str,
        source_path: str,
        source_name: str,
    ) -> list[Chunk]:
        total = len(drafts)
        chunk_ids = [f"{file_id}-{index:04d}" for index in range(total)]

        chunks: list[Chunk] = []
        for index, draft in enumerate(drafts):
            if draft.parent_position is None:
                chunks.append(
                    ParentChunk(
                        id=chunk_ids[index],
                        file_id=file_id,
                        source_path=source_path,
                        source_name=source_name,
                        content=draft.content,
                        chunk_index=index,
                        total_chunks=total,
                        content_hash=content_hash(draft.content),
                        page_number=draft.page_number,
                        section_heading=draft.section_heading,
                    )
                )
                continue

            chunks.append(
                ChildChunk(
                    id=chunk_ids[index],
                    file_id=file_id,
                    source_path=source_path,
                    source_name=source_name,
                    content=draft.content,
                    chunk_index=index,
                    total_chunks=total,
                    content_hash=content_hash(draft.content),
                    parent_id=chunk_ids[draft.parent_position],
                    page_number=draft.page_number,
                    section_heading=draft.section_heading,
                )
            )
        return chunks
