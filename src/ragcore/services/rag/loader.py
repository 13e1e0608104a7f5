from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Protocol

from ragcore.services.rag.errors import TextExtractionError
from ragcore.services.rag.types import ExtractionResult, ExtractionStatus, SourceFile

SUPPORTED_EXTENSIONS = {".txt", ".md", ".markdown", ".csv", ".json"}
IGNORED_NAMES = {".git", "node_modules", "__pycache__", ".DS_Store", ".venv", "dist", "build"}
MAX_FILE_SIZE = 50 * 1024 * 1024


class FileLister(Protocol):
    def list_files(self) -> list[SourceFile]: ...


class TextExtractor(Protocol):
    def extract(self, source: SourceFile) -> ExtractionResult: ...


def _file_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


class LocalFileLister:
    def __init__(
        self,
        root: Path,
        *,
        supported_extensions: set[str] | None = None,
        ignored_names: set[str] | None = None,
    ) -> None:
        self._root = root
        self._extensions = supported_extensions or SUPPORTED_EXTENSIONS
        self._ignored = ignored_names if ignored_names is not None else IGNORED_NAMES

    def list_files(self) -> list[SourceFile]:
        if not self._root.exists():
            raise FileNotFoundError(f"Source directory not found: {self._root}")
        if not self._root.is_dir():
            raise NotADirectoryError(f"Source path is not a directory: {self._root}")

        files = sorted(
            path
            for path in self._root.rglob("*")
            if path.is_file()
            and path.suffix.lower() in self._extensions
            and not any(part in self._ignored for part in path.relative_to(self._root).parts)
        )

        sources: list[SourceFile] = []
        for path in files:
            stats = path.stat()
            sources.append(
                SourceFile(
                    file_id=str(path),
                    path=str(path),
                    name=path.name,
                    last_modified=stats.st_mtime,
                    content_hash=_file_hash(path),
                )
            )
        return sources


class PlainTextExtractor:
    def __init__(self, *, max_file_size: int = MAX_FILE_SIZE) -> None:
        self._max_file_size = max_file_size

    def extract(self, source: SourceFile) -> ExtractionResult:
        path = Path(source.path)
        try:
            size = path.stat().st_size
            if size > self._max_file_size:
                return ExtractionResult(
                    text="",
                    status=ExtractionStatus.FAILED,
                    detail=f"file too large ({size} bytes)",
                )
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return ExtractionResult(text="", status=ExtractionStatus.FAILED, detail=str(exc))
        except OSError as exc:
            raise TextExtractionError(f"Failed to read {path}: {exc}") from exc

        return ExtractionResult(text=text)
