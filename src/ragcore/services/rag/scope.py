from __future__ import annotations

from pathlib import PurePath
from typing import Iterable, Protocol


class ScopeAssociation(Protocol):
    def documents_for_scope(self, scope_id: str) -> set[str]: ...

    def scopes_for_document(self, path: str) -> list[str]: ...


class InMemoryScopeAssociation:
    def __init__(self, associations: dict[str, Iterable[str]] | None = None) -> None:
        self._documents: dict[str, set[str]] = {}
        for scope_id, paths in (associations or {}).items():
            for path in paths:
                self.associate(scope_id, path)

    def associate(self, scope_id: str, path: str) -> None:
        self._documents.setdefault(scope_id, set()).add(path)

    def documents_for_scope(self, scope_id: str) -> set[str]:
        return set(self._documents.get(scope_id, set()))

    def scopes_for_document(self, path: str) -> list[str]:
        return sorted(
            scope_id
            for scope_id, paths in self._documents.items()
            if any(path_contains(candidate, path) for candidate in paths)
        )


def _normalize(path: str) -> PurePath:
    return PurePath(path.replace("\\", "/"))


def path_contains(container: str, path: str) -> bool:
    """True when ``path`` equals ``container`` or lies beneath it."""
    if not container or not path:
        return False
    container_path = _normalize(container)
    candidate = _normalize(path)
    return candidate == container_path or container_path in candidate.parents
