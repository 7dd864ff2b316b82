"""Source registry: match repository files to the extractor that reads them."""

from __future__ import annotations

import fnmatch
import posixpath
from pathlib import Path
from typing import Protocol, runtime_checkable

from depinventory.engines.inventory_scanner.models import SourceKind

# Build output and VCS metadata never hold declarations we want.
_SKIP_DIRS = frozenset({".git", ".vs", "bin", "obj", "node_modules"})


@runtime_checkable
class DeclarationSource(Protocol):
    """Interface that every extractor registers under."""

    kind: SourceKind
    file_patterns: list[str]


SOURCE_REGISTRY: dict[str, DeclarationSource] = {}


def register_source(source: DeclarationSource) -> None:
    """Register an extractor by its kind."""
    SOURCE_REGISTRY[source.kind] = source


def match_kind(path: str) -> SourceKind | None:
    """Return the kind of file at *path*, matching file names case-insensitively."""
    name = posixpath.basename(path.replace("\\", "/")).lower()
    for source in SOURCE_REGISTRY.values():
        for pattern in source.file_patterns:
            if fnmatch.fnmatchcase(name, pattern.lower()):
                return source.kind
    return None


def discover_files(repo_path: Path) -> list[tuple[SourceKind, str]]:
    """Walk a checked-out repository and classify every known file.

    Returns ``(kind, rooted_path)`` pairs sorted by path, where
    ``rooted_path`` is ``/``-separated and starts with ``/``.
    """
    matches: list[tuple[SourceKind, str]] = []
    for hit in repo_path.rglob("*"):
        rel = hit.relative_to(repo_path)
        if any(part in _SKIP_DIRS for part in rel.parts[:-1]):
            continue
        if not hit.is_file():
            continue
        kind = match_kind(hit.name)
        if kind is not None:
            matches.append((kind, "/" + rel.as_posix()))
    return sorted(matches, key=lambda m: m[1])
