"""Source-control gateway contract and a local filesystem implementation."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

# Ensure extractors are registered before files are classified.
import depinventory.engines.inventory_scanner.parsers  # noqa: F401
from depinventory.engines.inventory_scanner.models import (
    CENTRAL_VERSIONS,
    PACKAGES_CONFIG,
    PROJECT_FILE,
    Repository,
    RepositoryFile,
)
from depinventory.engines.inventory_scanner.registry import discover_files
from depinventory.exceptions import SourceControlError

log = structlog.get_logger("depinventory.engine")


@runtime_checkable
class SourceControlGateway(Protocol):
    """What the scanner needs from a source-control service.

    ``fetch_content`` and ``read_file`` return ``""`` for missing files
    instead of raising.
    """

    async def list_repositories(self) -> list[Repository]: ...

    async def list_project_files(self, repository: Repository) -> list[RepositoryFile]: ...

    async def list_management_files(
        self, repository: Repository, include_legacy: bool
    ) -> list[RepositoryFile]: ...

    async def fetch_content(self, repository: Repository, file: RepositoryFile) -> str: ...

    async def read_file(self, repository: Repository, path: str) -> str: ...


class LocalGateway:
    """Serve repositories that are already checked out on disk.

    Every immediate sub-directory of *root* is one repository, unless
    *single_repository* is set, in which case *root* itself is the only one.
    """

    def __init__(self, root: Path, *, single_repository: bool = False) -> None:
        self._root = root
        self._single = single_repository
        self._files: dict[tuple[str | None, str], list[RepositoryFile]] = {}

    async def list_repositories(self) -> list[Repository]:
        if not self._root.is_dir():
            raise SourceControlError(f"{self._root} is not a directory")
        if self._single:
            return [Repository(name=self._root.name, id=str(self._root))]
        return [
            Repository(name=p.name, id=str(p), project=self._root.name)
            for p in sorted(self._root.iterdir())
            if p.is_dir() and not p.name.startswith(".")
        ]

    async def list_project_files(self, repository: Repository) -> list[RepositoryFile]:
        return [f for f in self._discover(repository) if f.kind == PROJECT_FILE]

    async def list_management_files(
        self, repository: Repository, include_legacy: bool
    ) -> list[RepositoryFile]:
        wanted = {CENTRAL_VERSIONS, PACKAGES_CONFIG} if include_legacy else {CENTRAL_VERSIONS}
        return [f for f in self._discover(repository) if f.kind in wanted]

    async def fetch_content(self, repository: Repository, file: RepositoryFile) -> str:
        return await self.read_file(repository, file.path)

    async def read_file(self, repository: Repository, path: str) -> str:
        target = self._repo_path(repository) / path.lstrip("/")
        if not target.is_file():
            return ""
        return target.read_text(encoding="utf-8-sig", errors="replace")

    def _repo_path(self, repository: Repository) -> Path:
        return Path(repository.id) if repository.id else self._root / repository.name

    def _discover(self, repository: Repository) -> list[RepositoryFile]:
        cached = self._files.get(repository.cache_key)
        if cached is None:
            cached = [
                RepositoryFile(repository=repository.name, path=path, kind=kind)
                for kind, path in discover_files(self._repo_path(repository))
            ]
            self._files[repository.cache_key] = cached
            log.debug("local_gateway.discovered", repository=repository.name, files=len(cached))
        return cached
