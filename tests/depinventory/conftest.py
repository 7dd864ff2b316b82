"""Shared fixtures for depinventory tests."""

from __future__ import annotations

import sys

import pytest
import structlog

from depinventory.engines.inventory_scanner.models import Repository, RepositoryFile
from depinventory.engines.inventory_scanner.registry import match_kind


@pytest.fixture(autouse=True)
def _log_to_stderr():
    # Route structlog records to stderr as main() does, keeping stdout for report output.
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


class FakeGateway:
    """In-memory gateway: ``{repo_name: {"/path": content}}``.

    *fail_list* names repositories whose file listing raises; *fail_fetch*
    holds paths whose content fetch raises.
    """

    def __init__(
        self,
        repos: dict[str, dict[str, str]],
        *,
        fail_list: set[str] | None = None,
        fail_fetch: set[str] | None = None,
        fail_enumerate: bool = False,
    ) -> None:
        self.repos = repos
        self.fail_list = fail_list or set()
        self.fail_fetch = fail_fetch or set()
        self.fail_enumerate = fail_enumerate
        self.fetched: list[tuple[str, str]] = []
        self.management_calls: list[tuple[str, bool]] = []

    async def list_repositories(self) -> list[Repository]:
        if self.fail_enumerate:
            raise ConnectionError("service unavailable")
        return [Repository(name=name, project="Platform") for name in self.repos]

    def _files(self, repo: Repository) -> list[RepositoryFile]:
        if repo.name in self.fail_list:
            raise RuntimeError(f"cannot list {repo.name}")
        files = []
        for path in sorted(self.repos[repo.name]):
            kind = match_kind(path)
            if kind is not None:
                files.append(RepositoryFile(repository=repo.name, path=path, kind=kind))
        return files

    async def list_project_files(self, repository: Repository) -> list[RepositoryFile]:
        return [f for f in self._files(repository) if f.kind == "project-file"]

    async def list_management_files(
        self, repository: Repository, include_legacy: bool
    ) -> list[RepositoryFile]:
        self.management_calls.append((repository.name, include_legacy))
        wanted = {"central-versions", "packages-config"} if include_legacy else {"central-versions"}
        return [f for f in self._files(repository) if f.kind in wanted]

    async def fetch_content(self, repository: Repository, file: RepositoryFile) -> str:
        return await self.read_file(repository, file.path)

    async def read_file(self, repository: Repository, path: str) -> str:
        self.fetched.append((repository.name, path))
        if path in self.fail_fetch:
            raise OSError(f"read error: {path}")
        return self.repos.get(repository.name, {}).get(path, "")


@pytest.fixture
def make_gateway():
    return FakeGateway


def csproj(*refs: tuple[str, str | None]) -> str:
    """Render a minimal SDK-style project with the given package references."""
    items = []
    for name, version in refs:
        if version is None:
            items.append(f'    <PackageReference Include="{name}" />')
        else:
            items.append(f'    <PackageReference Include="{name}" Version="{version}" />')
    body = "\n".join(items)
    return (
        '<Project Sdk="Microsoft.NET.Sdk">\n'
        "  <ItemGroup>\n"
        f"{body}\n"
        "  </ItemGroup>\n"
        "</Project>\n"
    )


@pytest.fixture
def render_csproj():
    return csproj
