"""Azure DevOps source-control gateway over the Git REST API."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from depinventory.engines.inventory_scanner.models import (
    CENTRAL_VERSIONS,
    PACKAGES_CONFIG,
    PROJECT_FILE,
    Repository,
    RepositoryFile,
)
from depinventory.engines.inventory_scanner.registry import match_kind
from depinventory.exceptions import SourceControlError

if TYPE_CHECKING:
    from depinventory.core.config import AzureDevOpsSettings

log = structlog.get_logger("depinventory.engine")

_API_VERSION = "7.0"
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds


class AzureDevOpsGateway:
    """Read repositories and files from an Azure DevOps organisation."""

    def __init__(
        self,
        settings: AzureDevOpsSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings.validate()
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.organization_url.rstrip("/") + "/",
            auth=httpx.BasicAuth("", settings.personal_access_token),
            headers={"Accept": "application/json"},
            timeout=30.0,
            transport=transport,
        )
        flags = 0 if settings.case_sensitive_project_filters else re.IGNORECASE
        self._exclude_projects = [re.compile(p, flags) for p in settings.exclude_project_patterns]
        self._exclude_repos = [
            re.compile(p, re.IGNORECASE) for p in settings.exclude_repositories
        ]
        self._include_repos = [
            re.compile(p, re.IGNORECASE) for p in settings.include_repositories
        ]
        self._items: dict[tuple[str | None, str], list[RepositoryFile]] = {}

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AzureDevOpsGateway:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── gateway contract ───────────────────────────────────────────────────

    async def list_repositories(self) -> list[Repository]:
        """Enumerate repositories, then apply archive, exclude and include filters.

        Raises :class:`SourceControlError` when the organisation cannot be read.
        """
        try:
            repositories = await self._enumerate()
        except (httpx.HTTPError, ValueError) as exc:
            raise SourceControlError(f"failed to retrieve repositories: {exc}") from exc

        if not self._settings.include_archived:
            before = len(repositories)
            repositories = [r for r in repositories if not r.is_disabled]
            if before != len(repositories):
                log.debug("azure_devops.archived_filtered", count=before - len(repositories))

        if self._exclude_repos:
            before = len(repositories)
            repositories = [
                r for r in repositories if not any(rx.search(r.name) for rx in self._exclude_repos)
            ]
            if before != len(repositories):
                log.debug("azure_devops.excluded", count=before - len(repositories))

        if self._include_repos:
            repositories = self._apply_include(repositories)

        repositories = repositories[: self._settings.max_repositories]
        log.info("azure_devops.repositories", count=len(repositories))
        return repositories

    async def list_project_files(self, repository: Repository) -> list[RepositoryFile]:
        items = await self._repository_items(repository)
        return [f for f in items if f.kind == PROJECT_FILE]

    async def list_management_files(
        self, repository: Repository, include_legacy: bool
    ) -> list[RepositoryFile]:
        wanted = {CENTRAL_VERSIONS, PACKAGES_CONFIG} if include_legacy else {CENTRAL_VERSIONS}
        items = await self._repository_items(repository)
        return [f for f in items if f.kind in wanted]

    async def fetch_content(self, repository: Repository, file: RepositoryFile) -> str:
        return await self.read_file(repository, file.path)

    async def read_file(self, repository: Repository, path: str) -> str:
        try:
            resp = await self._request_with_retry(
                self._repo_url(repository, "items"),
                {"path": path, "includeContent": "true", "$format": "text"},
                allow_missing=True,
            )
        except httpx.HTTPError as exc:
            log.debug("azure_devops.read_failed", repository=repository.name, path=path, error=str(exc))
            return ""
        if resp is None:
            return ""
        return resp.text

    # ── internal ───────────────────────────────────────────────────────────

    async def _enumerate(self) -> list[Repository]:
        limit = self._settings.max_repositories
        if self._settings.project:
            return await self._project_repositories(self._settings.project)

        data = await self._get_json("_apis/projects")
        projects = data.get("value", [])
        log.debug("azure_devops.projects", count=len(projects))

        repositories: list[Repository] = []
        for project in projects[:limit]:
            name = project.get("name") or project.get("id")
            try:
                repositories.extend(await self._project_repositories(project.get("id") or name))
            except httpx.HTTPError as exc:
                log.warning("azure_devops.project_failed", project=name, error=str(exc))
                continue
            if len(repositories) >= limit:
                log.warning("azure_devops.repository_limit", limit=limit)
                break
        return repositories

    async def _project_repositories(self, project: str) -> list[Repository]:
        data = await self._get_json(f"{project}/_apis/git/repositories")
        repos = [self._to_repository(item) for item in data.get("value", [])]
        log.debug("azure_devops.project_repositories", project=project, count=len(repos))
        return repos

    @staticmethod
    def _to_repository(item: dict[str, Any]) -> Repository:
        project = item.get("project") or {}
        return Repository(
            name=item.get("name", ""),
            id=item.get("id"),
            project=project.get("name") or project.get("id"),
            is_disabled=bool(item.get("isDisabled", False)),
        )

    def _apply_include(self, repositories: list[Repository]) -> list[Repository]:
        ordered: list[Repository] = []
        seen: set[str] = set()
        for rx in self._include_repos:
            matched = False
            for repo in repositories:
                if not rx.search(repo.name):
                    continue
                matched = True
                if repo.name.lower() not in seen:
                    seen.add(repo.name.lower())
                    ordered.append(repo)
            if not matched:
                log.warning("azure_devops.include_unmatched", pattern=rx.pattern)
        log.debug("azure_devops.included", count=len(ordered))
        return ordered

    def _is_excluded_project(self, path: str) -> bool:
        return any(rx.search(path) for rx in self._exclude_projects)

    async def _repository_items(self, repository: Repository) -> list[RepositoryFile]:
        cached = self._items.get(repository.cache_key)
        if cached is not None:
            return cached

        data = await self._get_json(
            self._repo_url(repository, "items"),
            {"scopePath": "/", "recursionLevel": "Full"},
        )
        files: list[RepositoryFile] = []
        for item in data.get("value", []):
            path = item.get("path")
            if not path or item.get("isFolder") or item.get("gitObjectType") == "tree":
                continue
            kind = match_kind(path)
            if kind is None:
                continue
            if kind == PROJECT_FILE and self._is_excluded_project(path):
                log.debug("azure_devops.project_excluded", repository=repository.name, path=path)
                continue
            files.append(RepositoryFile(repository=repository.name, path=path, kind=kind))

        files.sort(key=lambda f: f.path)
        self._items[repository.cache_key] = files
        return files

    def _repo_url(self, repository: Repository, resource: str) -> str:
        ident = repository.id or repository.name
        if repository.project:
            return f"{repository.project}/_apis/git/repositories/{ident}/{resource}"
        return f"_apis/git/repositories/{ident}/{resource}"

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._request_with_retry(url, params)
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"{url}: expected a JSON object")
        return data

    async def _request_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        allow_missing: bool = False,
    ) -> httpx.Response | None:
        """GET with exponential backoff on 5xx and timeout errors."""
        query = {"api-version": _API_VERSION, **(params or {})}
        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                resp = await self._client.get(url, params=query)
                if allow_missing and resp.status_code == 404:
                    return None
                if resp.status_code < 500:
                    resp.raise_for_status()
                    return resp

                log.warning(
                    "azure_devops.server_error",
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
                last_exc = httpx.HTTPStatusError(
                    f"{resp.status_code}", request=resp.request, response=resp
                )
            except httpx.TimeoutException as exc:
                log.warning(
                    "azure_devops.timeout",
                    url=url,
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                )
                last_exc = exc

            if attempt < _MAX_RETRIES - 1:
                await asyncio.sleep(_RETRY_BASE_DELAY * (2**attempt))

        raise last_exc  # type: ignore[misc]
