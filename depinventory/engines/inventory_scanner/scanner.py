"""InventoryScanner: reconcile package declarations across repositories and enrich them once."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from depinventory.engines.inventory_scanner.gateway import SourceControlGateway
from depinventory.engines.inventory_scanner.models import (
    CENTRAL_VERSIONS,
    PACKAGES_CONFIG,
    CentralVersionResult,
    Outcome,
    OverridePolicy,
    PackageDeclaration,
    PinnedPackage,
    Repository,
    RepositoryFile,
    RepositoryScan,
    ScanAccumulator,
    ScanOptions,
    ScanResult,
)
from depinventory.engines.inventory_scanner.overrides import (
    filter_declarations,
    read_override_policy,
)
from depinventory.engines.inventory_scanner.parsers.central_versions import (
    CentralVersionsParser,
    merge_central_versions,
)
from depinventory.engines.inventory_scanner.parsers.packages_config import (
    PackagesConfigExtractor,
    find_colocated_project_file,
)
from depinventory.engines.inventory_scanner.parsers.project_file import ProjectFileExtractor
from depinventory.exceptions import ScanError

if TYPE_CHECKING:
    from depinventory.engines.inventory_scanner.nuget_resolver import NuGetResolver

log = structlog.get_logger("depinventory.engine")


def build_pinned_lookup(pinned: list[PinnedPackage]) -> dict[str, str | None]:
    """Map lower-cased package name to pinned version; later entries win."""
    return {p.package_name.lower(): p.version for p in pinned}


class InventoryScanner:
    """Scan every repository a gateway exposes and fold the results.

    Per-file and per-repository failures are logged, recorded as outcomes
    and skipped; only repository enumeration failure aborts the run.
    """

    def __init__(
        self,
        gateway: SourceControlGateway,
        options: ScanOptions | None = None,
        resolver: NuGetResolver | None = None,
    ) -> None:
        self._gateway = gateway
        self._options = options or ScanOptions()
        self._resolver = resolver
        self._manifests = ProjectFileExtractor(self._options.exclusion)
        self._central = CentralVersionsParser()
        self._legacy = PackagesConfigExtractor()

    async def scan(self, cancel_event: asyncio.Event | None = None) -> ScanResult:
        try:
            repositories = await self._gateway.list_repositories()
        except Exception as exc:
            raise ScanError(f"repository enumeration failed: {exc}") from exc

        log.info("scanner.started", repositories=len(repositories))
        acc = ScanAccumulator()
        cancelled = False

        if self._options.max_concurrency <= 1:
            for repo in repositories:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                acc.fold(await self._scan_repository(repo))
        else:
            sem = asyncio.Semaphore(self._options.max_concurrency)

            async def _bounded(repo: Repository) -> RepositoryScan | None:
                async with sem:
                    if cancel_event is not None and cancel_event.is_set():
                        return None
                    return await self._scan_repository(repo)

            partials = await asyncio.gather(*(_bounded(r) for r in repositories))
            for partial in partials:
                if partial is None:
                    cancelled = True
                    continue
                acc.fold(partial)

        if cancelled:
            log.warning("scanner.cancelled", completed=acc.repositories_scanned)

        declarations, registry_stats = await self._enrich(acc)

        log.info(
            "scanner.completed",
            repositories=acc.repositories_scanned,
            project_files=acc.total_project_files,
            declarations=len(declarations),
            problems=len(acc.diagnostics),
        )
        return ScanResult(
            declarations=declarations,
            overrides=dict(acc.overrides),
            pinned=build_pinned_lookup(self._options.pinned_packages),
            diagnostics=list(acc.diagnostics),
            repositories_scanned=acc.repositories_scanned,
            total_project_files=acc.total_project_files,
            cancelled=cancelled,
            registry_stats=registry_stats,
        )

    # ── per repository ─────────────────────────────────────────────────────

    async def _scan_repository(self, repo: Repository) -> RepositoryScan:
        partial = RepositoryScan(repository=repo)
        try:
            await self._collect(repo, partial)
        except Exception as exc:
            log.warning("scanner.repository_failed", repository=repo.name, error=str(exc))
            partial.outcomes.append(
                Outcome("repository", repo.name, repo.name, "failed", reason=str(exc))
            )
        else:
            if partial.project_files:
                partial.outcomes.append(
                    Outcome(
                        "repository",
                        repo.name,
                        repo.name,
                        "ok",
                        declarations=tuple(partial.declarations),
                    )
                )
        return partial

    async def _collect(self, repo: Repository, partial: RepositoryScan) -> None:
        gateway = self._gateway

        if not self._options.ignore_overrides:
            partial.overrides = await self._read_overrides(repo, partial)

        project_files = await gateway.list_project_files(repo)
        partial.project_files = len(project_files)
        if not project_files:
            log.info("scanner.no_project_files", repository=repo.name)
            partial.outcomes.append(
                Outcome("repository", repo.name, repo.name, "skipped", reason="no project files")
            )
            return

        management = await gateway.list_management_files(
            repo, include_legacy=self._options.include_legacy_files
        )
        central = await self._read_central(
            repo, [f for f in management if f.kind == CENTRAL_VERSIONS], partial
        )

        for project_file in project_files:
            outcome = await self._scan_project_file(repo, project_file, central, partial.overrides)
            partial.outcomes.append(outcome)
            partial.declarations.extend(outcome.declarations)

        if self._options.include_legacy_files:
            project_paths = [f.path for f in project_files]
            for legacy in (f for f in management if f.kind == PACKAGES_CONFIG):
                outcome = await self._scan_legacy_file(
                    repo, legacy, project_paths, partial.declarations, partial.overrides
                )
                partial.outcomes.append(outcome)
                partial.declarations.extend(outcome.declarations)

    async def _read_overrides(
        self, repo: Repository, partial: RepositoryScan
    ) -> OverridePolicy | None:
        try:
            policy = await read_override_policy(self._gateway, repo)
        except Exception as exc:
            log.warning("scanner.overrides_failed", repository=repo.name, error=str(exc))
            partial.outcomes.append(
                Outcome("overrides", repo.name, repo.name, "failed", reason=str(exc))
            )
            return None
        if policy is None:
            log.debug("scanner.no_overrides", repository=repo.name)
        return policy

    async def _read_central(
        self, repo: Repository, candidates: list[RepositoryFile], partial: RepositoryScan
    ) -> CentralVersionResult | None:
        if not candidates:
            return None
        central_file = min(candidates, key=lambda f: f.path)
        try:
            content = await self._gateway.fetch_content(repo, central_file)
            result = self._central.parse(content, central_file.path)
        except Exception as exc:
            log.warning(
                "scanner.file_failed",
                repository=repo.name,
                file=central_file.path,
                error=str(exc),
            )
            partial.outcomes.append(
                Outcome(CENTRAL_VERSIONS, repo.name, central_file.path, "failed", reason=str(exc))
            )
            return None

        if not result.centrally_managed:
            log.debug("scanner.central_inactive", repository=repo.name, file=central_file.path)
            return None
        log.debug(
            "scanner.central_active",
            repository=repo.name,
            file=central_file.path,
            versions=len(result.versions),
        )
        return result

    async def _scan_project_file(
        self,
        repo: Repository,
        project_file: RepositoryFile,
        central: CentralVersionResult | None,
        policy: OverridePolicy | None,
    ) -> Outcome:
        try:
            content = await self._gateway.fetch_content(repo, project_file)
            if not content or not content.strip():
                return Outcome(
                    "project-file", repo.name, project_file.path, "skipped", reason="empty file"
                )

            decls = self._manifests.extract(
                content, repo.name, project_file.path, repo.project_name
            )
            if central is not None:
                decls = merge_central_versions(decls, central.versions, central.file_path)
            if policy is not None:
                decls, removed = filter_declarations(decls, policy)
                if removed:
                    log.info(
                        "scanner.overrides_applied",
                        repository=repo.name,
                        file=project_file.path,
                        removed=removed,
                    )
        except Exception as exc:
            log.warning(
                "scanner.file_failed",
                repository=repo.name,
                file=project_file.path,
                error=str(exc),
            )
            return Outcome(
                "project-file", repo.name, project_file.path, "failed", reason=str(exc)
            )
        return Outcome("project-file", repo.name, project_file.path, "ok", tuple(decls))

    async def _scan_legacy_file(
        self,
        repo: Repository,
        legacy: RepositoryFile,
        project_paths: list[str],
        accumulated: list[PackageDeclaration],
        policy: OverridePolicy | None,
    ) -> Outcome:
        project_path = find_colocated_project_file(legacy.path, project_paths)
        if project_path is None:
            log.debug("scanner.legacy_no_project", repository=repo.name, file=legacy.path)
            return Outcome(
                PACKAGES_CONFIG, repo.name, legacy.path, "skipped", reason="no co-located project"
            )

        try:
            content = await self._gateway.fetch_content(repo, legacy)
            decls = self._legacy.extract(
                content, repo.name, project_path, repo.project_name, self._options.exclusion
            )
            if policy is not None:
                decls, _ = filter_declarations(decls, policy)

            existing = {d.key for d in accumulated}
            fresh = [d for d in decls if d.key not in existing]
        except Exception as exc:
            log.warning(
                "scanner.file_failed",
                repository=repo.name,
                file=legacy.path,
                error=str(exc),
            )
            return Outcome(PACKAGES_CONFIG, repo.name, legacy.path, "failed", reason=str(exc))

        if len(fresh) != len(decls):
            log.debug(
                "scanner.legacy_duplicates",
                repository=repo.name,
                file=legacy.path,
                skipped=len(decls) - len(fresh),
            )
        return Outcome(PACKAGES_CONFIG, repo.name, legacy.path, "ok", tuple(fresh))

    # ── registry enrichment ────────────────────────────────────────────────

    async def _enrich(
        self, acc: ScanAccumulator
    ) -> tuple[list[PackageDeclaration], tuple[int, int, int] | None]:
        declarations = list(acc.declarations)
        if not self._options.resolve_registry or self._resolver is None or not declarations:
            return declarations, None

        distinct: dict[str, str] = {}
        for d in declarations:
            distinct.setdefault(d.package_name.lower(), d.package_name)
        names = list(distinct.values())
        log.info("scanner.resolving", packages=len(names))
        try:
            resolved = await self._resolver.resolve(names, declarations)
        except Exception as exc:
            log.warning("scanner.registry_failed", error=str(exc))
            acc.diagnostics.append(Outcome("registry", "", "", "failed", reason=str(exc)))
            return declarations, None

        lookup = {name.lower(): info for name, info in resolved.items()}
        enriched = [
            d.with_metadata(lookup[d.package_name.lower()])
            if d.package_name.lower() in lookup
            else d
            for d in declarations
        ]
        return enriched, self._resolver.cache_stats()


async def scan(
    gateway: SourceControlGateway,
    options: ScanOptions | None = None,
    resolver: NuGetResolver | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ScanResult:
    """Run one inventory scan over everything *gateway* exposes."""
    return await InventoryScanner(gateway, options, resolver).scan(cancel_event)
