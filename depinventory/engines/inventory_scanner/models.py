"""Data models for the inventory scanner engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal

from depinventory.engines.inventory_scanner.exclusion import ExclusionPolicy

SourceKind = Literal["project-file", "central-versions", "packages-config"]

PROJECT_FILE: SourceKind = "project-file"
CENTRAL_VERSIONS: SourceKind = "central-versions"
PACKAGES_CONFIG: SourceKind = "packages-config"

OutcomeStatus = Literal["ok", "skipped", "failed"]
OutcomeScope = Literal[
    "repository",
    "overrides",
    "central-versions",
    "project-file",
    "packages-config",
    "registry",
]


@dataclass(frozen=True)
class Repository:
    """A source-control repository as returned by a gateway."""

    name: str
    id: str | None = None
    project: str | None = None
    is_disabled: bool = False

    @property
    def project_name(self) -> str:
        return self.project or "Unknown"

    @property
    def cache_key(self) -> tuple[str | None, str]:
        """Identity for per-repository caches; names repeat across projects."""
        if self.id:
            return (None, self.id)
        return (self.project, self.name)


@dataclass(frozen=True)
class RepositoryFile:
    """A file inside a repository; ``path`` is rooted (``/src/App/App.csproj``)."""

    repository: str
    path: str
    kind: SourceKind


@dataclass(frozen=True)
class SourceProjectMatch:
    """A scanned project that probably produces an internal package."""

    project_name: str
    repository_name: str
    project_path: str
    confidence: float


@dataclass(frozen=True)
class PackageMetadata:
    """Registry facts attached to a declaration during enrichment."""

    package_name: str
    on_nuget_org: bool = False
    package_url: str | None = None
    description: str | None = None
    authors: str | None = None
    project_url: str | None = None
    published: datetime | None = None
    license_url: str | None = None
    icon_url: str | None = None
    tags: tuple[str, ...] = ()
    is_deprecated: bool = False
    deprecation_message: str | None = None
    source_projects: tuple[SourceProjectMatch, ...] = ()
    latest_version: str | None = None
    resolved_version: str | None = None
    is_outdated: bool = False
    is_vulnerable: bool = False
    vulnerabilities: tuple[str, ...] = ()
    feed_name: str | None = None
    available_versions: tuple[str, ...] = ()

    @property
    def found(self) -> bool:
        return self.feed_name is not None


@dataclass(frozen=True)
class PackageDeclaration:
    """One (package, version, project, repository) tuple from any source file.

    Instances are never modified in place; use :meth:`with_version` and
    :meth:`with_metadata` to derive updated copies.
    """

    package_name: str
    version: str | None
    repository_name: str
    project_path: str
    project_name: str = "Unknown"
    line_number: int = 0
    source_kind: SourceKind = PROJECT_FILE
    central_file_path: str | None = None
    metadata: PackageMetadata | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Dedup identity: (project path, package name), case-insensitive."""
        return (self.project_path.lower(), self.package_name.lower())

    def with_version(
        self,
        version: str,
        source_kind: SourceKind = CENTRAL_VERSIONS,
        central_file_path: str | None = None,
    ) -> PackageDeclaration:
        return replace(
            self,
            version=version,
            source_kind=source_kind,
            central_file_path=central_file_path,
        )

    def with_metadata(self, metadata: PackageMetadata) -> PackageDeclaration:
        return replace(self, metadata=metadata)


@dataclass(frozen=True)
class CentralVersionResult:
    """Parsed ``Directory.Packages.props``.

    ``versions`` keys keep their declared casing; consumers match them
    case-insensitively.
    """

    centrally_managed: bool
    versions: dict[str, str] = field(default_factory=dict)
    file_path: str | None = None


@dataclass(frozen=True)
class OverridePolicy:
    """Repository override rules read from a Renovate configuration.

    Name matching is always case-insensitive: sets hold lower-cased names.
    """

    ignored: frozenset[str] = frozenset()
    disabled: frozenset[str] = frozenset()
    disabled_patterns: tuple[re.Pattern[str], ...] = ()
    reviewers: tuple[str, ...] = ()
    package_reviewers: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def is_excluded(self, package_name: str) -> bool:
        name = package_name.lower()
        if name in self.ignored or name in self.disabled:
            return True
        return any(p.search(package_name) for p in self.disabled_patterns)


@dataclass(frozen=True)
class PinnedPackage:
    """A package held at a version; ``version=None`` pins the version in use."""

    package_name: str
    version: str | None = None


@dataclass(frozen=True)
class Feed:
    name: str
    url: str


@dataclass(frozen=True)
class FeedAuth:
    feed_name: str
    pat: str | None = None
    username: str | None = None


@dataclass
class ScanOptions:
    """Switches controlling one scan run."""

    exclusion: ExclusionPolicy = field(default_factory=ExclusionPolicy)
    resolve_registry: bool = False
    include_legacy_files: bool = False
    ignore_overrides: bool = False
    pinned_packages: list[PinnedPackage] = field(default_factory=list)
    max_concurrency: int = 1


@dataclass(frozen=True)
class Outcome:
    """Result of one unit of scan work (a file, a repository, a lookup)."""

    scope: OutcomeScope
    repository: str
    target: str
    status: OutcomeStatus
    declarations: tuple[PackageDeclaration, ...] = ()
    reason: str | None = None


@dataclass
class RepositoryScan:
    """Per-repository partial accumulator, folded into the run at the end."""

    repository: Repository
    project_files: int = 0
    declarations: list[PackageDeclaration] = field(default_factory=list)
    overrides: OverridePolicy | None = None
    outcomes: list[Outcome] = field(default_factory=list)


@dataclass
class ScanAccumulator:
    """Run-scoped mutable state, owned by a single ``scan()`` call."""

    total_project_files: int = 0
    repositories_scanned: int = 0
    declarations: list[PackageDeclaration] = field(default_factory=list)
    overrides: dict[str, OverridePolicy] = field(default_factory=dict)
    diagnostics: list[Outcome] = field(default_factory=list)

    def fold(self, partial: RepositoryScan) -> None:
        self.repositories_scanned += 1
        self.total_project_files += partial.project_files
        self.declarations.extend(partial.declarations)
        if partial.overrides is not None:
            self.overrides[partial.repository.name] = partial.overrides
        self.diagnostics.extend(o for o in partial.outcomes if o.status != "ok")


@dataclass
class ScanResult:
    """Result of a full scan run."""

    declarations: list[PackageDeclaration]
    overrides: dict[str, OverridePolicy]
    pinned: dict[str, str | None] = field(default_factory=dict)
    diagnostics: list[Outcome] = field(default_factory=list)
    repositories_scanned: int = 0
    total_project_files: int = 0
    cancelled: bool = False
    registry_stats: tuple[int, int, int] | None = None
