"""Environment-driven settings for gateways, feeds and scan options."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from urllib.parse import urlparse

from depinventory.engines.inventory_scanner.models import Feed, ScanOptions
from depinventory.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}


def _env_str(key: str, default: str | None = None) -> str | None:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(key: str, default: int) -> int:
    raw = _env_str(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def _env_bool(key: str, default: bool = False) -> bool:
    raw = _env_str(key)
    if raw is None:
        return default
    return raw.lower() in _TRUE


def _env_list(key: str) -> list[str]:
    raw = _env_str(key)
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class AzureDevOpsSettings:
    """Connection and filtering settings for an Azure DevOps organisation."""

    organization_url: str
    personal_access_token: str
    project: str | None = None
    max_repositories: int = 100
    include_archived: bool = False
    exclude_repositories: list[str] = field(default_factory=list)
    include_repositories: list[str] = field(default_factory=list)
    exclude_project_patterns: list[str] = field(default_factory=list)
    case_sensitive_project_filters: bool = False

    def validate(self) -> None:
        parsed = urlparse(self.organization_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"organization URL must be absolute, got {self.organization_url!r}"
            )
        if not self.personal_access_token:
            raise ConfigurationError("a personal access token is required")
        if self.max_repositories <= 0:
            raise ConfigurationError("max repositories must be greater than zero")
        for pattern in (
            self.exclude_repositories
            + self.include_repositories
            + self.exclude_project_patterns
        ):
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigurationError(f"invalid pattern {pattern!r}: {exc}") from exc


def load_azure_devops_settings() -> AzureDevOpsSettings:
    """Build and validate :class:`AzureDevOpsSettings` from the environment.

    Variables:
        AZURE_DEVOPS_ORG_URL, AZURE_DEVOPS_PAT, AZURE_DEVOPS_PROJECT
        DEPINVENTORY_MAX_REPOSITORIES            (default 100)
        DEPINVENTORY_INCLUDE_ARCHIVED            (default false)
        DEPINVENTORY_EXCLUDE_REPOSITORIES        comma-separated regexes
        DEPINVENTORY_INCLUDE_REPOSITORIES        comma-separated regexes
        DEPINVENTORY_EXCLUDE_PROJECT_PATTERNS    comma-separated regexes
        DEPINVENTORY_CASE_SENSITIVE_PROJECT_FILTERS
    """
    settings = AzureDevOpsSettings(
        organization_url=_env_str("AZURE_DEVOPS_ORG_URL", "") or "",
        personal_access_token=_env_str("AZURE_DEVOPS_PAT", "") or "",
        project=_env_str("AZURE_DEVOPS_PROJECT"),
        max_repositories=_env_int("DEPINVENTORY_MAX_REPOSITORIES", 100),
        include_archived=_env_bool("DEPINVENTORY_INCLUDE_ARCHIVED"),
        exclude_repositories=_env_list("DEPINVENTORY_EXCLUDE_REPOSITORIES"),
        include_repositories=_env_list("DEPINVENTORY_INCLUDE_REPOSITORIES"),
        exclude_project_patterns=_env_list("DEPINVENTORY_EXCLUDE_PROJECT_PATTERNS"),
        case_sensitive_project_filters=_env_bool(
            "DEPINVENTORY_CASE_SENSITIVE_PROJECT_FILTERS"
        ),
    )
    settings.validate()
    return settings


def parse_feeds(raw: str | None) -> list[Feed]:
    """Parse ``name=url;name=url``. A bare URL is named after its host."""
    feeds: list[Feed] = []
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, url = entry.partition("=")
        if not sep:
            name, url = urlparse(entry).netloc or entry, entry
        name, url = name.strip(), url.strip()
        if not urlparse(url).scheme:
            raise ConfigurationError(f"feed {name!r} has no absolute URL: {url!r}")
        feeds.append(Feed(name=name, url=url))
    return feeds


def load_feeds() -> list[Feed]:
    return parse_feeds(_env_str("DEPINVENTORY_NUGET_FEEDS"))


def load_scan_options(**overrides: object) -> ScanOptions:
    """Default :class:`ScanOptions` with concurrency from the environment."""
    options = ScanOptions(max_concurrency=max(1, _env_int("DEPINVENTORY_SCAN_CONCURRENCY", 1)))
    for key, value in overrides.items():
        if not hasattr(options, key):
            raise ConfigurationError(f"unknown scan option {key!r}")
        setattr(options, key, value)
    return options
