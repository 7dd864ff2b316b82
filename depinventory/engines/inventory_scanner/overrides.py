"""Renovate configuration as a repository override policy."""

from __future__ import annotations

import re

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from depinventory.engines.inventory_scanner.gateway import SourceControlGateway
from depinventory.engines.inventory_scanner.models import (
    OverridePolicy,
    PackageDeclaration,
    Repository,
)

log = structlog.get_logger("depinventory.engine")

# Probed in order; the first non-blank document wins.
KNOWN_PATHS = (
    "/renovate.json",
    "/.renovaterc",
    "/.renovaterc.json",
    "/.github/renovate.json",
)

_LINE_COMMENT_RE = re.compile(r'("(?:\\.|[^"\\])*")|//[^\n]*')
_BLOCK_COMMENT_RE = re.compile(r'("(?:\\.|[^"\\])*")|/\*.*?\*/', re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r'("(?:\\.|[^"\\])*")|,(\s*[}\]])')


class RenovatePackageRule(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    match_package_names: list[str] = Field(default_factory=list, alias="matchPackageNames")
    match_package_patterns: list[str] = Field(
        default_factory=list, alias="matchPackagePatterns"
    )
    enabled: bool | None = None
    reviewers: list[str] = Field(default_factory=list)


class RenovateConfig(BaseModel):
    """The subset of a Renovate configuration that affects the inventory."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    ignore_deps: list[str] = Field(default_factory=list, alias="ignoreDeps")
    package_rules: list[RenovatePackageRule] = Field(
        default_factory=list, alias="packageRules"
    )
    reviewers: list[str] = Field(default_factory=list)


def _strip_json_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments and trailing commas outside strings."""

    def _keep_string(m: re.Match) -> str:
        return m.group(1) if m.group(1) is not None else ""

    text = _BLOCK_COMMENT_RE.sub(_keep_string, text)
    text = _LINE_COMMENT_RE.sub(_keep_string, text)
    return _TRAILING_COMMA_RE.sub(
        lambda m: m.group(1) if m.group(1) is not None else m.group(2), text
    )


def parse_override_policy(content: str, repository_name: str) -> OverridePolicy:
    """Map a Renovate document onto an :class:`OverridePolicy`.

    A document that is not valid JSON or does not fit the schema yields an
    empty policy; the problem is logged as a warning.
    """
    try:
        config = RenovateConfig.model_validate_json(_strip_json_comments(content))
    except ValidationError as exc:
        log.warning(
            "overrides.parse_failed",
            repository=repository_name,
            error=str(exc).splitlines()[0],
        )
        return OverridePolicy()

    disabled: set[str] = set()
    patterns: list[re.Pattern[str]] = []
    package_reviewers: dict[str, tuple[str, ...]] = {}
    for rule in config.package_rules:
        if rule.enabled is False:
            disabled.update(n.lower() for n in rule.match_package_names)
            for pattern in rule.match_package_patterns:
                try:
                    patterns.append(re.compile(pattern, re.IGNORECASE))
                except re.error as exc:
                    log.warning(
                        "overrides.invalid_pattern",
                        repository=repository_name,
                        pattern=pattern,
                        error=str(exc),
                    )
        if rule.reviewers:
            for name in rule.match_package_names:
                package_reviewers[name.lower()] = tuple(rule.reviewers)

    policy = OverridePolicy(
        ignored=frozenset(n.lower() for n in config.ignore_deps),
        disabled=frozenset(disabled),
        disabled_patterns=tuple(patterns),
        reviewers=tuple(config.reviewers),
        package_reviewers=package_reviewers,
    )
    log.debug(
        "overrides.parsed",
        repository=repository_name,
        ignored=len(policy.ignored),
        disabled=len(policy.disabled),
        patterns=len(policy.disabled_patterns),
    )
    return policy


async def read_override_policy(
    gateway: SourceControlGateway, repository: Repository
) -> OverridePolicy | None:
    """Return the repository's override policy, or ``None`` when it has none."""
    for path in KNOWN_PATHS:
        content = await gateway.read_file(repository, path)
        if content and content.strip():
            log.debug("overrides.found", repository=repository.name, path=path)
            return parse_override_policy(content, repository.name)
    return None


def is_excluded(package_name: str, policy: OverridePolicy) -> bool:
    return policy.is_excluded(package_name)


def filter_declarations(
    declarations: list[PackageDeclaration], policy: OverridePolicy
) -> tuple[list[PackageDeclaration], int]:
    """Drop declarations the policy ignores or disables.

    Returns ``(kept, removed_count)``. Matching is case-insensitive.
    """
    kept = [d for d in declarations if not policy.is_excluded(d.package_name)]
    return kept, len(declarations) - len(kept)
