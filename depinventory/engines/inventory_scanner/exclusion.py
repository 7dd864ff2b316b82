"""Package exclusion policy applied at extraction time."""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

log = structlog.get_logger("depinventory.engine")


@dataclass(frozen=True)
class ExclusionPolicy:
    """Prefix, exact-name and regex exclusions for package names.

    Matching is case-insensitive unless *case_sensitive* is set. Regex
    patterns are searched (not anchored); an invalid pattern is reported once
    per check and otherwise ignored.
    """

    prefixes: tuple[str, ...] = ()
    packages: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    case_sensitive: bool = False

    @classmethod
    def create(
        cls,
        prefixes: list[str] | None = None,
        packages: list[str] | None = None,
        patterns: list[str] | None = None,
        case_sensitive: bool = False,
    ) -> ExclusionPolicy:
        """Build a policy from loose lists, dropping blanks and duplicates."""
        return cls(
            prefixes=_unique(prefixes),
            packages=_unique(packages),
            patterns=_unique(patterns),
            case_sensitive=case_sensitive,
        )

    def should_exclude(self, package_name: str | None) -> bool:
        if not package_name or not package_name.strip():
            return True
        return (
            self._excluded_by_prefix(package_name)
            or self._excluded_by_name(package_name)
            or self._excluded_by_pattern(package_name)
        )

    def _fold(self, value: str) -> str:
        return value if self.case_sensitive else value.lower()

    def _excluded_by_prefix(self, package_name: str) -> bool:
        name = self._fold(package_name)
        return any(name.startswith(self._fold(p)) for p in self.prefixes)

    def _excluded_by_name(self, package_name: str) -> bool:
        name = self._fold(package_name)
        return any(name == self._fold(p) for p in self.packages)

    def _excluded_by_pattern(self, package_name: str) -> bool:
        flags = 0 if self.case_sensitive else re.IGNORECASE
        for pattern in self.patterns:
            try:
                if re.search(pattern, package_name, flags):
                    return True
            except re.error as exc:
                log.warning("exclusion.invalid_pattern", pattern=pattern, error=str(exc))
        return False


def _unique(values: list[str] | None) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values or []:
        value = value.strip()
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)
