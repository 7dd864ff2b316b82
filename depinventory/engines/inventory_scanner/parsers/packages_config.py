"""Parser for legacy packages.config files."""

from __future__ import annotations

import posixpath
import xml.etree.ElementTree as ET
from collections.abc import Iterable

import structlog

from depinventory.engines.inventory_scanner.exclusion import ExclusionPolicy
from depinventory.engines.inventory_scanner.models import PACKAGES_CONFIG, PackageDeclaration
from depinventory.engines.inventory_scanner.registry import register_source

log = structlog.get_logger("depinventory.engine")


class PackagesConfigExtractor:
    kind = PACKAGES_CONFIG
    file_patterns = ["packages.config"]

    def extract(
        self,
        content: str | None,
        repository_name: str,
        project_path: str,
        project_name: str,
        exclusion: ExclusionPolicy | None = None,
    ) -> list[PackageDeclaration]:
        """Extract ``<package id version>`` entries, attributed to *project_path*.

        *project_path* is the co-located project file, so the entries join up
        with that project's own declarations. Malformed XML yields ``[]``.
        """
        if not content or not content.strip():
            return []

        try:
            root = ET.fromstring(content)
        except ET.ParseError as exc:
            log.warning("packages_config.parse_failed", project=project_path, error=str(exc))
            return []

        decls: list[PackageDeclaration] = []
        seen: set[str] = set()
        line = 1
        for el in root.iter("package"):
            package_id = (el.get("id") or "").strip()
            if not package_id:
                continue
            if exclusion is not None and exclusion.should_exclude(package_id):
                continue
            if package_id.lower() in seen:
                continue
            seen.add(package_id.lower())
            decls.append(
                PackageDeclaration(
                    package_name=package_id,
                    version=el.get("version"),
                    repository_name=repository_name,
                    project_path=project_path,
                    project_name=project_name,
                    line_number=line,
                    source_kind=PACKAGES_CONFIG,
                )
            )
            line += 1

        log.debug("packages_config.extracted", project=project_path, count=len(decls))
        return decls


def _directory(path: str) -> str:
    return posixpath.dirname(path.replace("\\", "/")).lower()


def find_colocated_project_file(
    packages_config_path: str, project_paths: Iterable[str]
) -> str | None:
    """Return the project file living in the same directory as a packages.config.

    Directories compare case-insensitively. When several project files share
    the directory, the lexicographically first path wins. ``None`` when no
    project file lives there.
    """
    directory = _directory(packages_config_path)
    candidates = [p for p in project_paths if _directory(p) == directory]
    if not candidates:
        return None
    return min(candidates, key=lambda p: (p.lower(), p))


register_source(PackagesConfigExtractor())
