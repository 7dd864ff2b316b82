"""Parser for central package management files (Directory.Packages.props)."""

from __future__ import annotations

import xml.etree.ElementTree as ET

import structlog

from depinventory.engines.inventory_scanner.models import (
    CENTRAL_VERSIONS,
    CentralVersionResult,
    PackageDeclaration,
)
from depinventory.engines.inventory_scanner.registry import register_source

log = structlog.get_logger("depinventory.engine")


def _local_name(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


class CentralVersionsParser:
    kind = CENTRAL_VERSIONS
    file_patterns = ["Directory.Packages.props"]

    def parse(self, content: str | None, file_path: str | None = None) -> CentralVersionResult:
        """Read the CPM switch and every ``<PackageVersion Include Version>`` entry.

        Blank or malformed content yields an inactive, empty result.
        """
        empty = CentralVersionResult(centrally_managed=False, file_path=file_path)
        if not content or not content.strip():
            return empty

        try:
            root = ET.fromstring(content)
        except ET.ParseError as exc:
            log.warning("central_versions.parse_failed", file=file_path, error=str(exc))
            return empty

        managed = False
        versions: dict[str, str] = {}
        for el in root.iter():
            if not isinstance(el.tag, str):
                continue
            tag = _local_name(el.tag)
            if tag == "ManagePackageVersionsCentrally":
                if (el.text or "").strip().lower() == "true":
                    managed = True
            elif tag == "PackageVersion":
                name = (el.get("Include") or "").strip()
                version = (el.get("Version") or "").strip()
                if name and version:
                    versions[name] = version

        log.debug(
            "central_versions.parsed",
            file=file_path,
            managed=managed,
            entries=len(versions),
        )
        return CentralVersionResult(
            centrally_managed=managed, versions=versions, file_path=file_path
        )


def merge_central_versions(
    declarations: list[PackageDeclaration],
    versions: dict[str, str],
    central_file_path: str | None = None,
) -> list[PackageDeclaration]:
    """Apply centrally managed versions to manifest declarations.

    Every declaration whose package name (case-insensitive) has a central
    version is copied with that version; all others pass through. The input
    list is left untouched and order and count are preserved.
    """
    if not versions:
        return list(declarations)

    lookup = {name.lower(): version for name, version in versions.items()}
    merged: list[PackageDeclaration] = []
    for decl in declarations:
        central = lookup.get(decl.package_name.lower())
        if central is None:
            merged.append(decl)
        else:
            merged.append(decl.with_version(central, central_file_path=central_file_path))
    return merged


register_source(CentralVersionsParser())
