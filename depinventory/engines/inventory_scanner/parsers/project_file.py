"""Extractor for SDK-style project files (.csproj, .vbproj, .fsproj)."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET

import structlog

from depinventory.engines.inventory_scanner.exclusion import ExclusionPolicy
from depinventory.engines.inventory_scanner.models import PROJECT_FILE, PackageDeclaration
from depinventory.engines.inventory_scanner.registry import register_source
from depinventory.exceptions import ExtractionError

log = structlog.get_logger("depinventory.engine")

# Fallback for files that are not well-formed XML.
_PACKAGE_REFERENCE_RE = re.compile(
    r"<PackageReference\s+[^>]*Include\s*=\s*[\"']([^\"']+)[\"'][^>]*>",
    re.IGNORECASE,
)
_VERSION_ATTR_RE = re.compile(r"\bVersion\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)


def _local_name(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def _line_number(lines: list[str], package_name: str) -> int:
    """1-based line carrying ``Include="<name>"``, or 0 when not found."""
    needles = (f'Include="{package_name}"', f"Include='{package_name}'")
    for i, line in enumerate(lines, start=1):
        if any(n in line for n in needles):
            return i
    return 0


class ProjectFileExtractor:
    kind = PROJECT_FILE
    file_patterns = ["*.csproj", "*.vbproj", "*.fsproj"]

    def __init__(self, exclusion: ExclusionPolicy | None = None) -> None:
        self._exclusion = exclusion or ExclusionPolicy()

    def extract(
        self,
        content: str,
        repository_name: str,
        file_path: str,
        project_name: str | None = None,
    ) -> list[PackageDeclaration]:
        """Extract ``PackageReference`` declarations from a project file.

        Excluded packages are dropped and repeated references to the same
        package (e.g. in two ``ItemGroup``s) collapse to the first one.
        Raises :class:`ExtractionError` only when neither XML nor the regex
        fallback can read the file.
        """
        if not content or not content.strip():
            return []

        owner = project_name or "Unknown"
        try:
            raw = self._extract_xml(content, repository_name, file_path, owner)
        except ET.ParseError as exc:
            log.warning(
                "project_file.xml_failed", file=file_path, error=str(exc), fallback="regex"
            )
            try:
                raw = self._extract_regex(content, repository_name, file_path, owner)
            except Exception as regex_exc:
                raise ExtractionError(
                    file_path, "both XML and regex parsing failed"
                ) from regex_exc

        kept = [d for d in raw if not self._exclusion.should_exclude(d.package_name)]

        seen: set[str] = set()
        unique: list[PackageDeclaration] = []
        for decl in kept:
            name = decl.package_name.lower()
            if name in seen:
                continue
            seen.add(name)
            unique.append(decl)

        duplicates = len(kept) - len(unique)
        if duplicates:
            log.warning("project_file.duplicates_removed", file=file_path, count=duplicates)
        log.debug(
            "project_file.extracted",
            file=file_path,
            total=len(raw),
            kept=len(unique),
            excluded=len(raw) - len(kept),
            duplicates=duplicates,
        )
        return unique

    @staticmethod
    def _extract_xml(
        content: str, repository_name: str, file_path: str, project_name: str
    ) -> list[PackageDeclaration]:
        root = ET.fromstring(content)
        lines = content.splitlines()
        decls: list[PackageDeclaration] = []
        for el in root.iter():
            if not isinstance(el.tag, str) or _local_name(el.tag) != "PackageReference":
                continue
            name = (el.get("Include") or "").strip()
            if not name:
                continue
            version = el.get("Version") or el.get("VersionOverride")
            if version is None:
                for child in el:
                    if _local_name(child.tag) == "Version" and child.text:
                        version = child.text.strip() or None
                        break
            decls.append(
                PackageDeclaration(
                    package_name=name,
                    version=version,
                    repository_name=repository_name,
                    project_path=file_path,
                    project_name=project_name,
                    line_number=_line_number(lines, name),
                )
            )
        return decls

    @staticmethod
    def _extract_regex(
        content: str, repository_name: str, file_path: str, project_name: str
    ) -> list[PackageDeclaration]:
        decls: list[PackageDeclaration] = []
        for i, line in enumerate(content.split("\n"), start=1):
            for m in _PACKAGE_REFERENCE_RE.finditer(line):
                version_match = _VERSION_ATTR_RE.search(line)
                decls.append(
                    PackageDeclaration(
                        package_name=m.group(1).strip(),
                        version=version_match.group(1) if version_match else None,
                        repository_name=repository_name,
                        project_path=file_path,
                        project_name=project_name,
                        line_number=i,
                    )
                )
        return decls


register_source(ProjectFileExtractor())
