"""Tests for the exclusion policy, file registry and declaration extractors."""

from __future__ import annotations

import pytest

from depinventory.engines.inventory_scanner.exclusion import ExclusionPolicy
from depinventory.engines.inventory_scanner.models import PackageDeclaration
from depinventory.engines.inventory_scanner.parsers.central_versions import (
    CentralVersionsParser,
    merge_central_versions,
)
from depinventory.engines.inventory_scanner.parsers.packages_config import (
    PackagesConfigExtractor,
    find_colocated_project_file,
)
from depinventory.engines.inventory_scanner.parsers.project_file import ProjectFileExtractor
from depinventory.engines.inventory_scanner.registry import (
    SOURCE_REGISTRY,
    discover_files,
    match_kind,
)
from depinventory.exceptions import ExtractionError


def _decl(name: str, version: str | None = "1.0.0", **overrides) -> PackageDeclaration:
    defaults = {
        "package_name": name,
        "version": version,
        "repository_name": "repo",
        "project_path": "/src/App/App.csproj",
        "project_name": "Platform",
        "line_number": 3,
    }
    defaults.update(overrides)
    return PackageDeclaration(**defaults)


# ── Exclusion policy ─────────────────────────────────────────────────────


class TestExclusionPolicy:
    def test_blank_names_excluded(self):
        policy = ExclusionPolicy()
        assert policy.should_exclude("")
        assert policy.should_exclude("   ")
        assert policy.should_exclude(None)

    def test_prefix_case_insensitive_by_default(self):
        policy = ExclusionPolicy.create(prefixes=["Microsoft."])
        assert policy.should_exclude("microsoft.extensions.Logging")
        assert not policy.should_exclude("Newtonsoft.Json")

    def test_exact_name(self):
        policy = ExclusionPolicy.create(packages=["Serilog"])
        assert policy.should_exclude("SERILOG")
        assert not policy.should_exclude("Serilog.Sinks.Console")

    def test_regex_search(self):
        policy = ExclusionPolicy.create(patterns=[r"\.Analyzers$"])
        assert policy.should_exclude("StyleCop.analyzers")
        assert not policy.should_exclude("Analyzers.Core")

    def test_case_sensitive(self):
        policy = ExclusionPolicy.create(prefixes=["Microsoft."], case_sensitive=True)
        assert policy.should_exclude("Microsoft.Extensions.Http")
        assert not policy.should_exclude("microsoft.extensions.http")

    def test_invalid_regex_ignored(self):
        policy = ExclusionPolicy.create(patterns=["(unclosed", "^Polly"])
        assert policy.should_exclude("Polly")
        assert not policy.should_exclude("Dapper")

    def test_create_drops_blanks_and_duplicates(self):
        policy = ExclusionPolicy.create(prefixes=[" System.", "", "System."])
        assert policy.prefixes == ("System.",)
        assert ExclusionPolicy.create() == ExclusionPolicy()


# ── File registry ────────────────────────────────────────────────────────


class TestRegistry:
    def test_all_sources_registered(self):
        assert {"project-file", "central-versions", "packages-config"} <= set(SOURCE_REGISTRY)

    @pytest.mark.parametrize(
        "path,kind",
        [
            ("/src/App/App.csproj", "project-file"),
            ("/src/Lib/Lib.VBPROJ", "project-file"),
            ("/src/F/F.fsproj", "project-file"),
            ("/Directory.Packages.props", "central-versions"),
            ("/directory.packages.props", "central-versions"),
            ("/src/Old/packages.config", "packages-config"),
            ("/src/App/App.sln", None),
            ("/Directory.Build.props", None),
        ],
    )
    def test_match_kind(self, path, kind):
        assert match_kind(path) == kind

    def test_discover_files_skips_build_output(self, tmp_path):
        (tmp_path / "src" / "App").mkdir(parents=True)
        (tmp_path / "src" / "App" / "App.csproj").write_text("<Project />")
        (tmp_path / "src" / "App" / "obj").mkdir()
        (tmp_path / "src" / "App" / "obj" / "Generated.csproj").write_text("<Project />")
        (tmp_path / "Directory.Packages.props").write_text("<Project />")

        found = discover_files(tmp_path)
        assert found == [
            ("central-versions", "/Directory.Packages.props"),
            ("project-file", "/src/App/App.csproj"),
        ]

    def test_discover_files_empty_repo(self, tmp_path):
        assert discover_files(tmp_path) == []


# ── Manifest extractor ───────────────────────────────────────────────────


class TestProjectFileExtractor:
    @pytest.fixture
    def extractor(self):
        return ProjectFileExtractor()

    def test_version_attribute(self, extractor, render_csproj):
        content = render_csproj(("Newtonsoft.Json", "13.0.3"), ("Serilog", "3.1.1"))
        decls = extractor.extract(content, "repo", "/App.csproj", "Platform")
        assert [(d.package_name, d.version) for d in decls] == [
            ("Newtonsoft.Json", "13.0.3"),
            ("Serilog", "3.1.1"),
        ]
        assert all(d.source_kind == "project-file" for d in decls)
        assert decls[0].project_name == "Platform"
        assert decls[0].line_number == 3

    def test_version_override_and_child_element(self, extractor):
        content = (
            "<Project>\n"
            "  <ItemGroup>\n"
            '    <PackageReference Include="Polly" VersionOverride="8.2.0" />\n'
            '    <PackageReference Include="Dapper">\n'
            "      <Version>2.1.24</Version>\n"
            "    </PackageReference>\n"
            '    <PackageReference Include="Central.Only" />\n'
            "  </ItemGroup>\n"
            "</Project>\n"
        )
        decls = extractor.extract(content, "repo", "/App.csproj")
        assert [(d.package_name, d.version) for d in decls] == [
            ("Polly", "8.2.0"),
            ("Dapper", "2.1.24"),
            ("Central.Only", None),
        ]
        assert decls[0].project_name == "Unknown"

    def test_msbuild_namespace(self, extractor):
        content = (
            '<Project xmlns="http://schemas.microsoft.com/developer/msbuild/2003">'
            '<ItemGroup><PackageReference Include="NUnit" Version="3.14.0" /></ItemGroup>'
            "</Project>"
        )
        decls = extractor.extract(content, "repo", "/Tests.csproj")
        assert [d.package_name for d in decls] == ["NUnit"]

    def test_duplicates_first_wins(self, extractor, render_csproj):
        content = render_csproj(("Serilog", "3.1.1"), ("serilog", "2.0.0"))
        decls = extractor.extract(content, "repo", "/App.csproj")
        assert len(decls) == 1
        assert decls[0].version == "3.1.1"

    def test_exclusion_applied(self, render_csproj):
        extractor = ProjectFileExtractor(ExclusionPolicy.create(prefixes=["Microsoft."]))
        content = render_csproj(("Microsoft.Extensions.Http", "8.0.0"), ("Polly", "8.2.0"))
        decls = extractor.extract(content, "repo", "/App.csproj")
        assert [d.package_name for d in decls] == ["Polly"]

    def test_regex_fallback_on_malformed_xml(self, extractor):
        content = (
            "<Project>\n"
            "  <ItemGroup>\n"
            '    <PackageReference Include="Serilog" Version="3.1.1" />\n'
            "  </ItemGroup>\n"
        )
        decls = extractor.extract(content, "repo", "/Broken.csproj")
        assert [(d.package_name, d.version, d.line_number) for d in decls] == [
            ("Serilog", "3.1.1", 3)
        ]

    def test_unreadable_raises_extraction_error(self, extractor, monkeypatch):
        def boom(*args, **kwargs):
            raise ValueError("regex exploded")

        monkeypatch.setattr(ProjectFileExtractor, "_extract_regex", staticmethod(boom))
        with pytest.raises(ExtractionError) as exc_info:
            extractor.extract("<Project", "repo", "/Broken.csproj")
        assert exc_info.value.file_path == "/Broken.csproj"

    def test_empty_content(self, extractor):
        assert extractor.extract("", "repo", "/App.csproj") == []
        assert extractor.extract("  \n", "repo", "/App.csproj") == []


# ── Central versions ─────────────────────────────────────────────────────


class TestCentralVersions:
    _PROPS = (
        "<Project>\n"
        "  <PropertyGroup>\n"
        "    <ManagePackageVersionsCentrally>True</ManagePackageVersionsCentrally>\n"
        "  </PropertyGroup>\n"
        "  <ItemGroup>\n"
        '    <PackageVersion Include="Newtonsoft.Json" Version="13.0.3" />\n'
        '    <PackageVersion Include="Serilog" Version="" />\n'
        "  </ItemGroup>\n"
        "</Project>\n"
    )

    def test_parse_active(self):
        result = CentralVersionsParser().parse(self._PROPS, "/Directory.Packages.props")
        assert result.centrally_managed
        assert result.versions == {"Newtonsoft.Json": "13.0.3"}
        assert result.file_path == "/Directory.Packages.props"

    def test_parse_inactive_without_switch(self):
        content = self._PROPS.replace("True", "false")
        assert not CentralVersionsParser().parse(content).centrally_managed

    @pytest.mark.parametrize("content", ["", "   ", "<Project><ItemGroup>"])
    def test_blank_or_malformed_is_inactive(self, content):
        result = CentralVersionsParser().parse(content)
        assert not result.centrally_managed
        assert result.versions == {}

    def test_merge_overrides_manifest_version(self):
        decls = [_decl("Newtonsoft.Json", "12.0.3"), _decl("Serilog", "3.1.1")]
        merged = merge_central_versions(
            decls, {"newtonsoft.json": "13.0.3"}, "/Directory.Packages.props"
        )
        assert merged[0].version == "13.0.3"
        assert merged[0].source_kind == "central-versions"
        assert merged[0].central_file_path == "/Directory.Packages.props"
        assert merged[1] is decls[1]

    def test_merge_preserves_count_order_and_fields(self):
        decls = [_decl("B", None, line_number=7), _decl("A", "1.0.0"), _decl("C", None)]
        merged = merge_central_versions(decls, {"B": "2.0.0", "C": "3.0.0"})
        assert [d.package_name for d in merged] == ["B", "A", "C"]
        assert merged[0].line_number == 7
        assert merged[0].project_path == decls[0].project_path
        assert merged[0].repository_name == decls[0].repository_name
        assert decls[0].version is None  # input untouched


# ── Legacy packages.config ───────────────────────────────────────────────


class TestPackagesConfig:
    _CONFIG = (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        "<packages>\n"
        '  <package id="EntityFramework" version="6.4.4" targetFramework="net48" />\n'
        '  <package id="" version="1.0.0" />\n'
        '  <package id="entityframework" version="6.0.0" />\n'
        '  <package id="log4net" version="2.0.15" />\n'
        "</packages>\n"
    )

    def test_extract(self):
        decls = PackagesConfigExtractor().extract(
            self._CONFIG, "repo", "/src/Old/Old.csproj", "Platform"
        )
        assert [(d.package_name, d.version, d.line_number) for d in decls] == [
            ("EntityFramework", "6.4.4", 1),
            ("log4net", "2.0.15", 2),
        ]
        assert all(d.source_kind == "packages-config" for d in decls)
        assert all(d.project_path == "/src/Old/Old.csproj" for d in decls)

    def test_exclusion_applied(self):
        policy = ExclusionPolicy.create(packages=["log4net"])
        decls = PackagesConfigExtractor().extract(
            self._CONFIG, "repo", "/src/Old/Old.csproj", "Platform", policy
        )
        assert [d.package_name for d in decls] == ["EntityFramework"]

    def test_malformed_returns_empty(self):
        assert PackagesConfigExtractor().extract("<packages>", "r", "/a.csproj", "p") == []

    def test_colocated_same_directory(self):
        paths = ["/src/App/App.csproj", "/src/Old/Old.csproj"]
        assert find_colocated_project_file("/src/Old/packages.config", paths) == (
            "/src/Old/Old.csproj"
        )

    def test_colocated_case_and_separator_insensitive(self):
        paths = ["/SRC/Old/Old.csproj"]
        assert find_colocated_project_file("\\src\\old\\packages.config", paths) == (
            "/SRC/Old/Old.csproj"
        )

    def test_colocated_none(self):
        assert find_colocated_project_file("/tools/packages.config", ["/src/A/A.csproj"]) is None

    def test_colocated_tie_break_is_first_path(self):
        paths = ["/src/Old/Zeta.csproj", "/src/Old/alpha.csproj", "/src/Old/Beta.vbproj"]
        assert find_colocated_project_file("/src/Old/packages.config", paths) == (
            "/src/Old/alpha.csproj"
        )
