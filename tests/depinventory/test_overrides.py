"""Tests for the Renovate override reader and declaration filter."""

from __future__ import annotations

import pytest

from depinventory.engines.inventory_scanner.models import (
    OverridePolicy,
    PackageDeclaration,
    Repository,
)
from depinventory.engines.inventory_scanner.overrides import (
    filter_declarations,
    is_excluded,
    parse_override_policy,
    read_override_policy,
)


def _decl(name: str) -> PackageDeclaration:
    return PackageDeclaration(
        package_name=name,
        version="1.0.0",
        repository_name="repo",
        project_path="/App.csproj",
    )


_RENOVATE = """
{
  // shared preset
  "extends": ["config:recommended"],
  "ignoreDeps": ["Newtonsoft.Json"],
  "reviewers": ["team:platform"],
  /* rules */
  "packageRules": [
    {
      "matchPackageNames": ["Serilog"],
      "enabled": false,
    },
    {
      "matchPackagePatterns": ["^Microsoft\\\\.", "(broken"],
      "enabled": false
    },
    {
      "matchPackageNames": ["Polly"],
      "reviewers": ["alice"]
    },
  ],
}
"""


class TestParseOverridePolicy:
    def test_full_document(self):
        policy = parse_override_policy(_RENOVATE, "repo")
        assert policy.ignored == frozenset({"newtonsoft.json"})
        assert policy.disabled == frozenset({"serilog"})
        assert [p.pattern for p in policy.disabled_patterns] == ["^Microsoft\\."]
        assert policy.reviewers == ("team:platform",)
        assert policy.package_reviewers == {"polly": ("alice",)}

    def test_urls_in_strings_survive_comment_stripping(self):
        doc = '{"$schema": "https://docs.renovatebot.com/renovate-schema.json", "ignoreDeps": ["A"]}'
        assert parse_override_policy(doc, "repo").ignored == frozenset({"a"})

    @pytest.mark.parametrize("doc", ["not json", "[1, 2]", '{"ignoreDeps": "Serilog"}'])
    def test_invalid_document_yields_empty_policy(self, doc):
        policy = parse_override_policy(doc, "repo")
        assert policy == OverridePolicy()

    def test_matching_is_case_insensitive(self):
        policy = parse_override_policy(_RENOVATE, "repo")
        assert is_excluded("NEWTONSOFT.JSON", policy)
        assert is_excluded("serilog", policy)
        assert is_excluded("microsoft.Extensions.Http", policy)
        assert not is_excluded("Polly", policy)


class TestReadOverridePolicy:
    @pytest.mark.anyio
    async def test_first_known_path_wins(self, make_gateway):
        gateway = make_gateway(
            {
                "repo": {
                    "/.renovaterc": "   ",
                    "/.renovaterc.json": '{"ignoreDeps": ["A"]}',
                    "/.github/renovate.json": '{"ignoreDeps": ["B"]}',
                }
            }
        )
        policy = await read_override_policy(gateway, Repository(name="repo"))
        assert policy is not None
        assert policy.ignored == frozenset({"a"})
        probed = [path for _, path in gateway.fetched]
        assert probed == ["/renovate.json", "/.renovaterc", "/.renovaterc.json"]

    @pytest.mark.anyio
    async def test_no_document(self, make_gateway):
        gateway = make_gateway({"repo": {}})
        assert await read_override_policy(gateway, Repository(name="repo")) is None


class TestFilterDeclarations:
    def test_removes_ignored_disabled_and_pattern_matches(self):
        policy = parse_override_policy(_RENOVATE, "repo")
        decls = [
            _decl("newtonsoft.json"),
            _decl("Serilog"),
            _decl("Microsoft.Extensions.Http"),
            _decl("Polly"),
        ]
        kept, removed = filter_declarations(decls, policy)
        assert [d.package_name for d in kept] == ["Polly"]
        assert removed == 3

    def test_idempotent(self):
        policy = parse_override_policy(_RENOVATE, "repo")
        decls = [_decl("Serilog"), _decl("Polly"), _decl("Dapper")]
        once, _ = filter_declarations(decls, policy)
        twice, removed = filter_declarations(once, policy)
        assert twice == once
        assert removed == 0

    def test_empty_policy_keeps_everything(self):
        decls = [_decl("Serilog")]
        kept, removed = filter_declarations(decls, OverridePolicy())
        assert kept == decls
        assert removed == 0
