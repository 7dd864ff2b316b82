#!/usr/bin/env python3
"""Standalone NuGet inventory scanner.

Usage:
    python scan_repos.py /path/to/checkouts                  # each sub-directory is a repository
    python scan_repos.py /path/to/repo --single              # scan one checked-out repository
    python scan_repos.py --azure-devops                      # settings from AZURE_DEVOPS_* env vars
    python scan_repos.py /path/to/checkouts --include-packages-config --resolve
    python scan_repos.py /path/to/checkouts --exclude-prefix Microsoft. --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from depinventory.core.config import load_azure_devops_settings, load_feeds, load_scan_options
from depinventory.core.logging import setup_logging
from depinventory.engines.inventory_scanner.azure_devops import AzureDevOpsGateway
from depinventory.engines.inventory_scanner.exclusion import ExclusionPolicy
from depinventory.engines.inventory_scanner.gateway import LocalGateway
from depinventory.engines.inventory_scanner.models import PinnedPackage, ScanResult
from depinventory.engines.inventory_scanner.nuget_resolver import NuGetResolver
from depinventory.engines.inventory_scanner.scanner import InventoryScanner
from depinventory.exceptions import InventoryError


def _parse_pin(value: str) -> PinnedPackage:
    name, _, version = value.partition("@")
    return PinnedPackage(package_name=name.strip(), version=version.strip() or None)


def _print_result(result: ScanResult, as_json: bool) -> None:
    decls = result.declarations
    if as_json:
        rows = [
            {
                "repository": d.repository_name,
                "project_path": d.project_path,
                "package_name": d.package_name,
                "version": d.version,
                "source_kind": d.source_kind,
                "central_file_path": d.central_file_path,
                "latest_version": d.metadata.latest_version if d.metadata else None,
                "is_outdated": d.metadata.is_outdated if d.metadata else None,
                "is_deprecated": d.metadata.is_deprecated if d.metadata else None,
                "is_vulnerable": d.metadata.is_vulnerable if d.metadata else None,
                "pinned": d.package_name.lower() in result.pinned,
            }
            for d in decls
        ]
        print(json.dumps(rows, indent=2))
        return

    if not decls:
        print("No package references found.")
        return

    by_project: dict[tuple[str, str], list] = {}
    for d in decls:
        by_project.setdefault((d.repository_name, d.project_path), []).append(d)

    print(
        f"Found {len(decls)} package references in {len(by_project)} project(s) "
        f"across {result.repositories_scanned} repositories\n"
    )
    for (repo, path), project_decls in sorted(by_project.items()):
        print(f"  {repo}:{path}")
        for d in project_decls:
            extra = f"  ({d.source_kind})" if d.source_kind != "project-file" else ""
            if d.metadata and d.metadata.is_outdated:
                extra += f"  -> {d.metadata.latest_version}"
            print(f"    {d.package_name} {d.version or ''}{extra}")
        print()

    if result.diagnostics:
        print(f"{len(result.diagnostics)} file(s) or repositories skipped or failed", file=sys.stderr)
    if result.registry_stats:
        total, found, missing = result.registry_stats
        print(f"Registry: {total} looked up, {found} on NuGet.org, {missing} elsewhere", file=sys.stderr)


async def _run(args: argparse.Namespace) -> ScanResult:
    options = load_scan_options(
        exclusion=ExclusionPolicy.create(
            prefixes=args.exclude_prefix,
            packages=args.exclude_package,
            patterns=args.exclude_pattern,
            case_sensitive=args.case_sensitive,
        ),
        resolve_registry=args.resolve,
        include_legacy_files=args.include_packages_config,
        ignore_overrides=args.ignore_renovate,
        pinned_packages=[_parse_pin(p) for p in args.pin],
    )
    if args.concurrency is not None:
        options.max_concurrency = max(1, args.concurrency)

    if args.azure_devops:
        gateway = AzureDevOpsGateway(load_azure_devops_settings())
    else:
        gateway = LocalGateway(Path(args.target).resolve(), single_repository=args.single)

    resolver: NuGetResolver | None = None
    try:
        if args.resolve:
            resolver = NuGetResolver(load_feeds())
        return await InventoryScanner(gateway, options, resolver).scan()
    finally:
        if resolver is not None:
            await resolver.close()
        if isinstance(gateway, AzureDevOpsGateway):
            await gateway.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inventory NuGet package references")
    parser.add_argument("target", nargs="?", default=".", help="Directory of checked-out repositories")
    parser.add_argument("--single", action="store_true", help="Treat TARGET as one repository")
    parser.add_argument("--azure-devops", action="store_true", help="Scan Azure DevOps instead of TARGET")
    parser.add_argument("--include-packages-config", action="store_true", help="Also read packages.config")
    parser.add_argument("--resolve", action="store_true", help="Look up packages on the NuGet feeds")
    parser.add_argument("--ignore-renovate", action="store_true", help="Ignore Renovate configuration")
    parser.add_argument("--exclude-prefix", action="append", default=[], metavar="P")
    parser.add_argument("--exclude-package", action="append", default=[], metavar="N")
    parser.add_argument("--exclude-pattern", action="append", default=[], metavar="R")
    parser.add_argument("--case-sensitive", action="store_true", help="Case-sensitive exclusions")
    parser.add_argument("--pin", action="append", default=[], metavar="NAME[@VER]")
    parser.add_argument("--concurrency", type=int, default=None, help="Repositories scanned at once")
    parser.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON")
    args = parser.parse_args()

    setup_logging()

    if not args.azure_devops and not Path(args.target).is_dir():
        print(f"Error: {args.target} is not a directory", file=sys.stderr)
        sys.exit(1)

    try:
        result = asyncio.run(_run(args))
    except InventoryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    _print_result(result, args.as_json)


if __name__ == "__main__":
    main()
