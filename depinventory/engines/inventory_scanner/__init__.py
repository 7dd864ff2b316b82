"""Inventory scanner engine: collect NuGet package declarations across repositories."""

from depinventory.engines.inventory_scanner.exclusion import ExclusionPolicy
from depinventory.engines.inventory_scanner.gateway import LocalGateway, SourceControlGateway
from depinventory.engines.inventory_scanner.models import (
    PackageDeclaration,
    PinnedPackage,
    ScanOptions,
    ScanResult,
)
from depinventory.engines.inventory_scanner.scanner import InventoryScanner, scan

__all__ = [
    "ExclusionPolicy",
    "InventoryScanner",
    "LocalGateway",
    "PackageDeclaration",
    "PinnedPackage",
    "ScanOptions",
    "ScanResult",
    "SourceControlGateway",
    "scan",
]
