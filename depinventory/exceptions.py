"""Custom exceptions for depinventory."""


class InventoryError(Exception):
    """Base exception for all inventory errors."""


class ConfigurationError(InventoryError):
    """Raised when settings are missing or invalid."""


class SourceControlError(InventoryError):
    """Raised when the source-control service cannot be queried."""


class ExtractionError(InventoryError):
    """Raised when a project file cannot be parsed by any strategy."""

    def __init__(self, file_path: str, message: str):
        self.file_path = file_path
        super().__init__(f"{file_path}: {message}")


class RegistryError(InventoryError):
    """Raised when a package registry returns an unusable response."""


class ScanError(InventoryError):
    """Raised when a scan cannot run at all (repository enumeration failed)."""
