"""Declaration extractors, registered on import."""

from depinventory.engines.inventory_scanner.parsers import (
    central_versions,  # noqa: F401
    packages_config,  # noqa: F401
    project_file,  # noqa: F401
)
