"""NuGet dependency inventory across source-control repositories."""

__version__ = "0.1.0"
