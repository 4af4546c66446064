"""stackbackup package bootstrap.

Exposes the package version used by the CLI, the operations log and the
Hatch build backend.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Hatch reads the version from this module.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
