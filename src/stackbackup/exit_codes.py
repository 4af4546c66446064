"""Process exit codes shared by the CLI and the backup service."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes returned by ``stackbackup`` commands."""

    OK = 0
    CONFIG = 1
    VALIDATION = 2
    BACKUP = 3
    DOCKER = 4
    SIGNAL = 5
    LOCK = 6


__all__ = ["ExitCode"]
