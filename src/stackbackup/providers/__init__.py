"""Wrappers around the external tools stackbackup drives."""
from __future__ import annotations

from .compose import ComposeError, ComposeProvider, StackState
from .rclone import RcloneError, RcloneProvider, RestoreVerification
from .restic import (
    BackupFailedError,
    ResticError,
    ResticProvider,
    RestorePreview,
    RetentionError,
    Snapshot,
    VerificationError,
)

__all__ = [
    "BackupFailedError",
    "ComposeError",
    "ComposeProvider",
    "RcloneError",
    "RcloneProvider",
    "ResticError",
    "ResticProvider",
    "RestorePreview",
    "RestoreVerification",
    "RetentionError",
    "Snapshot",
    "StackState",
    "VerificationError",
]
