"""restic provider: repository access, snapshots, verification and retention."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import TextIO

from ..cancel import CancellationToken
from ..config import ResticConfig
from ..logging import StructuredLogger
from ..process import (
    CommandError,
    CommandOptions,
    CommandResult,
    command_exists,
    run_command,
)

BACKUP_MARKER_TAG = "docker-backup"
SELECTIVE_MARKER_TAG = "selective-backup"
MARKER_TAGS = (BACKUP_MARKER_TAG, SELECTIVE_MARKER_TAG)

CHECK_TIMEOUT = 30.0
LIST_TIMEOUT = 60.0


class ResticError(RuntimeError):
    """Raised when restic cannot be driven as requested."""


class BackupFailedError(ResticError):
    """Raised when creating a snapshot fails."""


class VerificationError(ResticError):
    """Raised when post-backup verification fails (advisory)."""


class RetentionError(ResticError):
    """Raised when forget/prune fails (advisory)."""


@dataclass(slots=True)
class Snapshot:
    """Snapshot metadata as reported by ``restic snapshots --json``."""

    id: str
    short_id: str
    time: str
    hostname: str = ""
    tags: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, payload: Mapping[str, object]) -> Snapshot:
        """Build a snapshot from one JSON object."""
        snapshot_id = str(payload.get("id") or "")
        short_id = str(payload.get("short_id") or snapshot_id[:8])
        tags = payload.get("tags") or []
        paths = payload.get("paths") or []
        return cls(
            id=snapshot_id,
            short_id=short_id,
            time=str(payload.get("time") or ""),
            hostname=str(payload.get("hostname") or ""),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
            paths=[str(path) for path in paths] if isinstance(paths, list) else [],
        )

    @property
    def directory_tag(self) -> str | None:
        """Return the first tag that is not one of the fixed marker tags."""
        for tag in self.tags:
            if tag not in MARKER_TAGS:
                return tag
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "short_id": self.short_id,
            "time": self.time,
            "hostname": self.hostname,
            "tags": list(self.tags),
            "paths": list(self.paths),
        }


@dataclass(slots=True)
class RestorePreview:
    """Latest snapshot for a tag together with its file listing."""

    snapshot: Snapshot
    listing: str


@dataclass(slots=True)
class ResticProvider:
    """Drive the ``restic`` binary for a single repository."""

    config: ResticConfig
    logger: StructuredLogger
    dry_run: bool = False
    sink: TextIO | None = None
    cancel: CancellationToken | None = None
    _env: dict[str, str] | None = field(default=None, init=False, repr=False)
    _temp_password_file: Path | None = field(default=None, init=False, repr=False)

    # Credentials -------------------------------------------------------
    def environment(self) -> dict[str, str]:
        """Return the environment overlay carrying repository credentials.

        An inline password is written to a private temporary file and passed
        by path; it is never placed in the environment itself.
        """
        if self._env is not None:
            return dict(self._env)
        env: dict[str, str] = {"RESTIC_REPOSITORY": self.config.repository}
        method = self.config.password_method()
        if method == "command":
            env["RESTIC_PASSWORD_COMMAND"] = str(self.config.password_command)
        elif method == "file":
            password_file = self.config.password_file
            if password_file is None or not password_file.is_file():
                raise ResticError(f"password file not found: {password_file}")
            env["RESTIC_PASSWORD_FILE"] = str(password_file)
        elif method == "inline":
            env["RESTIC_PASSWORD_FILE"] = str(self._write_password_file())
        self._env = env
        return dict(env)

    def cleanup(self) -> None:
        """Remove the temporary password file, if one was created."""
        path, self._temp_password_file = self._temp_password_file, None
        self._env = None
        if path is not None:
            path.unlink(missing_ok=True)

    def _write_password_file(self) -> Path:
        fd, name = tempfile.mkstemp(prefix="restic-pass-")
        path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(self.config.password))
            os.chmod(path, 0o600)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise ResticError(f"cannot create temporary password file: {exc}") from exc
        self._temp_password_file = path
        return path

    # Queries -------------------------------------------------------------
    def available(self) -> bool:
        """Return ``True`` when the restic binary is on ``PATH``."""
        return command_exists(self.config.restic_bin)

    def check_repository(self) -> None:
        """Raise :class:`ResticError` unless the repository can be listed."""
        if not self.available():
            raise ResticError(f"{self.config.restic_bin} not found in PATH")
        try:
            result = self._restic(["snapshots", "--quiet"], timeout=CHECK_TIMEOUT)
        except CommandError as exc:
            raise ResticError(f"cannot access restic repository: {exc}") from exc
        if not result.is_success:
            raise ResticError(f"cannot access restic repository: {result.describe()}")

    def list_snapshots(self, tag: str | None = None, limit: int = 0) -> list[Snapshot]:
        """Return snapshots, optionally filtered by *tag* and limited to the latest *limit*."""
        args = ["snapshots", "--json"]
        if tag:
            args.extend(["--tag", tag])
        if limit > 0:
            args.extend(["--latest", str(limit)])
        try:
            result = self._restic(args, timeout=LIST_TIMEOUT)
        except CommandError as exc:
            raise ResticError(f"cannot list snapshots: {exc}") from exc
        if not result.is_success:
            raise ResticError(f"cannot list snapshots: {result.describe()}")
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ResticError(f"cannot parse snapshots: {exc}") from exc
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ResticError("cannot parse snapshots: expected a JSON list")
        snapshots = [Snapshot.from_json(item) for item in payload if isinstance(item, Mapping)]
        return sorted(snapshots, key=lambda snapshot: snapshot.time)

    def latest_snapshot(self, tag: str) -> Snapshot | None:
        """Return the most recent snapshot carrying *tag*."""
        snapshots = self.list_snapshots(tag, 1)
        return snapshots[-1] if snapshots else None

    def restore_preview(self, tag: str) -> RestorePreview:
        """List the contents of the latest snapshot for *tag*."""
        snapshot = self.latest_snapshot(tag)
        if snapshot is None:
            raise ResticError(f"no snapshots found for: {tag}")
        try:
            result = self._restic(["ls", snapshot.short_id], timeout=LIST_TIMEOUT)
        except CommandError as exc:
            raise ResticError(f"cannot list snapshot contents: {exc}") from exc
        if not result.is_success:
            raise ResticError(f"cannot list snapshot contents: {result.describe()}")
        return RestorePreview(snapshot=snapshot, listing=result.stdout)

    def repository_stats(self) -> dict[str, object]:
        """Return ``restic stats --json`` output."""
        try:
            result = self._restic(["stats", "--json"], timeout=LIST_TIMEOUT)
        except CommandError as exc:
            raise ResticError(f"cannot get stats: {exc}") from exc
        if not result.is_success:
            raise ResticError(f"cannot get stats: {result.describe()}")
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ResticError(f"cannot parse stats: {exc}") from exc
        if not isinstance(payload, dict):
            raise ResticError("cannot parse stats: expected a JSON object")
        return payload

    # Mutations -----------------------------------------------------------
    def backup(self, path: Path, tag: str, hostname: str | None = None) -> None:
        """Create a snapshot of *path* tagged for *tag*."""
        self.logger.progress(f"Backing up directory: {tag}")
        if self.dry_run:
            self.logger.progress(f"[DRY RUN] Would back up {path} as {tag}")
            return
        args = [
            "backup",
            "--verbose",
            "--tag",
            BACKUP_MARKER_TAG,
            "--tag",
            SELECTIVE_MARKER_TAG,
            "--tag",
            tag,
            "--tag",
            date.today().isoformat(),
        ]
        host = hostname or self.config.hostname
        if host:
            args.extend(["--hostname", host])
        args.extend(["--one-file-system", "--exclude-caches", str(path)])
        try:
            result = self._restic(args, timeout=self.config.timeout, stream=True)
        except CommandError as exc:
            raise BackupFailedError(f"backup of {tag} failed: {exc}") from exc
        if not result.is_success:
            raise BackupFailedError(f"backup of {tag} failed with exit code {result.exit_code}")
        self.logger.success(f"Backup completed: {tag}")

    def verify(self, tag: str) -> None:
        """Verify the latest snapshot for *tag* at the configured depth."""
        verification = self.config.verification
        if not verification.enabled:
            return
        self.logger.progress(f"Verifying backup: {tag}")
        if self.dry_run:
            self.logger.progress(f"[DRY RUN] Would verify backup: {tag}")
            return
        try:
            snapshot = self.latest_snapshot(tag)
        except ResticError as exc:
            raise VerificationError(f"no snapshots found for verification: {exc}") from exc
        if snapshot is None:
            raise VerificationError("no snapshots found for verification")
        if verification.depth == "data":
            args = ["check", "--read-data", snapshot.short_id]
        else:
            args = ["ls", snapshot.short_id]
        try:
            result = self._restic(args, timeout=self.config.timeout)
        except CommandError as exc:
            raise VerificationError(f"verification of {tag} failed: {exc}") from exc
        if not result.is_success:
            raise VerificationError(f"verification of {tag} failed: {result.describe()}")
        self.logger.progress(f"Backup verification passed: {tag}")

    def apply_retention(self, tag: str, hostname: str | None = None) -> None:
        """Run ``forget --prune`` for *tag* using the configured keep counts."""
        retention = self.config.retention
        if not retention.auto_prune:
            return
        if not retention.has_policy():
            self.logger.warning("No retention policy configured")
            return
        self.logger.progress(f"Applying retention policy: {tag}")
        if self.dry_run:
            self.logger.progress(f"[DRY RUN] Would apply retention: {tag}")
            return
        args = ["forget", "--verbose", "--tag", tag]
        host = hostname or self.config.hostname
        if host:
            args.extend(["--hostname", host])
        for flag, value in (
            ("--keep-daily", retention.keep_daily),
            ("--keep-weekly", retention.keep_weekly),
            ("--keep-monthly", retention.keep_monthly),
            ("--keep-yearly", retention.keep_yearly),
        ):
            if value > 0:
                args.extend([flag, str(value)])
        args.append("--prune")
        try:
            result = self._restic(args, timeout=self.config.timeout, stream=True)
        except CommandError as exc:
            raise RetentionError(f"retention policy for {tag} failed: {exc}") from exc
        if not result.is_success:
            raise RetentionError(
                f"retention policy for {tag} failed with exit code {result.exit_code}"
            )
        self.logger.progress(f"Retention policy applied: {tag}")

    # ------------------------------------------------------------------
    def _restic(
        self,
        args: Sequence[str],
        *,
        timeout: float | None,
        stream: bool = False,
    ) -> CommandResult:
        options = CommandOptions(
            env=self.environment(),
            timeout=timeout,
            stream_stdout=stream,
            stream_stderr=stream,
            sink=self.sink,
            cancel=self.cancel,
        )
        return run_command(self.config.restic_bin, list(args), options)


__all__ = [
    "BackupFailedError",
    "MARKER_TAGS",
    "ResticError",
    "ResticProvider",
    "RestorePreview",
    "RetentionError",
    "Snapshot",
    "VerificationError",
]
