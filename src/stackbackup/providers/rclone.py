"""rclone provider: mirror the restic repository to a remote and back."""
from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from ..cancel import CancellationToken
from ..config import CloudConfig
from ..logging import StructuredLogger
from ..process import CommandError, CommandOptions, CommandResult, command_exists, run_command

CONNECTIVITY_TIMEOUT = 60.0
DRY_RUN_TIMEOUT = 10 * 60.0
SYNC_TIMEOUT = 2 * 60 * 60.0
RESTORE_TIMEOUT = 4 * 60 * 60.0
BACKOFF_UNIT = 30.0
DEFAULT_RETRIES = 3
WRITE_PROBE_NAME = ".write-test"


class RcloneError(RuntimeError):
    """Raised when rclone transfers or remote checks fail."""


@dataclass(slots=True)
class RestoreVerification:
    """Summary of a restored directory."""

    file_count: int
    total_bytes: int
    restic_layout: bool
    restic_config_present: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "file_count": self.file_count,
            "total_bytes": self.total_bytes,
            "total_size": format_size(self.total_bytes),
            "restic_layout": self.restic_layout,
            "restic_config_present": self.restic_config_present,
        }


def format_size(size: int) -> str:
    """Render *size* bytes using binary units."""
    for unit, factor in (("TB", 1024**4), ("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if size >= factor:
            return f"{size / factor:.2f} {unit}"
    return f"{size} bytes"


@dataclass(slots=True)
class RcloneProvider:
    """Drive ``rclone`` against the configured remote."""

    config: CloudConfig
    logger: StructuredLogger
    dry_run: bool = False
    sink: TextIO | None = None
    cancel: CancellationToken | None = None
    backoff_unit: float = BACKOFF_UNIT

    @property
    def destination(self) -> str:
        """Return ``remote:path``."""
        return self.config.destination

    @property
    def retries(self) -> int:
        """Configured attempt count; values below one fall back to the default."""
        return self.config.retries if self.config.retries >= 1 else DEFAULT_RETRIES

    def available(self) -> bool:
        """Return ``True`` when the rclone binary is on ``PATH``."""
        return command_exists(self.config.rclone_bin)

    # Remote queries ------------------------------------------------------
    def test_connectivity(self) -> None:
        """List the remote root; raise :class:`RcloneError` when unreachable."""
        self.logger.info(f"Testing remote connectivity: {self.config.remote}")
        try:
            result = self._rclone(
                ["lsd", f"{self.config.remote}:", "--max-depth", "1"],
                timeout=CONNECTIVITY_TIMEOUT,
            )
        except CommandError as exc:
            raise RcloneError(f"cannot connect to remote {self.config.remote}: {exc}") from exc
        if not result.is_success:
            raise RcloneError(f"remote check failed: {result.describe()}")
        self.logger.success(f"Remote connectivity OK: {self.config.remote}")

    def validate_remote(self) -> None:
        """Raise :class:`RcloneError` unless the remote is configured in rclone."""
        try:
            result = self._rclone(["listremotes"], timeout=CONNECTIVITY_TIMEOUT)
        except CommandError as exc:
            raise RcloneError(f"cannot list rclone remotes: {exc}") from exc
        if not result.is_success:
            raise RcloneError(f"cannot list rclone remotes: {result.describe()}")
        remotes = {line.strip() for line in result.stdout.splitlines() if line.strip()}
        if f"{self.config.remote}:" not in remotes:
            raise RcloneError(f"remote not configured in rclone: {self.config.remote}")

    def remote_size(self) -> int:
        """Return the total size of the destination in bytes."""
        result = self._query(["size", self.destination, "--json"])
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise RcloneError(f"cannot parse size: {exc}") from exc
        size = payload.get("bytes") if isinstance(payload, dict) else None
        if not isinstance(size, int):
            raise RcloneError("cannot parse size: missing byte count")
        return size

    def list_remote_contents(self) -> list[str]:
        """Return the top-level directories under the destination."""
        result = self._query(["lsd", self.destination, "--max-depth", "1"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # Transfers -----------------------------------------------------------
    def sync(self, source: Path) -> None:
        """Mirror *source* to the destination with retries."""
        self.logger.progress(f"Starting sync to: {self.destination}")
        self.logger.info(f"Source: {source}")
        self.logger.info(f"Transfers: {self.config.transfers}")
        self.test_connectivity()
        if self.dry_run:
            self._dry_run("sync", str(source), self.destination)
            return
        self._with_retry(
            "Sync",
            lambda: self._transfer("sync", str(source), self.destination, SYNC_TIMEOUT),
        )

    def restore(self, target: Path, *, force: bool = False) -> RestoreVerification | None:
        """Copy the destination into *target* and verify the result.

        Returns ``None`` in dry-run mode.
        """
        self.logger.progress(f"Starting restore from: {self.destination}")
        self.logger.info(f"Destination: {target}")
        self.logger.info(f"Transfers: {self.config.transfers}")
        self.prepare_restore_target(target, force=force)
        self.test_connectivity()
        if self.dry_run:
            self._dry_run("copy", self.destination, str(target))
            return None
        self._with_retry(
            "Restore",
            lambda: self._transfer("copy", self.destination, str(target), RESTORE_TIMEOUT),
        )
        return self.verify_restore(target)

    def prepare_restore_target(self, target: Path, *, force: bool = False) -> None:
        """Ensure *target* is a writable directory that may be restored into."""
        self.logger.info(f"Preparing restore directory: {target}")
        if target.exists():
            if not target.is_dir():
                raise RcloneError(f"target exists but is not a directory: {target}")
            try:
                non_empty = any(target.iterdir())
            except OSError as exc:
                raise RcloneError(f"cannot read target directory: {exc}") from exc
            if non_empty:
                if not force:
                    raise RcloneError(
                        f"target directory is not empty (use --force to overwrite): {target}"
                    )
                self.logger.warning("Force mode enabled, proceeding with non-empty directory")
        else:
            try:
                target.mkdir(parents=True, mode=0o755)
            except OSError as exc:
                raise RcloneError(f"cannot create target directory: {exc}") from exc
            self.logger.info(f"Created target directory: {target}")

        probe = target / WRITE_PROBE_NAME
        try:
            probe.write_text("test", encoding="utf-8")
        except OSError as exc:
            raise RcloneError(f"target directory not writable: {target}") from exc
        probe.unlink(missing_ok=True)

    def verify_restore(self, target: Path) -> RestoreVerification:
        """Count restored files and bytes and look for a restic repository layout."""
        self.logger.info("Verifying restored data...")
        try:
            has_entries = any(target.iterdir())
        except OSError as exc:
            raise RcloneError(f"cannot read restored directory: {exc}") from exc
        if not has_entries:
            raise RcloneError("restore directory is empty")

        file_count = 0
        total_bytes = 0
        for root, _dirs, files in os.walk(target):
            for name in files:
                file_count += 1
                try:
                    total_bytes += (Path(root) / name).lstat().st_size
                except OSError:
                    continue
        self.logger.info(f"Restored {file_count} files")

        restic_layout = (target / "data").is_dir() and (target / "keys").is_dir()
        config_present = (target / "config").is_file()
        if restic_layout:
            self.logger.info("Detected restic repository structure")
            if config_present:
                self.logger.info("Restic repository config found")
            else:
                self.logger.warning(
                    "Restic repository config not found - repository may be incomplete"
                )
        else:
            self.logger.info("No restic repository structure detected in restored data")
        self.logger.info(f"Total restored size: {format_size(total_bytes)}")
        return RestoreVerification(
            file_count=file_count,
            total_bytes=total_bytes,
            restic_layout=restic_layout,
            restic_config_present=config_present,
        )

    # ------------------------------------------------------------------
    def _with_retry(self, label: str, attempt_fn: Callable[[], None]) -> None:
        retries = self.retries
        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            self.logger.progress(f"{label} attempt {attempt} of {retries}")
            try:
                attempt_fn()
            except RcloneError as exc:
                last_error = exc
                self.logger.warning(f"{label} attempt {attempt} failed: {exc}")
                if attempt < retries:
                    wait = attempt * self.backoff_unit
                    self.logger.info(f"Waiting {wait:g}s before retry...")
                    self._sleep(wait)
                continue
            self.logger.success(f"{label} completed successfully")
            return
        raise RcloneError(f"{label.lower()} failed after {retries} attempts: {last_error}")

    def _transfer(self, verb: str, source: str, destination: str, timeout: float) -> None:
        args = [
            verb,
            "--progress",
            "--links",
            "--transfers",
            str(self.config.transfers),
            "--retries",
            "3",
            "--low-level-retries",
            "10",
            "--stats",
            "30s",
            "--stats-one-line",
            "--verbose",
        ]
        if self.config.bandwidth:
            args.extend(["--bwlimit", self.config.bandwidth])
            self.logger.info(f"Bandwidth limit: {self.config.bandwidth}")
        args.extend([source, destination])
        try:
            result = self._rclone(args, timeout=timeout, stream=True)
        except CommandError as exc:
            raise RcloneError(str(exc)) from exc
        if not result.is_success:
            raise RcloneError(f"rclone {verb} exited with code {result.exit_code}")

    def _dry_run(self, verb: str, source: str, destination: str) -> None:
        self.logger.info(f"[DRY RUN] Previewing {verb} operation...")
        try:
            result = self._rclone(
                [verb, "--dry-run", "--verbose", "--links", source, destination],
                timeout=DRY_RUN_TIMEOUT,
                stream=True,
            )
        except CommandError as exc:
            raise RcloneError(f"dry run failed: {exc}") from exc
        if not result.is_success:
            raise RcloneError(f"dry run failed with exit code {result.exit_code}")

    def _query(self, args: Sequence[str]) -> CommandResult:
        try:
            result = self._rclone(args, timeout=CONNECTIVITY_TIMEOUT)
        except CommandError as exc:
            raise RcloneError(str(exc)) from exc
        if not result.is_success:
            raise RcloneError(f"rclone {args[0]} failed: {result.describe()}")
        return result

    def _rclone(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        stream: bool = False,
    ) -> CommandResult:
        options = CommandOptions(
            timeout=timeout,
            stream_stdout=stream,
            stream_stderr=stream,
            sink=self.sink,
            cancel=self.cancel,
        )
        return run_command(self.config.rclone_bin, list(args), options)

    def _sleep(self, seconds: float) -> None:
        if self.cancel is not None:
            self.cancel.sleep(seconds)
        elif seconds > 0:
            time.sleep(seconds)


__all__ = [
    "RcloneError",
    "RcloneProvider",
    "RestoreVerification",
    "format_size",
]
