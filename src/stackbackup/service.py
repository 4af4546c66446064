"""End-to-end backup pipeline and the independent cloud transfer stage.

:class:`BackupService` runs ``Preflight -> Discover/Sync -> per directory
(Stop -> Backup -> Verify -> Retention -> Start) -> Summarize``. Directories
are processed one at a time in sorted order, and a failure in one of them is
counted and reported without stopping the others.

Signals only set the run's :class:`~stackbackup.cancel.CancellationToken`.
The pipeline notices at its next suspension point, unwinds with
:class:`~stackbackup.cancel.RunCancelled` and the same cleanup used for a
normal finish runs exactly once, restarting the stack that was in flight.
"""
from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .cancel import CancellationToken, RunCancelled, handle_signals
from .config import AppConfig, ConfigError
from .dirlist import DirectoryListManager, DirlistError, is_external_identifier, validate_dir_name
from .lifecycle import StackError, StackLifecycleController
from .locking import LockManager, PIDFile
from .logging import OperationScope, StructuredLogger
from .process import CommandError, command_exists, which
from .providers.compose import ComposeProvider, StackState
from .providers.rclone import RcloneError, RcloneProvider, RestoreVerification, format_size
from .providers.restic import (
    ResticError,
    ResticProvider,
    RestorePreview,
    RetentionError,
    Snapshot,
    VerificationError,
)


class PreflightError(RuntimeError):
    """Raised when required tools or the repository are unusable.

    *component* names what failed: ``"docker"``, ``"restic"`` or ``"rclone"``.
    """

    def __init__(self, message: str, component: str) -> None:
        super().__init__(message)
        self.component = component


_PER_DIRECTORY_ERRORS = (StackError, ResticError, DirlistError, CommandError, OSError)


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class RunStats:
    """Counters for one backup run."""

    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_dirs: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False
    lock_wait_ms: int | None = None

    @property
    def duration(self) -> float:
        """Elapsed seconds (up to now while the run is still active)."""
        end = self.end_time or _now()
        return (end - self.start_time).total_seconds()

    @property
    def ok(self) -> bool:
        """Return ``True`` when no directory failed and the run was not interrupted."""
        return self.failed == 0 and not self.cancelled

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, identifier: str) -> None:
        self.processed += 1
        self.failed += 1
        self.failed_dirs.append(identifier)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration, 3),
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failed_dirs": list(self.failed_dirs),
            "warnings": list(self.warnings),
            "cancelled": self.cancelled,
            "lock_wait_ms": self.lock_wait_ms,
        }


@dataclass(slots=True)
class HealthCheck:
    """One line of a health report."""

    name: str
    ok: bool
    detail: str


@dataclass(slots=True)
class HealthReport:
    """Outcome of :meth:`BackupService.health_check`."""

    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.ok for check in self.checks)

    def add(self, name: str, ok: bool, detail: str) -> None:
        self.checks.append(HealthCheck(name=name, ok=ok, detail=detail))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "checks": [dataclasses.asdict(check) for check in self.checks],
        }


@dataclass(slots=True)
class BackupService:
    """Compose directory list, stack lifecycle and restic into one run."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    dirlist: DirectoryListManager
    compose: ComposeProvider
    lifecycle: StackLifecycleController
    restic: ResticProvider
    cancel: CancellationToken = field(default_factory=CancellationToken)
    dry_run: bool = False
    _current: str | None = field(default=None, init=False, repr=False)
    _cleaned: bool = field(default=False, init=False, repr=False)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        logger: StructuredLogger,
        *,
        locks: LockManager | None = None,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
        sink: TextIO | None = None,
    ) -> BackupService:
        """Wire the real providers for *config*."""
        token = cancel or CancellationToken()
        lock_manager = locks or LockManager(config.lock_dir, config.lock_timeout)
        compose = ComposeProvider(compose_bin=config.docker.compose_bin, sink=sink, cancel=token)
        return cls(
            config=config,
            logger=logger,
            locks=lock_manager,
            dirlist=DirectoryListManager(
                config.dirlist_file,
                config.stacks_dir,
                locks=lock_manager,
                logger=logger,
                lock_timeout=config.lock_timeout,
            ),
            compose=compose,
            lifecycle=StackLifecycleController(
                compose=compose,
                logger=logger,
                stack_timeout=config.docker.timeout,
                dry_run=dry_run,
                cancel=token,
            ),
            restic=ResticProvider(
                config=config.restic,
                logger=logger,
                dry_run=dry_run,
                sink=sink,
                cancel=token,
            ),
            cancel=token,
            dry_run=dry_run,
        )

    # Pipeline ---------------------------------------------------------------
    def run(self) -> RunStats:
        """Execute a full backup run and return its statistics.

        Raises :class:`~stackbackup.locking.InstanceRunningError` when another
        run is active, :class:`PreflightError` / :class:`ConfigError` /
        :class:`DirlistError` for fatal pre-mutation failures and
        :class:`RunCancelled` when interrupted by a signal. Per-directory
        failures are reported through the returned :class:`RunStats`.
        """
        stats = RunStats()
        self._current = None
        self._cleaned = False
        pid_file = self.locks.pid_file()

        with handle_signals(self.cancel):
            pid_file.acquire()
            try:
                self.logger.header("Docker Stack Backup")
                self.logger.info(f"Stacks directory: {self.config.stacks_dir}")
                self.logger.info(f"Directory list: {self.config.dirlist_file}")
                if self.dry_run:
                    self.logger.warning("DRY RUN MODE - No changes will be made")
                self._preflight()
                enabled = self._discover(stats)
                self._process_all(enabled, stats)
            except RunCancelled as exc:
                stats.cancelled = True
                self.logger.warning(f"Backup interrupted: {exc.reason}")
                raise
            finally:
                self._cleanup(pid_file)
                stats.end_time = _now()
                self._summarise(stats)
        return stats

    def _preflight(self) -> None:
        self.logger.progress("Running preflight checks")
        self.config.validate_for_backup()
        if not self.compose.available():
            raise PreflightError("docker compose is not available", "docker")
        try:
            self.restic.check_repository()
        except ResticError as exc:
            raise PreflightError(str(exc), "restic") from exc
        self.logger.success("Preflight checks passed")

    def _discover(self, stats: RunStats) -> list[str]:
        self.logger.progress("Scanning stacks directory")
        self.dirlist.load()
        result = self.dirlist.sync()
        for identifier in result.added:
            self.logger.info(f"New directory found (disabled): {identifier}")
        for identifier in result.removed:
            self.logger.info(f"Directory removed from list: {identifier}")
        if result.changed:
            if self.dry_run:
                self.logger.info("[DRY RUN] Would save updated directory list")
            else:
                stats.lock_wait_ms = self.dirlist.save()
        total, enabled, disabled = self.dirlist.count()
        self.logger.info(
            f"Directories: {total} total, {enabled} enabled, {disabled} disabled"
        )
        return self.dirlist.enabled()

    def _process_all(self, enabled: list[str], stats: RunStats) -> None:
        if not enabled:
            self.logger.warning("No directories enabled for backup")
            return
        for identifier in enabled:
            self.cancel.check()
            self.lifecycle.capture_initial_state(identifier, self.dirlist.full_path(identifier))

        for identifier in enabled:
            self.cancel.check()
            self._current = identifier
            try:
                self._process_directory(identifier, stats)
            except _PER_DIRECTORY_ERRORS as exc:
                self.logger.error(f"Failed to process {identifier}: {exc}")
                stats.record_failure(identifier)
            else:
                stats.record_success()
            self._current = None

    def _process_directory(self, identifier: str, stats: RunStats) -> None:
        path = self.dirlist.full_path(identifier)
        tag = self.dirlist.snapshot_tag(identifier)
        self.logger.header(f"Processing: {identifier}")
        with self.logger.operation(
            "backup directory",
            args={"dry_run": self.dry_run},
            target={"kind": "stack", "identifier": identifier, "tag": tag, "path": path},
        ) as op:
            if not is_external_identifier(identifier):
                validate_dir_name(identifier)
            if not path.is_dir():
                raise DirlistError(f"directory not found: {path}")

            # From here on the stack may be stopped; every handled error restarts it.
            try:
                self.lifecycle.stop(identifier, path)
                op.add_step("stack.stop", detail=self.lifecycle.states.get(identifier).value)
                self.restic.backup(path, tag)
                op.add_step("restic.backup", detail=tag)
                warnings = self._verify_and_prune(identifier, tag, op)
            except _PER_DIRECTORY_ERRORS as exc:
                op.add_step("stack.restart", status="recovery")
                self._restart_after_failure(identifier, path)
                op.error(str(exc))
                raise

            self.lifecycle.start(identifier, path)
            op.add_step("stack.start")
            stats.warnings.extend(f"{identifier}: {warning}" for warning in warnings)
            if warnings:
                op.warning("Backup completed with warnings.", warnings=warnings)
            else:
                op.success("Backup completed.", changed=1)
            self.logger.success(f"Completed: {identifier}")

    def _verify_and_prune(self, identifier: str, tag: str, op: OperationScope) -> list[str]:
        warnings: list[str] = []
        try:
            self.restic.verify(tag)
            op.add_step("restic.verify")
        except VerificationError as exc:
            warnings.append(str(exc))
            self.logger.warning(f"Verification failed for {identifier}: {exc}")
            op.add_step("restic.verify", status="warning", detail=str(exc))
        try:
            self.restic.apply_retention(tag)
            op.add_step("restic.retention")
        except RetentionError as exc:
            warnings.append(str(exc))
            self.logger.warning(f"Retention failed for {identifier}: {exc}")
            op.add_step("restic.retention", status="warning", detail=str(exc))
        return warnings

    def _restart_after_failure(self, identifier: str, path: Path) -> None:
        try:
            self.lifecycle.start(identifier, path)
        except StackError as exc:
            self.logger.error(f"Failed to restart {identifier} after error: {exc}")

    def _cleanup(self, pid_file: PIDFile) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        current, self._current = self._current, None
        if current is not None:
            state = self.lifecycle.states.get(current)
            if state in (StackState.RUNNING, StackState.UNKNOWN):
                self.logger.warning(f"Run interrupted while processing {current}; restarting stack")
                recovery = self._recovery_controller()
                try:
                    recovery.force_start(current, self.dirlist.full_path(current))
                except StackError as exc:
                    self.logger.error(f"Failed to restart {current}: {exc}")
        self.restic.cleanup()
        pid_file.release()

    def _recovery_controller(self) -> StackLifecycleController:
        # Cleanup must not observe the cancellation that triggered it.
        compose = dataclasses.replace(self.compose, cancel=None)
        return dataclasses.replace(self.lifecycle, compose=compose, cancel=None)

    def _summarise(self, stats: RunStats) -> None:
        self.logger.header("Backup Summary")
        self.logger.info(f"Duration: {stats.duration:.1f}s")
        self.logger.progress(
            f"Processed: {stats.processed}, succeeded: {stats.succeeded}, failed: {stats.failed}"
        )
        for identifier in stats.failed_dirs:
            self.logger.error(f"Failed directory: {identifier}")
        if stats.cancelled:
            self.logger.error("Backup interrupted before completion")
        elif stats.failed:
            self.logger.error(f"Backup completed with {stats.failed} failures")
        else:
            self.logger.success("Backup completed successfully")

    # Read-only helpers ------------------------------------------------------
    def list_backups(self) -> dict[str, list[Snapshot]]:
        """Group all snapshots by their directory tag."""
        grouped: dict[str, list[Snapshot]] = {}
        for snapshot in self.restic.list_snapshots():
            tag = snapshot.directory_tag or "(untagged)"
            grouped.setdefault(tag, []).append(snapshot)
        return {tag: grouped[tag] for tag in sorted(grouped)}

    def restore_preview(self, identifier: str) -> RestorePreview:
        """Return the latest snapshot listing for a directory identifier or tag."""
        tag = self.dirlist.snapshot_tag(identifier)
        return self.restic.restore_preview(tag)

    def health_check(self) -> HealthReport:
        """Check tools, repository access and the directory list."""
        report = HealthReport()
        report.add(
            "docker compose",
            self.compose.available(),
            f"{self.config.docker.compose_bin} compose",
        )
        restic_bin = self.config.restic.restic_bin
        restic_found = self.restic.available()
        report.add("restic binary", restic_found, which(restic_bin) or restic_bin)
        report.add(
            "stacks directory",
            self.config.stacks_dir.is_dir(),
            str(self.config.stacks_dir),
        )
        try:
            self.config.validate_repository()
        except ConfigError as exc:
            report.add("repository configuration", False, str(exc))
        else:
            report.add(
                "repository configuration",
                True,
                f"{self.config.restic.repository} ({self.config.restic.password_method()})",
            )
            if restic_found:
                try:
                    self.restic.check_repository()
                except ResticError as exc:
                    report.add("repository access", False, str(exc))
                else:
                    report.add("repository access", True, self._repository_summary())
                finally:
                    self.restic.cleanup()
        try:
            self.dirlist.load()
        except DirlistError as exc:
            report.add("directory list", False, str(exc))
        else:
            total, enabled, disabled = self.dirlist.count()
            report.add(
                "directory list",
                True,
                f"{total} total, {enabled} enabled, {disabled} disabled",
            )
        if self.config.cloud.remote:
            rclone_bin = self.config.cloud.rclone_bin
            report.add("rclone binary", command_exists(rclone_bin), which(rclone_bin) or rclone_bin)
        return report

    def _repository_summary(self) -> str:
        try:
            stats = self.restic.repository_stats()
        except ResticError as exc:
            self.logger.warning(f"Cannot read repository stats: {exc}")
            return "snapshots listed"
        count = stats.get("snapshots_count")
        size = stats.get("total_size")
        parts = []
        if isinstance(count, int):
            parts.append(f"{count} snapshots")
        if isinstance(size, int):
            parts.append(format_size(size))
        return ", ".join(parts) or "snapshots listed"


@dataclass(slots=True)
class RemoteReport:
    """Outcome of :meth:`CloudService.test`."""

    destination: str
    entries: list[str] = field(default_factory=list)
    size: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return dataclasses.asdict(self)


@dataclass(slots=True)
class CloudService:
    """Mirror the local restic repository to the rclone remote and back."""

    config: AppConfig
    logger: StructuredLogger
    rclone: RcloneProvider
    cancel: CancellationToken = field(default_factory=CancellationToken)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        logger: StructuredLogger,
        *,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
        sink: TextIO | None = None,
    ) -> CloudService:
        """Wire the real rclone provider for *config*."""
        token = cancel or CancellationToken()
        return cls(
            config=config,
            logger=logger,
            rclone=RcloneProvider(
                config=config.cloud,
                logger=logger,
                dry_run=dry_run,
                sink=sink,
                cancel=token,
            ),
            cancel=token,
        )

    def sync(self) -> None:
        """Upload the repository directory to ``remote:path``."""
        self.config.validate_for_cloud()
        source = Path(self.config.restic.repository)
        if not source.is_dir():
            raise PreflightError(
                f"restic repository is not a local directory: {source}", "restic"
            )
        if not self.rclone.available():
            raise PreflightError(f"{self.config.cloud.rclone_bin} not found in PATH", "rclone")
        self.logger.header("Cloud Sync")
        with handle_signals(self.cancel):
            self.rclone.sync(source)

    def restore(self, target: Path, *, force: bool = False) -> RestoreVerification | None:
        """Download ``remote:path`` into *target*."""
        if not self.config.cloud.remote:
            raise ConfigError("cloud.remote must be set for cloud restore.")
        if not self.rclone.available():
            raise PreflightError(f"{self.config.cloud.rclone_bin} not found in PATH", "rclone")
        self.logger.header("Cloud Restore")
        with handle_signals(self.cancel):
            return self.rclone.restore(target, force=force)

    def test(self) -> RemoteReport:
        """Check connectivity and describe what the destination holds."""
        if not self.config.cloud.remote:
            raise ConfigError("cloud.remote must be set.")
        self.rclone.test_connectivity()
        report = RemoteReport(destination=self.rclone.destination)
        try:
            report.entries = self.rclone.list_remote_contents()
            report.size = format_size(self.rclone.remote_size())
        except RcloneError as exc:
            self.logger.warning(f"Cannot list {self.rclone.destination}: {exc}")
        return report

    @staticmethod
    def next_steps(target: Path) -> list[str]:
        """Return follow-up instructions after a restore into *target*."""
        return [
            f"1. Verify the restored data in: {target}",
            "2. If this is a restic repository, use it with:",
            f"   export RESTIC_REPOSITORY={target}",
            "   restic snapshots",
        ]


def summarise_snapshots(groups: Mapping[str, list[Snapshot]]) -> list[dict[str, object]]:
    """Flatten grouped snapshots into rows for display."""
    rows: list[dict[str, object]] = []
    for tag, snapshots in groups.items():
        latest = snapshots[-1] if snapshots else None
        rows.append(
            {
                "directory": tag,
                "snapshots": len(snapshots),
                "latest": latest.time if latest else None,
                "latest_id": latest.short_id if latest else None,
            }
        )
    return rows


__all__ = [
    "BackupService",
    "CloudService",
    "HealthCheck",
    "HealthReport",
    "PreflightError",
    "RemoteReport",
    "RunStats",
    "summarise_snapshots",
]
