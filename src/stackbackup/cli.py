"""Typer-powered command line interface for ``stackbackup``.

Every command resolves the layered configuration once per invocation, builds
a :class:`StructuredLogger` and records itself in the operations log. Exit
codes follow :class:`~stackbackup.exit_codes.ExitCode`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .cancel import RunCancelled
from .config import AppConfig, ConfigError, load_config
from .dirlist import DirectoryListManager, DirlistError
from .exit_codes import ExitCode
from .locking import InstanceRunningError, LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .providers.rclone import RcloneError
from .providers.restic import ResticError
from .service import BackupService, CloudService, PreflightError, summarise_snapshots

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stackbackup's YAML config file.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Show what would happen without changing anything.",
)

VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Also print INFO and DEBUG lines on the console.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Docker Stack Backup.

        Stops each enabled docker compose stack, snapshots it with restic,
        verifies and prunes the repository and puts the stack back the way it
        was. The restic repository can be mirrored to any rclone remote.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger

    def dirlist(self) -> DirectoryListManager:
        """Return a directory list manager bound to this runtime."""
        return DirectoryListManager(
            self.config.dirlist_file,
            self.config.stacks_dir,
            locks=self.locks,
            logger=self.logger,
            lock_timeout=self.config.lock_timeout,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.CONFIG) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.lock_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    ctx.call_on_close(runtime.logger.close)
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackbackup version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stackbackup {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _preflight_exit_code(exc: PreflightError) -> ExitCode:
    return ExitCode.DOCKER if exc.component == "docker" else ExitCode.BACKUP


dirlist_app = typer.Typer(help="Inspect and edit the list of directories to back up.")
snapshots_app = typer.Typer(help="Browse restic snapshots.")
cloud_app = typer.Typer(help="Mirror the restic repository to an rclone remote.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(dirlist_app, name="dirlist")
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(cloud_app, name="cloud")
app.add_typer(config_app, name="config")


# ---------------------------------------------------------------------------
# Backup run
# ---------------------------------------------------------------------------
@app.command("run")
def run_backup(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Back up every enabled directory."""
    runtime = _get_runtime(ctx)
    if verbose:
        runtime.logger.verbose = True
    service = BackupService.from_config(
        runtime.config,
        runtime.logger,
        locks=runtime.locks,
        dry_run=dry_run,
    )

    with runtime.logger.operation(
        "run",
        args={"dry_run": dry_run},
        target={"kind": "stacks", "path": runtime.config.stacks_dir},
    ) as op:
        try:
            stats = service.run()
        except RunCancelled as exc:
            _command_error(op, f"Backup interrupted ({exc.reason}).", rc=ExitCode.SIGNAL)
        except InstanceRunningError as exc:
            _command_error(op, f"Cannot start backup: {exc}", rc=ExitCode.LOCK)
        except LockError as exc:
            _command_error(op, f"Lock error: {exc}", rc=ExitCode.LOCK)
        except ConfigError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.CONFIG)
        except PreflightError as exc:
            _command_error(op, f"Preflight failed: {exc}", rc=_preflight_exit_code(exc))
        except DirlistError as exc:
            _command_error(op, f"Directory list error: {exc}", rc=ExitCode.VALIDATION)

        if stats.lock_wait_ms is not None:
            op.set_lock_wait_ms(stats.lock_wait_ms)
        if stats.failed:
            _command_error(
                op,
                f"Backup completed with {stats.failed} failures.",
                rc=ExitCode.BACKUP,
                errors=stats.failed_dirs,
            )
        if dry_run:
            _dry_run_complete(op, "no changes were made.", context=stats.to_dict())
            return
        if stats.warnings:
            op.warning(
                "Backup completed with warnings.",
                warnings=stats.warnings,
                changed=stats.succeeded,
                context=stats.to_dict(),
            )
            return
        op.success("Backup completed.", changed=stats.succeeded, context=stats.to_dict())


# ---------------------------------------------------------------------------
# Directory list
# ---------------------------------------------------------------------------
def _load_dirlist(runtime: RuntimeContext, op: OperationScope) -> DirectoryListManager:
    manager = runtime.dirlist()
    try:
        manager.load()
    except DirlistError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    return manager


def _mutate_dirlist(
    ctx: typer.Context,
    command: str,
    target: Mapping[str, object],
    mutate: Callable[[DirectoryListManager], str],
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(command, target=target) as op:
        manager = runtime.dirlist()
        try:
            with manager.edit() as wait_ms:
                op.set_lock_wait_ms(wait_ms)
                message = mutate(manager)
        except DirlistError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=1)


@dirlist_app.command("list")
def dirlist_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show every listed directory and whether it is enabled."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dirlist list",
        args={"json": json_output},
        target={"kind": "dirlist", "path": runtime.config.dirlist_file},
    ) as op:
        manager = _load_dirlist(runtime, op)
        entries = manager.entries()

        if json_output:
            console.print_json(
                data={
                    "directories": [
                        {
                            "identifier": entry.identifier,
                            "enabled": entry.enabled,
                            "external": entry.is_external,
                        }
                        for entry in entries
                    ]
                }
            )
            op.success("Reported directory list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Directory", style="bold")
        table.add_column("Status")
        table.add_column("Type")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(
                entry.identifier,
                "[green]enabled[/green]" if entry.enabled else "[dim]disabled[/dim]",
                "external" if entry.is_external else "discovered",
            )
        console.print(table)
        total, enabled, disabled = manager.count()
        console.print(f"{total} total, {enabled} enabled, {disabled} disabled")
        op.success("Reported directory list.", changed=0)


@dirlist_app.command("sync")
def dirlist_sync(ctx: typer.Context, dry_run: bool = DRY_RUN_OPTION) -> None:
    """Add new stack directories (disabled) and drop vanished ones."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dirlist sync",
        args={"dry_run": dry_run},
        target={"kind": "dirlist", "path": runtime.config.dirlist_file},
    ) as op:
        manager = _load_dirlist(runtime, op)
        try:
            result = manager.sync()
        except DirlistError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        for identifier in result.added:
            console.print(f"[green]+ {identifier}[/green] (disabled)")
        for identifier in result.removed:
            console.print(f"[red]- {identifier}[/red]")
        context = {"added": result.added, "removed": result.removed}

        if not result.changed:
            console.print("Directory list is up to date.")
            op.success("Directory list already in sync.", changed=0, context=context)
            return
        if dry_run:
            _dry_run_complete(op, "directory list not written.", context=context)
            return
        try:
            op.set_lock_wait_ms(manager.save())
        except DirlistError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        op.success(
            "Directory list synchronised.",
            changed=len(result.added) + len(result.removed),
            context=context,
        )


@dirlist_app.command("enable")
def dirlist_enable(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Directory name or external path."),
) -> None:
    """Enable a directory for backup."""

    def _apply(manager: DirectoryListManager) -> str:
        manager.set_enabled(name, True)
        return f"Enabled {name}."

    _mutate_dirlist(ctx, "dirlist enable", {"kind": "directory", "identifier": name}, _apply)


@dirlist_app.command("disable")
def dirlist_disable(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Directory name or external path."),
) -> None:
    """Disable a directory."""

    def _apply(manager: DirectoryListManager) -> str:
        manager.set_enabled(name, False)
        return f"Disabled {name}."

    _mutate_dirlist(ctx, "dirlist disable", {"kind": "directory", "identifier": name}, _apply)


@dirlist_app.command("enable-all")
def dirlist_enable_all(ctx: typer.Context) -> None:
    """Enable every listed directory."""

    def _apply(manager: DirectoryListManager) -> str:
        manager.set_all(True)
        return f"Enabled {len(manager.identifiers())} directories."

    _mutate_dirlist(ctx, "dirlist enable-all", {"kind": "dirlist"}, _apply)


@dirlist_app.command("disable-all")
def dirlist_disable_all(ctx: typer.Context) -> None:
    """Disable every listed directory."""

    def _apply(manager: DirectoryListManager) -> str:
        manager.set_all(False)
        return f"Disabled {len(manager.identifiers())} directories."

    _mutate_dirlist(ctx, "dirlist disable-all", {"kind": "dirlist"}, _apply)


@dirlist_app.command("add-external")
def dirlist_add_external(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Absolute path outside the stacks directory."),
) -> None:
    """Register an external directory (added disabled)."""

    def _apply(manager: DirectoryListManager) -> str:
        identifier = manager.add_external(path)
        return f"Added external directory {identifier} (disabled)."

    _mutate_dirlist(ctx, "dirlist add-external", {"kind": "directory", "path": path}, _apply)


@dirlist_app.command("remove-external")
def dirlist_remove_external(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="External path to remove from the list."),
) -> None:
    """Forget an external directory."""

    def _apply(manager: DirectoryListManager) -> str:
        manager.remove_external(path)
        return f"Removed external directory {path}."

    _mutate_dirlist(ctx, "dirlist remove-external", {"kind": "directory", "path": path}, _apply)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------
def _backup_service(runtime: RuntimeContext) -> BackupService:
    return BackupService.from_config(runtime.config, runtime.logger, locks=runtime.locks)


@snapshots_app.command("list")
def snapshots_list(
    ctx: typer.Context,
    tag: str | None = typer.Option(None, "--tag", "-t", help="Only show this directory tag."),
    limit: int = typer.Option(0, "--limit", "-n", min=0, help="Latest N snapshots per listing."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List snapshots, grouped by directory unless ``--tag`` is given."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots list",
        args={"tag": tag, "limit": limit, "json": json_output},
        target={"kind": "repository", "repository": runtime.config.restic.repository},
    ) as op:
        try:
            runtime.config.validate_repository()
        except ConfigError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.CONFIG)
        service = _backup_service(runtime)
        try:
            if tag:
                snapshots = service.restic.list_snapshots(tag, limit)
                groups = {tag: snapshots}
            else:
                groups = service.list_backups()
        except ResticError as exc:
            _command_error(op, str(exc), rc=ExitCode.BACKUP)
        finally:
            service.restic.cleanup()

        if json_output:
            console.print_json(
                data={
                    "snapshots": {
                        key: [snapshot.to_dict() for snapshot in value]
                        for key, value in groups.items()
                    }
                }
            )
            op.success("Reported snapshots (JSON).", changed=0)
            return

        if tag:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID", style="bold")
            table.add_column("Time")
            table.add_column("Host")
            table.add_column("Tags")
            snapshots = groups[tag]
            if not snapshots:
                table.add_row("(none)", "", "", "")
            for snapshot in snapshots:
                table.add_row(
                    snapshot.short_id,
                    snapshot.time,
                    snapshot.hostname,
                    ", ".join(snapshot.tags),
                )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Directory", style="bold")
            table.add_column("Snapshots")
            table.add_column("Latest")
            table.add_column("Latest ID")
            rows = summarise_snapshots(groups)
            if not rows:
                table.add_row("(none)", "", "", "")
            for row in rows:
                table.add_row(
                    str(row["directory"]),
                    str(row["snapshots"]),
                    str(row["latest"] or ""),
                    str(row["latest_id"] or ""),
                )
        console.print(table)
        op.success("Reported snapshots.", changed=0)


@snapshots_app.command("preview")
def snapshots_preview(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Directory name, external path or snapshot tag."),
) -> None:
    """Show the file listing of the latest snapshot for a directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots preview",
        target={"kind": "directory", "identifier": name},
    ) as op:
        try:
            runtime.config.validate_repository()
        except ConfigError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.CONFIG)
        service = _backup_service(runtime)
        try:
            preview = service.restore_preview(name)
        except ResticError as exc:
            _command_error(op, str(exc), rc=ExitCode.BACKUP)
        finally:
            service.restic.cleanup()

        snapshot = preview.snapshot
        console.print(f"[bold]Snapshot {snapshot.short_id}[/bold] ({snapshot.time})")
        console.print(preview.listing, markup=False, highlight=False)
        op.success(
            "Reported snapshot contents.",
            changed=0,
            context={"snapshot": snapshot.short_id},
        )


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------
@cloud_app.command("sync")
def cloud_sync(ctx: typer.Context, dry_run: bool = DRY_RUN_OPTION) -> None:
    """Upload the local restic repository to the remote."""
    runtime = _get_runtime(ctx)
    service = CloudService.from_config(runtime.config, runtime.logger, dry_run=dry_run)
    with runtime.logger.operation(
        "cloud sync",
        args={"dry_run": dry_run},
        target={"kind": "remote", "destination": runtime.config.cloud.destination},
    ) as op:
        try:
            service.sync()
        except ConfigError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.CONFIG)
        except PreflightError as exc:
            _command_error(op, f"Preflight failed: {exc}", rc=_preflight_exit_code(exc))
        except RunCancelled as exc:
            _command_error(op, f"Sync interrupted ({exc.reason}).", rc=ExitCode.SIGNAL)
        except RcloneError as exc:
            _command_error(op, f"Cloud sync failed: {exc}", rc=ExitCode.BACKUP)

        if dry_run:
            _dry_run_complete(op, "nothing was uploaded.")
            return
        console.print(f"[green]Synced repository to {runtime.config.cloud.destination}[/green]")
        op.success("Cloud sync completed.", changed=1)


@cloud_app.command("restore")
def cloud_restore(
    ctx: typer.Context,
    target: Path = typer.Argument(..., help="Directory to restore the repository into."),
    dry_run: bool = DRY_RUN_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Restore into a non-empty directory.",
    ),
) -> None:
    """Download the repository from the remote into TARGET."""
    runtime = _get_runtime(ctx)
    service = CloudService.from_config(runtime.config, runtime.logger, dry_run=dry_run)
    with runtime.logger.operation(
        "cloud restore",
        args={"dry_run": dry_run, "force": force},
        target={"kind": "directory", "path": target},
    ) as op:
        try:
            verification = service.restore(target, force=force)
        except ConfigError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.CONFIG)
        except PreflightError as exc:
            _command_error(op, f"Preflight failed: {exc}", rc=_preflight_exit_code(exc))
        except RunCancelled as exc:
            _command_error(op, f"Restore interrupted ({exc.reason}).", rc=ExitCode.SIGNAL)
        except RcloneError as exc:
            _command_error(op, f"Cloud restore failed: {exc}", rc=ExitCode.BACKUP)

        if verification is None:
            _dry_run_complete(op, "nothing was downloaded.")
            return
        console.print(
            f"[green]Restored {verification.file_count} files "
            f"({verification.to_dict()['total_size']}) into {target}[/green]"
        )
        for line in CloudService.next_steps(target):
            console.print(line, markup=False, highlight=False)
        op.success("Cloud restore completed.", changed=1, context=verification.to_dict())


@cloud_app.command("test")
def cloud_test(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Check that the remote is reachable and show its contents and size."""
    runtime = _get_runtime(ctx)
    service = CloudService.from_config(runtime.config, runtime.logger)
    with runtime.logger.operation(
        "cloud test",
        args={"json": json_output},
        target={"kind": "remote", "remote": runtime.config.cloud.remote},
    ) as op:
        try:
            report = service.test()
        except ConfigError as exc:
            _command_error(op, f"Configuration error: {exc}", rc=ExitCode.CONFIG)
        except RcloneError as exc:
            _command_error(op, str(exc), rc=ExitCode.BACKUP)

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            console.print(f"[green]Remote {runtime.config.cloud.remote} is reachable.[/green]")
            for line in report.entries:
                console.print(f"  {line}", markup=False, highlight=False)
            if report.size is not None:
                console.print(f"Total size: {report.size}")
        op.success("Remote reachable.", changed=0, context=report.to_dict())


# ---------------------------------------------------------------------------
# Health and configuration
# ---------------------------------------------------------------------------
@app.command("health")
def health(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Check tools, repository access and the directory list."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health",
        args={"json": json_output},
        target={"kind": "system"},
    ) as op:
        report = _backup_service(runtime).health_check()
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Check", style="bold")
            table.add_column("Status")
            table.add_column("Details")
            for check in report.checks:
                table.add_row(
                    check.name,
                    "[green]OK[/green]" if check.ok else "[red]FAIL[/red]",
                    check.detail,
                )
            console.print(table)

        if not report.ok:
            failed = [check.name for check in report.checks if not check.ok]
            op.error("Health check failed.", errors=failed, rc=int(ExitCode.VALIDATION))
            raise typer.Exit(code=ExitCode.VALIDATION)
        op.success("All health checks passed.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
