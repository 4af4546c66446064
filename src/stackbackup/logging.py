"""Run logger: human log file, rich console output and JSONL operation records.

A :class:`StructuredLogger` is created once per invocation and handed to
every component that needs to report progress. It owns three sinks:

* ``<logs_dir>/stackbackup.log``: timestamped human-readable lines written
  through a dedicated, non-propagating stdlib :mod:`logging` logger.
* the terminal, rendered with :mod:`rich`. Warnings and errors go to stderr;
  ``info``/``debug`` lines are only shown in verbose mode.
* ``<logs_dir>/operations.jsonl``: one JSON record per
  :meth:`StructuredLogger.operation` scope.

File sinks degrade gracefully: if the directory cannot be created or a write
fails the logger disables its file output instead of failing the run.
"""
from __future__ import annotations

import itertools
import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from rich.console import Console
from rich.markup import escape

from . import __version__

PROGRESS = 25
SUCCESS = 26

HUMAN_LOG_NAME = "stackbackup.log"
OPERATIONS_LOG_NAME = "operations.jsonl"

_LEVEL_LABELS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    PROGRESS: "PROGRESS",
    SUCCESS: "SUCCESS",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
}
_CONSOLE_STYLES = {
    logging.DEBUG: "dim",
    logging.INFO: "cyan",
    PROGRESS: "blue",
    SUCCESS: "green",
    logging.WARNING: "yellow",
    logging.ERROR: "bold red",
}
_ALWAYS_SHOWN = {PROGRESS, SUCCESS, logging.WARNING, logging.ERROR}
_logger_ids = itertools.count(1)


class _LineFormatter(logging.Formatter):
    """Render ``[YYYY-mm-dd HH:MM:SS] [LEVEL] message`` lines."""

    def __init__(self) -> None:
        super().__init__(fmt="[%(asctime)s] [%(label)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        record.label = _LEVEL_LABELS.get(record.levelno, record.levelname)
        return super().format(record)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result for a single logged operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object] | None
    actor: dict[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.monotonic)
    lock_wait_ms: int | None = None
    _steps: list[dict[str, object]] = field(default_factory=list)
    _result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object | None = None) -> None:
        """Record an intermediate step named *name*."""
        step: dict[str, object] = {"name": name, "status": status, "ts": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self._steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Remember how long the operation waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings) if warnings else [message],
            errors=list(errors or []),
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    @property
    def has_result(self) -> bool:
        """Return ``True`` once a terminal status has been recorded."""
        return self._result is not None

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self._result = {
            "status": status,
            "message": message,
            "warnings": list(warnings),
            "errors": list(errors),
            "changed": changed,
            "context": _sanitise(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        result = self._result or {
            "status": "success",
            "message": "completed",
            "warnings": [],
            "errors": [],
            "changed": 0,
            "context": {},
            "rc": None,
        }
        return {
            "ts": _now_iso(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "actor": self.actor,
            "context": {"stackbackup_version": __version__},
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self.started) * 1000),
            "result": result,
            "steps": list(self._steps),
        }


class StructuredLogger:
    """Per-run logger combining console, human log and operations log."""

    def __init__(
        self,
        logs_dir: Path | None,
        *,
        verbose: bool = False,
        console: Console | None = None,
        err_console: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)
        self._closed = False
        self._handler: logging.Handler | None = None
        self._logger = logging.getLogger(f"stackbackup.run.{next(_logger_ids)}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        self._enabled = logs_dir is not None
        self.logs_dir = Path(logs_dir) if logs_dir is not None else None
        self._operations_log_path = (
            self.logs_dir / OPERATIONS_LOG_NAME if self.logs_dir is not None else None
        )
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME if self.logs_dir is not None else None

        if self.logs_dir is not None:
            try:
                self.logs_dir.mkdir(parents=True, exist_ok=True)
                handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
            except OSError:
                self._enabled = False
            else:
                handler.setFormatter(_LineFormatter())
                self._logger.addHandler(handler)
                self._handler = handler

    # Level helpers -------------------------------------------------
    def debug(self, message: str) -> None:
        """Log a debug line (console only in verbose mode)."""
        self._emit(logging.DEBUG, message)

    def info(self, message: str) -> None:
        """Log an informational line (console only in verbose mode)."""
        self._emit(logging.INFO, message)

    def progress(self, message: str) -> None:
        """Log a progress line."""
        self._emit(PROGRESS, message)

    def success(self, message: str) -> None:
        """Log a success line."""
        self._emit(SUCCESS, message)

    def warning(self, message: str) -> None:
        """Log a warning (stderr)."""
        self._emit(logging.WARNING, message)

    def error(self, message: str) -> None:
        """Log an error (stderr)."""
        self._emit(logging.ERROR, message)

    def header(self, title: str) -> None:
        """Write a ``=== title ===`` section header."""
        line = f"=== {title} ==="
        self._write_file(logging.INFO, line)
        self.console.print(f"[bold]{escape(line)}[/bold]")

    # Operation records ----------------------------------------------
    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
            actor=_actor(),
        )
        try:
            yield scope
        except BaseException as exc:
            if not scope.has_result:
                scope.error(str(exc) or type(exc).__name__)
            self._write_operation(scope)
            raise
        self._write_operation(scope)

    # Lifecycle -------------------------------------------------------
    def close(self) -> None:
        """Flush and detach the file handler; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        handler, self._handler = self._handler, None
        if handler is not None:
            self._logger.removeHandler(handler)
            handler.close()

    def __enter__(self) -> StructuredLogger:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    def _emit(self, level: int, message: str) -> None:
        self._write_file(level, message)
        if not self.verbose and level not in _ALWAYS_SHOWN:
            return
        label = _LEVEL_LABELS[level]
        style = _CONSOLE_STYLES[level]
        target = self.err_console if level >= logging.WARNING else self.console
        target.print(f"[{style}]{label}[/{style}] {escape(message)}", highlight=False)

    def _write_file(self, level: int, message: str) -> None:
        if self._handler is None:
            return
        self._logger.log(level, message)

    def _write_operation(self, scope: OperationScope) -> None:
        if not self._enabled or self._operations_log_path is None:
            return
        try:
            payload = json.dumps(scope.to_record(), sort_keys=False)
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(payload + "\n")
        except (OSError, TypeError, ValueError):
            self._enabled = False


def _actor() -> dict[str, object]:
    actor: dict[str, object] = {"pid": os.getpid()}
    getuid = getattr(os, "getuid", None)
    if getuid is not None:
        actor["uid"] = getuid()
    user = os.environ.get("SUDO_USER") or os.environ.get("USER")
    if user:
        actor["user"] = user
    return actor


__all__ = [
    "OperationScope",
    "PROGRESS",
    "SUCCESS",
    "StructuredLogger",
]
