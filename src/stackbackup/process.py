"""Run external programs with timeouts, streaming and process-group cleanup.

Every child is started in its own session so that a timeout can terminate
the whole process tree: ``docker compose`` and ``restic`` both spawn helpers
that would otherwise outlive their parent.
"""
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TextIO

from .cancel import CancellationToken, RunCancelled

POLL_INTERVAL = 0.1
READER_JOIN_TIMEOUT = 5.0

_POSIX = hasattr(os, "killpg")


class CommandError(RuntimeError):
    """Raised when a command cannot be started or waited for."""

    def __init__(self, message: str, result: CommandResult) -> None:
        super().__init__(message)
        self.result = result


class CommandTimeoutError(CommandError):
    """Raised when a command exceeded its timeout and was killed."""


@dataclass(slots=True)
class CommandOptions:
    """Execution options for :func:`run_command`.

    ``env`` is overlaid on the current process environment. ``timeout`` of
    ``None`` or ``0`` waits indefinitely. Capturing and streaming are
    independent: a streamed stream is still captured when requested.
    """

    cwd: Path | str | None = None
    env: Mapping[str, str] | None = None
    timeout: float | None = None
    stdin: str | bytes | None = None
    capture_stdout: bool = True
    capture_stderr: bool = True
    stream_stdout: bool = False
    stream_stderr: bool = False
    sink: TextIO | None = None
    cancel: CancellationToken | None = None


@dataclass(slots=True)
class CommandResult:
    """Outcome of an executed command."""

    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def is_success(self) -> bool:
        """Return ``True`` only for a zero exit that did not time out."""
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        """Return stdout and stderr joined by a newline (empty parts skipped)."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def describe(self) -> str:
        """Return the most useful single-line failure detail."""
        return self.stderr or self.stdout or "no output"


@dataclass(slots=True)
class _Collector:
    stream: IO[bytes]
    capture: bool
    sink: TextIO | None
    chunks: list[str] = field(default_factory=list)

    def run(self) -> None:
        for raw in iter(self.stream.readline, b""):
            line = raw.decode("utf-8", errors="replace")
            if self.capture:
                self.chunks.append(line)
            if self.sink is not None:
                try:
                    self.sink.write(line)
                    self.sink.flush()
                except (OSError, ValueError):
                    self.sink = None
        self.stream.close()

    def text(self) -> str:
        return "".join(self.chunks).strip()


def run_command(
    program: str,
    args: Sequence[str] = (),
    options: CommandOptions | None = None,
) -> CommandResult:
    """Execute *program* with *args* and return its :class:`CommandResult`.

    A non-zero exit is reported on the result, not raised. Failure to start
    raises :class:`CommandError` (exit code ``-1``); exceeding the timeout
    kills the process group and raises :class:`CommandTimeoutError`. When
    the cancellation token fires the wait is abandoned (the child is left
    running) and :class:`~stackbackup.cancel.RunCancelled` is raised.
    """
    opts = options or CommandOptions()
    argv = [program, *args]
    env: dict[str, str] | None = None
    if opts.env:
        env = dict(os.environ)
        env.update(opts.env)

    stdin_data = opts.stdin.encode("utf-8") if isinstance(opts.stdin, str) else opts.stdin
    want_stdout = opts.capture_stdout or opts.stream_stdout
    want_stderr = opts.capture_stderr or opts.stream_stderr

    popen_kwargs: dict[str, object] = {}
    if _POSIX:
        popen_kwargs["start_new_session"] = True
    else:  # pragma: no cover - exercised on Windows only
        popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)

    started = time.monotonic()
    try:
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=str(opts.cwd) if opts.cwd is not None else None,
            env=env,
            stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE if want_stdout else subprocess.DEVNULL,
            stderr=subprocess.PIPE if want_stderr else subprocess.DEVNULL,
            **popen_kwargs,  # type: ignore[arg-type]
        )
    except OSError as exc:
        result = CommandResult(
            argv,
            exit_code=-1,
            stderr=str(exc),
            duration=time.monotonic() - started,
        )
        raise CommandError(f"failed to start command {program}: {exc}", result) from exc

    collectors: list[_Collector] = []
    threads: list[threading.Thread] = []
    if process.stdout is not None:
        collectors.append(
            _Collector(
                process.stdout,
                opts.capture_stdout,
                (opts.sink or sys.stdout) if opts.stream_stdout else None,
            )
        )
    if process.stderr is not None:
        collectors.append(
            _Collector(
                process.stderr,
                opts.capture_stderr,
                (opts.sink or sys.stderr) if opts.stream_stderr else None,
            )
        )
    for collector in collectors:
        thread = threading.Thread(target=collector.run, daemon=True)
        thread.start()
        threads.append(thread)
    if stdin_data is not None and process.stdin is not None:
        writer = threading.Thread(target=_feed_stdin, args=(process.stdin, stdin_data), daemon=True)
        writer.start()
        threads.append(writer)

    deadline = started + opts.timeout if opts.timeout else None
    timed_out = False
    cancelled = False
    while True:
        try:
            returncode = process.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass
        if deadline is not None and time.monotonic() >= deadline:
            _kill_tree(process)
            returncode = process.wait()
            timed_out = True
            break
        if opts.cancel is not None and opts.cancel.cancelled:
            # The child keeps running in its own session; only the wait stops.
            returncode = -1
            cancelled = True
            break

    for thread in threads:
        thread.join(0 if cancelled else READER_JOIN_TIMEOUT)

    stdout_text = ""
    stderr_text = ""
    for collector in collectors:
        if collector.stream is process.stdout:
            stdout_text = collector.text()
        else:
            stderr_text = collector.text()

    result = CommandResult(
        argv,
        exit_code=-1 if timed_out or returncode < 0 else returncode,
        stdout=stdout_text,
        stderr=stderr_text,
        duration=time.monotonic() - started,
        timed_out=timed_out,
    )
    if timed_out:
        raise CommandTimeoutError(
            f"command timed out after {_format_seconds(opts.timeout or 0)}: {program}",
            result,
        )
    if cancelled:
        raise RunCancelled(opts.cancel.reason if opts.cancel is not None else None)
    return result


def command_exists(name: str) -> bool:
    """Return ``True`` when *name* resolves to an executable on ``PATH``."""
    return shutil.which(name) is not None


def which(name: str) -> str | None:
    """Return the full path of *name* on ``PATH`` or ``None``."""
    return shutil.which(name)


# ----------------------------------------------------------------------
def _feed_stdin(stream: IO[bytes], data: bytes) -> None:
    try:
        stream.write(data)
    except BrokenPipeError:
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _kill_tree(process: subprocess.Popen[bytes]) -> None:
    if _POSIX:
        try:
            # start_new_session makes the child's pid its process group id
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            process.kill()
        return
    subprocess.run(  # noqa: S603, S607 - Windows tree kill
        ["taskkill", "/PID", str(process.pid), "/T", "/F"],
        capture_output=True,
        check=False,
    )


def _format_seconds(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value)}s"
    return f"{value:.1f}s"


__all__ = [
    "CommandError",
    "CommandOptions",
    "CommandResult",
    "CommandTimeoutError",
    "command_exists",
    "run_command",
    "which",
]
