"""docker compose provider used to observe and drive stack state."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TextIO

from ..cancel import CancellationToken
from ..dirlist import has_manifest
from ..process import CommandError, CommandOptions, CommandResult, run_command

QUERY_TIMEOUT = 30.0


class ComposeError(RuntimeError):
    """Raised when a docker compose query fails."""


class StackState(str, Enum):
    """Observed state of a compose stack."""

    RUNNING = "running"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ComposeProvider:
    """Thin wrapper around ``docker compose`` executed inside a stack directory."""

    compose_bin: str = "docker"
    query_timeout: float = QUERY_TIMEOUT
    sink: TextIO | None = None
    cancel: CancellationToken | None = None

    def available(self) -> bool:
        """Return ``True`` when ``docker compose version`` succeeds."""
        try:
            result = self._compose(["version"], timeout=self.query_timeout)
        except CommandError:
            return False
        return result.is_success

    def status(self, path: Path) -> StackState:
        """Return ``RUNNING`` when any service of the stack is running.

        A missing directory or manifest yields ``NOT_FOUND``. A failed probe
        raises :class:`ComposeError` so callers can decide how to treat it.
        """
        if not path.is_dir() or not has_manifest(path):
            return StackState.NOT_FOUND
        try:
            result = self._compose(
                ["ps", "--services", "--filter", "status=running"],
                cwd=path,
                timeout=self.query_timeout,
            )
        except CommandError as exc:
            raise ComposeError(f"status probe failed for {path}: {exc}") from exc
        if not result.is_success:
            raise ComposeError(
                f"{self.compose_bin} compose ps failed in {path} "
                f"(exit {result.exit_code}): {result.describe()}"
            )
        running = [line for line in result.stdout.splitlines() if line.strip()]
        return StackState.RUNNING if running else StackState.STOPPED

    def stop(self, path: Path, *, grace: int, timeout: float) -> CommandResult:
        """Run ``docker compose stop --timeout <grace>`` with output streamed."""
        return self._compose(
            ["stop", "--timeout", str(grace)],
            cwd=path,
            timeout=timeout,
            stream=True,
        )

    def start(self, path: Path, *, timeout: float) -> CommandResult:
        """Run ``docker compose start`` with output streamed."""
        return self._compose(["start"], cwd=path, timeout=timeout, stream=True)

    def services(self, path: Path) -> list[str]:
        """Return the service names declared by the stack."""
        result = self._query(path, ["config", "--services"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def containers(self, path: Path) -> list[str]:
        """Return ``name: status`` lines for the stack's containers."""
        result = self._query(path, ["ps", "--format", "{{.Name}}: {{.Status}}"])
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    def _query(self, path: Path, args: Sequence[str]) -> CommandResult:
        try:
            result = self._compose(args, cwd=path, timeout=self.query_timeout)
        except CommandError as exc:
            raise ComposeError(str(exc)) from exc
        if not result.is_success:
            joined = " ".join(args)
            raise ComposeError(
                f"{self.compose_bin} compose {joined} failed (exit {result.exit_code}): "
                f"{result.describe()}"
            )
        return result

    def _compose(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        stream: bool = False,
    ) -> CommandResult:
        options = CommandOptions(
            cwd=cwd,
            timeout=timeout,
            stream_stdout=stream,
            stream_stderr=stream,
            sink=self.sink,
            cancel=self.cancel,
        )
        return run_command(self.compose_bin, ["compose", *args], options)


__all__ = ["ComposeError", "ComposeProvider", "StackState"]
