"""State-aware stop/start of compose stacks around a backup.

The state each stack was in before the run touched it is captured once and
never changes afterwards. It alone decides whether a stack is stopped before
its backup and started again afterwards:

==========  ===========================  ============================
Captured    stop()                       start()
==========  ===========================  ============================
RUNNING     stop, settle, verify         start
STOPPED     no-op                        no-op (left stopped)
NOT_FOUND   no-op, warning               no-op
UNKNOWN     stop (treated as RUNNING)    start (treated as RUNNING)
==========  ===========================  ============================
"""
from __future__ import annotations

import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .cancel import CancellationToken
from .logging import StructuredLogger
from .process import CommandError, CommandTimeoutError
from .providers.compose import ComposeError, ComposeProvider, StackState

STOP_COMMAND_BUFFER = 30
SETTLE_DELAY = 2.0
VERIFY_ATTEMPTS = 3
VERIFY_INTERVAL = 3.0


class StackError(RuntimeError):
    """Raised when a stack could not be stopped or started."""


class StackStateTable:
    """Initial stack states for one run, keyed by identifier.

    Iteration is in sorted identifier order. A state is written once; later
    captures for the same identifier keep the original value.
    """

    def __init__(self) -> None:
        self._states: dict[str, StackState] = {}

    def capture(self, identifier: str, state: StackState) -> StackState:
        """Store *state* unless one was already captured; return the stored value."""
        return self._states.setdefault(identifier, state)

    def get(self, identifier: str) -> StackState:
        """Return the captured state, ``UNKNOWN`` when none was captured."""
        return self._states.get(identifier, StackState.UNKNOWN)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[tuple[str, StackState]]:
        for identifier in sorted(self._states):
            yield identifier, self._states[identifier]


def _acts_as_running(state: StackState) -> bool:
    return state in (StackState.RUNNING, StackState.UNKNOWN)


@dataclass(slots=True)
class StackLifecycleController:
    """Stop and restart stacks according to their captured initial state."""

    compose: ComposeProvider
    logger: StructuredLogger
    stack_timeout: int = 300
    states: StackStateTable = field(default_factory=StackStateTable)
    settle_delay: float = SETTLE_DELAY
    verify_attempts: int = VERIFY_ATTEMPTS
    verify_interval: float = VERIFY_INTERVAL
    dry_run: bool = False
    cancel: CancellationToken | None = None

    @property
    def command_timeout(self) -> float:
        """Timeout for stop/start commands: stack timeout plus a fixed buffer."""
        return float(self.stack_timeout + STOP_COMMAND_BUFFER)

    def capture_initial_state(self, identifier: str, path: Path) -> StackState:
        """Probe and record the stack's state before any mutation."""
        if identifier in self.states:
            return self.states.get(identifier)
        try:
            state = self.compose.status(path)
        except ComposeError as exc:
            self.logger.warning(f"Could not determine state of {identifier}: {exc}")
            state = StackState.UNKNOWN
        self.logger.debug(f"Initial state of {identifier}: {state.value}")
        return self.states.capture(identifier, state)

    def stop(self, identifier: str, path: Path) -> None:
        """Stop the stack if its captured state calls for it.

        Raises :class:`StackError` when the stack still reports running
        containers after the verification attempts.
        """
        state = self.states.get(identifier)
        if state is StackState.NOT_FOUND:
            self.logger.warning(f"Stack {identifier} not found at {path}; nothing to stop")
            return
        if not _acts_as_running(state):
            self.logger.info(f"Skipping stop for {identifier} (was {state.value})")
            return
        if state is StackState.UNKNOWN:
            self.logger.warning(f"State of {identifier} unknown; stopping defensively")

        self.logger.progress(f"Stopping stack: {identifier}")
        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would stop stack: {identifier}")
            return

        try:
            result = self.compose.stop(
                path, grace=self.stack_timeout, timeout=self.command_timeout
            )
        except CommandTimeoutError:
            self.logger.warning(
                f"Stop command for {identifier} timed out after {self.command_timeout:g}s"
            )
        except CommandError as exc:
            self.logger.warning(f"Stop command for {identifier} failed: {exc}")
        else:
            if not result.is_success:
                self.logger.warning(
                    f"Stop command for {identifier} exited {result.exit_code}: "
                    f"{result.describe()}"
                )

        self._sleep(self.settle_delay)
        last_error: str | None = None
        for attempt in range(1, self.verify_attempts + 1):
            try:
                current = self.compose.status(path)
            except ComposeError as exc:
                last_error = str(exc)
                current = StackState.UNKNOWN
            if current in (StackState.STOPPED, StackState.NOT_FOUND):
                self.logger.info(f"Stack {identifier} stopped")
                return
            if attempt < self.verify_attempts:
                self._sleep(self.verify_interval)

        if last_error is not None:
            raise StackError(f"could not confirm stack {identifier} stopped: {last_error}")
        raise StackError(f"stack {identifier} did not stop: containers still running")

    def start(self, identifier: str, path: Path) -> None:
        """Start the stack again if it was running (or unknown) before the run."""
        state = self.states.get(identifier)
        if not _acts_as_running(state):
            self.logger.info(f"Skipping restart for {identifier} (was {state.value})")
            return
        self._start(identifier, path, label="Restarting")

    def force_start(self, identifier: str, path: Path) -> None:
        """Start the stack regardless of its captured state (recovery path)."""
        self._start(identifier, path, label="Force starting")

    # ------------------------------------------------------------------
    def _start(self, identifier: str, path: Path, *, label: str) -> None:
        self.logger.progress(f"{label} stack: {identifier}")
        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would start stack: {identifier}")
            return
        try:
            result = self.compose.start(path, timeout=self.command_timeout)
        except CommandTimeoutError as exc:
            raise StackError(
                f"start command for {identifier} timed out after {self.command_timeout:g}s"
            ) from exc
        except CommandError as exc:
            raise StackError(f"failed to start stack {identifier}: {exc}") from exc
        if not result.is_success:
            raise StackError(
                f"failed to start stack {identifier} (exit {result.exit_code}): "
                f"{result.describe()}"
            )
        self.logger.info(f"Stack {identifier} started")

    def _sleep(self, seconds: float) -> None:
        if self.cancel is not None:
            self.cancel.sleep(seconds)
        elif seconds > 0:
            time.sleep(seconds)


__all__ = [
    "StackError",
    "StackLifecycleController",
    "StackStateTable",
]
