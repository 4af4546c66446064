"""Cooperative cancellation shared between signal handlers and the pipeline."""
from __future__ import annotations

import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import FrameType

SHUTDOWN_SIGNALS = tuple(
    sig for sig in (getattr(signal, name, None) for name in ("SIGINT", "SIGTERM", "SIGHUP"))
    if sig is not None
)
POLL_INTERVAL = 0.1


class RunCancelled(RuntimeError):
    """Raised at a suspension point once cancellation has been requested."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or "cancelled"
        super().__init__(f"run cancelled ({self.reason})")


@dataclass(slots=True)
class CancellationToken:
    """Flag set by signal handlers and polled by long operations.

    Signal handlers only call :meth:`cancel`, which flips a flag and takes no
    lock. The code that owns the run observes the token (via :meth:`check`,
    :meth:`sleep` or the command executor) and performs cleanup on its own
    stack.
    """

    reason: str | None = None
    poll_interval: float = POLL_INTERVAL
    _cancelled: bool = field(default=False, init=False, repr=False)

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation; the first *reason* wins."""
        if not self._cancelled:
            self.reason = reason
            self._cancelled = True

    def check(self) -> None:
        """Raise :class:`RunCancelled` if cancellation was requested."""
        if self._cancelled:
            raise RunCancelled(self.reason)

    def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early and raising when cancelled."""
        deadline = time.monotonic() + max(seconds, 0.0)
        while True:
            self.check()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(self.poll_interval, remaining))


@contextmanager
def handle_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT, SIGTERM and SIGHUP to *token* for the duration of the block.

    Previous handlers are restored on exit. Outside the main thread signal
    handlers cannot be installed and the token is yielded unchanged.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)

    previous = {sig: signal.signal(sig, _handler) for sig in SHUTDOWN_SIGNALS}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


__all__ = ["CancellationToken", "RunCancelled", "SHUTDOWN_SIGNALS", "handle_signals"]
