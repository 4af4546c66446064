"""Advisory file locks and PID-file singletons.

``FileLock`` serialises writers of shared state (the directory list) across
processes using ``fcntl.flock``. ``PIDFile`` keeps a second backup run from
starting while one is alive, and recovers automatically from a stale file
left behind by a crashed run.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

POLL_INTERVAL = 0.1


class LockError(RuntimeError):
    """Raised when a lock or PID file cannot be managed."""


class LockTimeoutError(LockError):
    """Raised when a lock could not be acquired within the timeout."""


class InstanceRunningError(LockError):
    """Raised when another live process owns the PID file."""

    def __init__(self, pid: int, path: Path) -> None:
        super().__init__(f"another instance is running (PID: {pid}, pidfile: {path})")
        self.pid = pid
        self.path = path


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class FileLock:
    """Exclusive advisory lock on *path*.

    The lock file is created on demand and left in place after release; it
    carries JSON metadata (``pid`` and ``path``) for diagnostics only. The
    lock itself is the ``flock`` on the open descriptor, so a crashed holder
    never leaves the lock held.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._fd: int | None = None

    @property
    def locked(self) -> bool:
        """Return ``True`` while this object holds the lock."""
        return self._fd is not None

    def acquire(self, timeout: float) -> int:
        """Block for up to *timeout* seconds; return the wait in milliseconds."""
        if self._fd is not None:
            return 0
        started = time.monotonic()
        deadline = started + max(timeout, 0.0)
        fd = self._open()
        while True:
            if self._try_lock(fd):
                self._fd = fd
                self._write_metadata(fd)
                return int((time.monotonic() - started) * 1000)
            if time.monotonic() >= deadline:
                os.close(fd)
                raise LockTimeoutError(
                    f"failed to acquire lock {self.path} (timeout: {timeout:g}s)"
                )
            time.sleep(POLL_INTERVAL)

    def try_acquire(self) -> bool:
        """Attempt to take the lock once without waiting."""
        if self._fd is not None:
            return True
        fd = self._open()
        if not self._try_lock(fd):
            os.close(fd)
            return False
        self._fd = fd
        self._write_metadata(fd)
        return True

    def release(self) -> None:
        """Release the lock; calling it again is a no-op."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def __enter__(self) -> FileLock:
        self.acquire(0.0)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    # ------------------------------------------------------------------
    def _open(self) -> int:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o755)
            return os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as exc:
            raise LockError(f"failed to open lock file {self.path}: {exc}") from exc

    @staticmethod
    def _try_lock(fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if exc.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                return False
            os.close(fd)
            raise LockError(f"flock failed: {exc}") from exc
        return True

    def _write_metadata(self, fd: int) -> None:
        payload = json.dumps({"pid": os.getpid(), "path": str(self.path)}).encode("utf-8")
        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, payload)
        except OSError:
            # Metadata is informational; the flock is what matters.
            pass


class PIDFile:
    """Single-instance guard backed by a PID file.

    The PID file is only trusted while its companion ``flock`` (*lock*,
    ``<name>.lock`` by default) is held. The flock is taken before the PID
    is read and kept until :meth:`release`, so two live starters can never
    both pass the check.
    """

    def __init__(self, path: Path, lock: FileLock | None = None) -> None:
        self.path = Path(path)
        self.lock = lock or FileLock(self.path.with_suffix(".lock"))
        self._owned = False

    def acquire(self) -> None:
        """Record the current PID, refusing when a live process owns the file."""
        if not self.lock.try_acquire():
            owner = read_pid(self.path)
            raise InstanceRunningError(owner if owner is not None else -1, self.path)
        try:
            existing = read_pid(self.path)
            if existing is not None and existing != os.getpid() and pid_is_running(existing):
                raise InstanceRunningError(existing, self.path)
            self._write_pid()
        except BaseException:
            self.lock.release()
            raise
        self._owned = True

    def release(self) -> None:
        """Remove the PID file if we created it and drop the guard lock."""
        if not self._owned:
            return
        self._owned = False
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            pass
        finally:
            self.lock.release()

    def _write_pid(self) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise LockError(f"failed to write pid file {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def __enter__(self) -> PIDFile:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class LockManager:
    """Hand out named locks and PID files under a shared lock directory."""

    DIRLIST_LOCK = "dirlist"
    RUN_PIDFILE = "stackbackup"

    def __init__(self, lock_dir: Path, default_timeout: float = 30.0) -> None:
        self.lock_dir = Path(lock_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.lock_dir / f"{name}.lock"

    def file_lock(self, name: str) -> FileLock:
        """Return an unacquired :class:`FileLock` for *name*."""
        return FileLock(self.lock_path(name))

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the *name* lock for the duration of the context."""
        lock = self.file_lock(name)
        wait_ms = lock.acquire(self.default_timeout if timeout is None else timeout)
        try:
            yield LockHandle(path=lock.path, wait_ms=wait_ms)
        finally:
            lock.release()

    def dirlist_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock guarding directory-list writes."""
        return self.lock(self.DIRLIST_LOCK, timeout=timeout)

    def pid_file(self, name: str = RUN_PIDFILE) -> PIDFile:
        """Return the PID-file guard for *name*, locked through ``<name>.lock``."""
        return PIDFile(self.lock_dir / f"{name}.pid", self.file_lock(name))


def read_pid(path: Path) -> int | None:
    """Return the PID stored in *path*, or ``None`` when absent or malformed."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        pid = int(text)
    except ValueError:
        return None
    return pid if pid > 0 else None


def pid_is_running(pid: int) -> bool:
    """Return ``True`` when a process with *pid* exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


__all__ = [
    "FileLock",
    "InstanceRunningError",
    "LockError",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "PIDFile",
    "pid_is_running",
    "read_pid",
]
