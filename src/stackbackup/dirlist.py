"""Directory list: which stack directories take part in a backup run.

The list is a plain text file of ``identifier=true|false`` lines. Relative
identifiers name subdirectories of the stacks base directory that were found
by discovery; absolute identifiers are external directories registered by
the operator and are never added or removed by :meth:`DirectoryListManager.sync`.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .locking import LockError, LockHandle, LockManager
from .logging import StructuredLogger

MANIFEST_FILENAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

FILE_HEADER = (
    "# Auto-generated directory list for selective backup",
    "# Edit this file to enable/disable backup for each directory",
    "# true = backup enabled, false = skip backup",
)
DISCOVERED_SECTION = "# Discovered directories (relative to the stacks directory)"
EXTERNAL_SECTION = "# External directories (absolute paths)"


class DirlistError(RuntimeError):
    """Raised when the directory list cannot be read, changed or persisted."""


@dataclass(slots=True)
class DirectoryEntry:
    """One directory list line."""

    identifier: str
    enabled: bool = False
    is_external: bool = False

    def to_line(self) -> str:
        """Render the entry in ``identifier=true|false`` form."""
        return f"{self.identifier}={'true' if self.enabled else 'false'}"


@dataclass(slots=True)
class SyncResult:
    """Identifiers added and removed by a sync, each sorted."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return ``True`` when the sync modified the list."""
        return bool(self.added or self.removed)


def manifest_path(directory: Path) -> Path | None:
    """Return the first compose manifest found in *directory*."""
    for name in MANIFEST_FILENAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def has_manifest(directory: Path) -> bool:
    """Return ``True`` when *directory* contains a compose manifest."""
    return manifest_path(directory) is not None


def discover_directories(base_dir: Path) -> list[str]:
    """Return sorted names of non-hidden subdirectories holding a manifest."""
    try:
        children = list(base_dir.iterdir())
    except FileNotFoundError as exc:
        raise DirlistError(f"stacks directory {base_dir} does not exist") from exc
    except OSError as exc:
        raise DirlistError(f"cannot read stacks directory {base_dir}: {exc}") from exc
    found = [
        child.name
        for child in children
        if child.is_dir() and not child.name.startswith(".") and has_manifest(child)
    ]
    return sorted(found)


def validate_dir_name(name: str) -> None:
    """Raise :class:`DirlistError` unless *name* is a safe directory name."""
    if not name:
        raise DirlistError("directory name cannot be empty")
    if set(name) == {"."}:
        raise DirlistError(f"invalid directory name: {name!r}")
    if name.startswith("."):
        raise DirlistError(f"hidden directories are not allowed: {name!r}")
    if not _NAME_PATTERN.match(name):
        raise DirlistError(f"directory name contains invalid characters: {name!r}")


def is_valid_dir_name(name: str) -> bool:
    """Return ``True`` when :func:`validate_dir_name` accepts *name*."""
    try:
        validate_dir_name(name)
    except DirlistError:
        return False
    return True


def validate_absolute_path(path: str | Path) -> None:
    """Raise :class:`DirlistError` unless *path* is a usable external directory."""
    candidate = Path(path)
    if not candidate.is_absolute():
        raise DirlistError(f"path must be absolute: {path}")
    if not candidate.exists():
        raise DirlistError(f"directory does not exist: {path}")
    if not candidate.is_dir():
        raise DirlistError(f"path is not a directory: {path}")
    if not has_manifest(candidate):
        raise DirlistError(f"no compose file found in {path}")


def is_external_identifier(identifier: str) -> bool:
    """Return ``True`` for absolute (external) identifiers."""
    return identifier.startswith("/")


class DirectoryTable:
    """Entries keyed by identifier, always iterated in sorted order."""

    def __init__(self, entries: Iterable[DirectoryEntry] = ()) -> None:
        self._entries: dict[str, DirectoryEntry] = {}
        for entry in entries:
            self._entries[entry.identifier] = entry

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[DirectoryEntry]:
        for identifier in sorted(self._entries):
            yield self._entries[identifier]

    def get(self, identifier: str) -> DirectoryEntry | None:
        return self._entries.get(identifier)

    def put(self, entry: DirectoryEntry) -> None:
        self._entries[entry.identifier] = entry

    def pop(self, identifier: str) -> DirectoryEntry | None:
        return self._entries.pop(identifier, None)

    def identifiers(self) -> list[str]:
        return sorted(self._entries)


class DirectoryListManager:
    """Load, reconcile and persist the directory list."""

    def __init__(
        self,
        dirlist_file: Path,
        base_dir: Path,
        *,
        locks: LockManager | None = None,
        logger: StructuredLogger | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        self.dirlist_file = Path(dirlist_file)
        self.base_dir = Path(base_dir)
        self.locks = locks or LockManager(self.dirlist_file.parent / ".locks", lock_timeout)
        self.logger = logger
        self.lock_timeout = lock_timeout
        self._table = DirectoryTable()

    # Persistence -----------------------------------------------------
    def load(self) -> None:
        """Read the list file; a missing file yields an empty list."""
        table = DirectoryTable()
        try:
            text = self.dirlist_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._table = table
            return
        except OSError as exc:
            raise DirlistError(f"failed to read {self.dirlist_file}: {exc}") from exc

        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            identifier, sep, value = line.partition("=")
            if not sep:
                continue
            identifier = identifier.strip()
            enabled = value.strip() == "true"
            if is_external_identifier(identifier):
                # Kept even when the path is currently missing; the run reports it.
                table.put(DirectoryEntry(identifier, enabled, is_external=True))
            elif is_valid_dir_name(identifier):
                table.put(DirectoryEntry(identifier, enabled))
            else:
                self._debug(f"Skipping invalid directory list entry: {identifier!r}")
        self._table = table

    def save(self) -> int:
        """Atomically rewrite the list file under the dirlist lock.

        Returns the time spent waiting for the lock in milliseconds.
        """
        with self._locked() as handle:
            self._write_atomic(self.render())
        return handle.wait_ms

    @contextmanager
    def edit(self) -> Iterator[int]:
        """Hold the dirlist lock across load, the caller's changes and the write.

        The entries are reloaded once the lock is held and written back only
        when the block exits without an exception. Yields the lock wait in ms.
        """
        with self._locked() as handle:
            self.load()
            yield handle.wait_ms
            self._write_atomic(self.render())

    @contextmanager
    def _locked(self) -> Iterator[LockHandle]:
        stack = ExitStack()
        try:
            handle = stack.enter_context(self.locks.dirlist_lock(timeout=self.lock_timeout))
        except LockError as exc:
            raise DirlistError(f"failed to lock directory list: {exc}") from exc
        with stack:
            yield handle

    def render(self) -> str:
        """Return the file content for the current entries."""
        discovered = [entry for entry in self._table if not entry.is_external]
        external = [entry for entry in self._table if entry.is_external]
        lines = [*FILE_HEADER, "", DISCOVERED_SECTION]
        lines.extend(entry.to_line() for entry in discovered)
        if external:
            lines.extend(["", EXTERNAL_SECTION])
            lines.extend(entry.to_line() for entry in external)
        return "\n".join(lines) + "\n"

    def _write_atomic(self, content: str) -> None:
        directory = self.dirlist_file.parent
        tmp_path: Path | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(directory),
                prefix=f".{self.dirlist_file.name}.",
                suffix=".tmp",
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.dirlist_file)
            os.chmod(self.dirlist_file, 0o600)
        except OSError as exc:
            raise DirlistError(f"failed to write {self.dirlist_file}: {exc}") from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

    # Reconciliation --------------------------------------------------
    def sync(self) -> SyncResult:
        """Reconcile discovered entries with the stacks directory.

        New directories are added disabled, vanished ones removed. External
        entries are left untouched. Running it twice in a row changes
        nothing the second time.
        """
        present = set(discover_directories(self.base_dir))
        result = SyncResult()
        for name in sorted(present):
            if name not in self._table:
                self._table.put(DirectoryEntry(name, enabled=False))
                result.added.append(name)
        for entry in list(self._table):
            if entry.is_external:
                continue
            if entry.identifier not in present:
                self._table.pop(entry.identifier)
                result.removed.append(entry.identifier)
        return result

    # Queries ---------------------------------------------------------
    def entries(self) -> list[DirectoryEntry]:
        """Return all entries in sorted identifier order."""
        return list(self._table)

    def identifiers(self) -> list[str]:
        """Return every identifier, sorted."""
        return self._table.identifiers()

    def enabled(self) -> list[str]:
        """Return enabled identifiers, sorted."""
        return [entry.identifier for entry in self._table if entry.enabled]

    def disabled(self) -> list[str]:
        """Return disabled identifiers, sorted."""
        return [entry.identifier for entry in self._table if not entry.enabled]

    def count(self) -> tuple[int, int, int]:
        """Return ``(total, enabled, disabled)``."""
        enabled = len(self.enabled())
        return len(self._table), enabled, len(self._table) - enabled

    def exists(self, identifier: str) -> bool:
        """Return ``True`` when *identifier* is listed."""
        return identifier in self._table

    def entry(self, identifier: str) -> DirectoryEntry | None:
        """Return the entry for *identifier*, if any."""
        return self._table.get(identifier)

    def is_enabled(self, identifier: str) -> bool:
        """Return the enabled flag (``False`` for unknown identifiers)."""
        entry = self._table.get(identifier)
        return entry.enabled if entry is not None else False

    def full_path(self, identifier: str) -> Path:
        """Resolve *identifier* to a filesystem path."""
        if is_external_identifier(identifier):
            return Path(identifier)
        return self.base_dir / identifier

    def snapshot_tag(self, identifier: str) -> str:
        """Return the per-directory snapshot tag for *identifier*."""
        if is_external_identifier(identifier):
            return f"{Path(identifier).name}-external"
        return identifier

    # Mutations -------------------------------------------------------
    def set_enabled(self, identifier: str, enabled: bool) -> None:
        """Enable or disable a listed directory."""
        entry = self._require(identifier)
        entry.enabled = enabled

    def toggle(self, identifier: str) -> bool:
        """Flip the enabled flag and return the new value."""
        entry = self._require(identifier)
        entry.enabled = not entry.enabled
        return entry.enabled

    def set_all(self, enabled: bool) -> None:
        """Set every entry to *enabled*."""
        for entry in self._table:
            entry.enabled = enabled

    def add_external(self, path: str | Path) -> str:
        """Register an external directory (disabled) and return its identifier."""
        identifier = str(Path(path))
        validate_absolute_path(identifier)
        if identifier in self._table:
            raise DirlistError(f"directory already in list: {identifier}")
        self._table.put(DirectoryEntry(identifier, enabled=False, is_external=True))
        return identifier

    def remove_external(self, path: str | Path) -> None:
        """Remove an external directory; discovered entries cannot be removed."""
        identifier = str(Path(path))
        entry = self._table.get(identifier)
        if entry is None:
            raise DirlistError(f"directory not in list: {identifier}")
        if not entry.is_external:
            raise DirlistError(f"not an external directory: {identifier}")
        self._table.pop(identifier)

    # ------------------------------------------------------------------
    def _require(self, identifier: str) -> DirectoryEntry:
        entry = self._table.get(identifier)
        if entry is None:
            raise DirlistError(f"directory not in list: {identifier}")
        return entry

    def _debug(self, message: str) -> None:
        if self.logger is not None:
            self.logger.debug(message)


__all__ = [
    "DirectoryEntry",
    "DirectoryListManager",
    "DirectoryTable",
    "DirlistError",
    "MANIFEST_FILENAMES",
    "SyncResult",
    "discover_directories",
    "has_manifest",
    "is_valid_dir_name",
    "manifest_path",
    "validate_absolute_path",
    "validate_dir_name",
]
