"""Tests for the rclone provider."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from stackbackup.config import CloudConfig
from stackbackup.logging import StructuredLogger
from stackbackup.process import CommandError, CommandOptions, CommandResult
from stackbackup.providers import rclone as rclone_module
from stackbackup.providers.rclone import RcloneError, RcloneProvider, format_size


class FakeRunner:
    """Record ``run_command`` calls and answer with queued results (default: success)."""

    def __init__(self) -> None:
        self.results: list[CommandResult | Exception] = []
        self.calls: list[tuple[list[str], CommandOptions]] = []

    def __call__(
        self,
        program: str,
        args: Sequence[str] = (),
        options: CommandOptions | None = None,
    ) -> CommandResult:
        self.calls.append(([program, *args], options or CommandOptions()))
        if not self.results:
            return CommandResult([program, *args], exit_code=0)
        outcome = self.results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def verbs(self) -> list[str]:
        return [argv[1] for argv, _ in self.calls]


def _fail(code: int = 1, stderr: str = "") -> CommandResult:
    return CommandResult(["rclone"], exit_code=code, stderr=stderr)


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    fake = FakeRunner()
    monkeypatch.setattr(rclone_module, "run_command", fake)
    return fake


@pytest.fixture
def cloud() -> CloudConfig:
    return CloudConfig(remote="b2", path="/backup/restic", transfers=8, retries=3)


def _provider(
    cloud: CloudConfig, logger: StructuredLogger, **kwargs: object
) -> RcloneProvider:
    return RcloneProvider(cloud, logger, backoff_unit=0, **kwargs)  # type: ignore[arg-type]


def test_connectivity_lists_remote_root(
    cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """Connectivity is checked with a shallow ``lsd`` of the remote."""
    _provider(cloud, logger).test_connectivity()

    argv, options = runner.calls[0]
    assert argv == ["rclone", "lsd", "b2:", "--max-depth", "1"]
    assert options.timeout == rclone_module.CONNECTIVITY_TIMEOUT

    runner.results.append(_fail(stderr="didn't find section in config file"))
    with pytest.raises(RcloneError, match="remote check failed"):
        _provider(cloud, logger).test_connectivity()


def test_sync_transfers_with_configured_flags(
    tmp_path: Path, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """Sync streams a single transfer carrying transfers and bandwidth flags."""
    cloud = CloudConfig(remote="b2", path="/backup/restic", transfers=8, bandwidth="10M")

    _provider(cloud, logger).sync(tmp_path)

    assert runner.verbs() == ["lsd", "sync"]
    argv, options = runner.calls[1]
    assert argv[argv.index("--transfers") + 1] == "8"
    assert argv[argv.index("--bwlimit") + 1] == "10M"
    assert argv[-2:] == [str(tmp_path), "b2:/backup/restic"]
    assert "--links" in argv
    assert options.stream_stdout is True
    assert options.timeout == rclone_module.SYNC_TIMEOUT


def test_sync_retries_then_succeeds(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """A failed attempt is retried until one succeeds."""
    runner.results.extend([CommandResult(["rclone"], exit_code=0), _fail(5)])

    _provider(cloud, logger).sync(tmp_path)

    assert runner.verbs() == ["lsd", "sync", "sync"]


def test_sync_gives_up_after_configured_attempts(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """Exhausting retries raises with the attempt count."""
    timeout = CommandError("command timed out", CommandResult(["rclone"], exit_code=-1))
    runner.results.extend([CommandResult(["rclone"], exit_code=0), _fail(5), _fail(5), timeout])

    with pytest.raises(RcloneError, match="sync failed after 3 attempts"):
        _provider(cloud, logger).sync(tmp_path)

    assert runner.verbs() == ["lsd", "sync", "sync", "sync"]


def test_retry_count_below_one_uses_default(logger: StructuredLogger) -> None:
    """Non-positive retry counts fall back to three attempts."""
    provider = _provider(CloudConfig(remote="b2", retries=0), logger)
    assert provider.retries == rclone_module.DEFAULT_RETRIES


def test_sync_dry_run_previews_only(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """Dry-run sync runs a single ``--dry-run`` preview."""
    _provider(cloud, logger, dry_run=True).sync(tmp_path)

    assert runner.verbs() == ["lsd", "sync"]
    assert "--dry-run" in runner.calls[1][0]


def test_restore_refuses_non_empty_target(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """A non-empty target needs --force and nothing is transferred otherwise."""
    target = tmp_path / "restore"
    target.mkdir()
    (target / "keep.txt").write_text("x", encoding="utf-8")

    with pytest.raises(RcloneError, match="not empty"):
        _provider(cloud, logger).restore(target)
    assert runner.calls == []


def test_restore_copies_and_verifies(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """With --force the copy runs and the restored tree is summarised."""
    target = tmp_path / "restore"
    target.mkdir()
    (target / "config").write_text("repo-config", encoding="utf-8")
    (target / "data").mkdir()
    (target / "keys").mkdir()
    (target / "data" / "pack").write_bytes(b"\0" * 2048)

    verification = _provider(cloud, logger).restore(target, force=True)

    assert runner.verbs() == ["lsd", "copy"]
    assert runner.calls[1][0][-2:] == ["b2:/backup/restic", str(target)]
    assert verification is not None
    assert verification.file_count == 2
    assert verification.total_bytes == 2048 + len("repo-config")
    assert verification.restic_layout is True
    assert verification.restic_config_present is True
    assert not (target / rclone_module.WRITE_PROBE_NAME).exists()


def test_restore_creates_missing_target_in_dry_run(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """Missing targets are created; dry runs return no verification."""
    target = tmp_path / "new" / "restore"

    assert _provider(cloud, logger, dry_run=True).restore(target) is None
    assert target.is_dir()
    assert runner.verbs() == ["lsd", "copy"]
    assert "--dry-run" in runner.calls[1][0]


def test_verify_restore_rejects_empty_directory(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger
) -> None:
    """An empty restore is an error."""
    with pytest.raises(RcloneError, match="empty"):
        _provider(cloud, logger).verify_restore(tmp_path)


def test_verify_restore_without_restic_layout(
    tmp_path: Path, cloud: CloudConfig, logger: StructuredLogger
) -> None:
    """Plain files are counted without claiming a repository layout."""
    (tmp_path / "notes.txt").write_text("hello", encoding="utf-8")

    verification = _provider(cloud, logger).verify_restore(tmp_path)

    assert verification.file_count == 1
    assert verification.restic_layout is False
    assert verification.to_dict()["total_size"] == "5 bytes"


def test_list_remote_contents(
    cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """Remote listings are split into non-empty lines; failures raise."""
    runner.results.extend(
        [
            CommandResult(["rclone"], exit_code=0, stdout="  -1 2024-05-01 data\n\n -1 keys\n"),
            _fail(3, "directory not found"),
        ]
    )
    provider = _provider(cloud, logger)

    assert provider.list_remote_contents() == ["-1 2024-05-01 data", "-1 keys"]
    with pytest.raises(RcloneError, match="directory not found"):
        provider.list_remote_contents()


def test_remote_size_reads_byte_count(
    cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner
) -> None:
    """``rclone size --json`` yields the destination's byte count."""
    runner.results.extend(
        [
            CommandResult(["rclone"], exit_code=0, stdout='{"count": 4, "bytes": 5242880}'),
            CommandResult(["rclone"], exit_code=0, stdout="Total size: 5 MiB"),
        ]
    )
    provider = _provider(cloud, logger)

    assert provider.remote_size() == 5242880
    assert runner.calls[0][0] == ["rclone", "size", "b2:/backup/restic", "--json"]
    with pytest.raises(RcloneError, match="cannot parse size"):
        provider.remote_size()


def test_validate_remote(cloud: CloudConfig, logger: StructuredLogger, runner: FakeRunner) -> None:
    """The remote must appear in ``rclone listremotes``."""
    runner.results.extend(
        [
            CommandResult(["rclone"], exit_code=0, stdout="b2:\ngdrive:\n"),
            CommandResult(["rclone"], exit_code=0, stdout="gdrive:\n"),
        ]
    )
    provider = _provider(cloud, logger)

    provider.validate_remote()
    with pytest.raises(RcloneError, match="not configured"):
        provider.validate_remote()


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (512, "512 bytes"),
        (2048, "2.00 KB"),
        (5 * 1024**2, "5.00 MB"),
        (3 * 1024**3, "3.00 GB"),
        (1024**4, "1.00 TB"),
    ],
)
def test_format_size(size: int, expected: str) -> None:
    """Sizes use binary units with two decimals."""
    assert format_size(size) == expected
