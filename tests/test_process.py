"""Tests for the external command executor."""
from __future__ import annotations

import io
import threading
import time
from pathlib import Path

import pytest

from stackbackup.cancel import CancellationToken, RunCancelled
from stackbackup.process import (
    CommandError,
    CommandOptions,
    CommandTimeoutError,
    command_exists,
    run_command,
)


def _process_gone(pid: int) -> bool:
    """Return ``True`` when *pid* no longer exists or is a zombie."""
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        fields = stat_path.read_text(encoding="utf-8").rsplit(")", 1)[1].split()
    except OSError:
        return True
    return fields[0] in {"Z", "X"}


def test_captures_stdout_and_exit_code() -> None:
    """Output is captured and trimmed; a zero exit is success."""
    result = run_command("sh", ["-c", "echo hello; echo oops >&2"])

    assert result.exit_code == 0
    assert result.is_success is True
    assert result.stdout == "hello"
    assert result.stderr == "oops"
    assert result.combined_output == "hello\noops"
    assert result.args == ["sh", "-c", "echo hello; echo oops >&2"]
    assert result.duration >= 0


def test_non_zero_exit_is_reported_not_raised() -> None:
    """A failing command returns its exit code without raising."""
    result = run_command("sh", ["-c", "echo broken >&2; exit 3"])

    assert result.exit_code == 3
    assert result.is_success is False
    assert result.describe() == "broken"


def test_missing_program_raises_command_error() -> None:
    """Failure to start surfaces as CommandError with exit code -1."""
    with pytest.raises(CommandError) as excinfo:
        run_command("definitely-not-a-real-binary-xyz")

    assert not isinstance(excinfo.value, CommandTimeoutError)
    assert excinfo.value.result.exit_code == -1


def test_env_overlay_and_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The environment overlay extends the parent environment."""
    monkeypatch.setenv("STACKBACKUP_PARENT", "inherited")
    options = CommandOptions(cwd=tmp_path, env={"STACKBACKUP_CHILD": "overlay"})

    result = run_command(
        "sh",
        ["-c", 'echo "$STACKBACKUP_PARENT $STACKBACKUP_CHILD"; pwd'],
        options,
    )

    lines = result.stdout.splitlines()
    assert lines[0] == "inherited overlay"
    assert Path(lines[1]).resolve() == tmp_path.resolve()


def test_stdin_is_forwarded() -> None:
    """String stdin is encoded and fed to the child."""
    result = run_command("sh", ["-c", "cat"], CommandOptions(stdin="piped input\n"))

    assert result.stdout == "piped input"


def test_streaming_writes_to_sink_and_still_captures() -> None:
    """Streamed lines reach the sink while the captured copy is kept."""
    sink = io.StringIO()
    options = CommandOptions(stream_stdout=True, sink=sink)

    result = run_command("sh", ["-c", "echo one; echo two"], options)

    assert sink.getvalue() == "one\ntwo\n"
    assert result.stdout == "one\ntwo"


def test_capture_disabled_discards_output() -> None:
    """Turning capture off leaves the result empty."""
    options = CommandOptions(capture_stdout=False, capture_stderr=False)

    result = run_command("sh", ["-c", "echo hidden"], options)

    assert result.stdout == ""
    assert result.exit_code == 0


@pytest.mark.mutation_timeout
def test_timeout_kills_whole_process_group(tmp_path: Path) -> None:
    """A timeout reaps a grandchild that ignores termination signals and raises."""
    pid_file = tmp_path / "grandchild.pid"
    script = (
        "trap '' TERM INT; "
        f"sh -c \"trap '' TERM INT; sleep 30\" & echo $! > {pid_file}; wait"
    )

    started = time.monotonic()
    with pytest.raises(CommandTimeoutError) as excinfo:
        run_command("sh", ["-c", script], CommandOptions(timeout=0.5))
    elapsed = time.monotonic() - started

    assert elapsed < 10
    assert excinfo.value.result.timed_out is True
    assert excinfo.value.result.exit_code == -1
    assert "timed out" in str(excinfo.value)

    grandchild = int(pid_file.read_text(encoding="utf-8").strip())
    deadline = time.monotonic() + 5
    while not _process_gone(grandchild) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert _process_gone(grandchild)


def test_zero_timeout_means_unbounded() -> None:
    """A timeout of zero does not kill short commands."""
    result = run_command("sh", ["-c", "sleep 0.2; echo done"], CommandOptions(timeout=0))

    assert result.stdout == "done"


@pytest.mark.mutation_timeout
def test_cancellation_abandons_wait() -> None:
    """A cancelled token stops the wait and raises RunCancelled promptly."""
    token = CancellationToken()
    timer = threading.Timer(0.3, token.cancel, args=("SIGTERM",))
    timer.start()

    started = time.monotonic()
    try:
        with pytest.raises(RunCancelled) as excinfo:
            run_command("sh", ["-c", "sleep 5"], CommandOptions(cancel=token))
    finally:
        timer.cancel()

    assert time.monotonic() - started < 4
    assert excinfo.value.reason == "SIGTERM"


def test_command_exists() -> None:
    """PATH lookups find ``sh`` and reject nonsense."""
    assert command_exists("sh") is True
    assert command_exists("definitely-not-a-real-binary-xyz") is False
