"""Tests for the stackbackup CLI."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from stackbackup import __version__
from stackbackup.cancel import RunCancelled
from stackbackup.cli import app
from stackbackup.locking import InstanceRunningError
from stackbackup.service import BackupService, PreflightError, RunStats

runner = CliRunner()

SNAPSHOT_JSON = json.dumps(
    [
        {
            "id": "cafebabe0001",
            "short_id": "cafebabe",
            "time": "2024-05-01T02:00:00Z",
            "hostname": "nas",
            "tags": ["docker-backup", "selective-backup", "webapp", "2024-05-01"],
            "paths": ["/opt/docker-stacks/webapp"],
        }
    ]
)


@dataclass
class CliEnv:
    """Paths and environment prepared for one CLI invocation."""

    env: dict[str, str]
    root: Path
    stacks: Path
    dirlist_file: Path
    bin_dir: Path

    def calls(self, tool: str) -> list[str]:
        log = self.root / f"{tool}.calls"
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _write_stub(bin_dir: Path, name: str, body: str, log: Path) -> Path:
    path = bin_dir / name
    path.write_text(f'#!/bin/sh\necho "$*" >> {log}\n{body}', encoding="utf-8")
    path.chmod(0o755)
    return path


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
    restic_backup_exit: int = 0,
) -> CliEnv:
    stacks = tmp_path / "stacks"
    for name in ("webapp", "db"):
        (stacks / name).mkdir(parents=True)
        (stacks / name / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    docker = _write_stub(bin_dir, "docker", "exit 0\n", tmp_path / "docker.calls")
    restic = _write_stub(
        bin_dir,
        "restic",
        "case \"$1\" in\n"
        f"  snapshots) [ \"$2\" = \"--json\" ] && echo '{SNAPSHOT_JSON}' ;;\n"
        "  ls) echo /opt/docker-stacks/webapp/docker-compose.yml ;;\n"
        "  stats) echo '{\"total_size\": 2048, \"snapshots_count\": 1}' ;;\n"
        f"  backup) exit {restic_backup_exit} ;;\n"
        "esac\n"
        "exit 0\n",
        tmp_path / "restic.calls",
    )

    config: dict[str, object] = {
        "stacks_dir": str(stacks),
        "dirlist_file": str(tmp_path / "state" / "dirlist"),
        "logs_dir": str(tmp_path / "logs"),
        "lock_dir": str(tmp_path / "run"),
        "docker": {"compose_bin": str(docker)},
        "restic": {
            "repository": str(tmp_path / "repo"),
            "password_command": "echo secret",
            "restic_bin": str(restic),
        },
        "cloud": {"rclone_bin": str(bin_dir / "rclone")},
    }
    if config_overrides:
        config.update(config_overrides)
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")

    return CliEnv(
        env={"STACKBACKUP_CONFIG_FILE": str(config_path)},
        root=tmp_path,
        stacks=stacks,
        dirlist_file=tmp_path / "state" / "dirlist",
        bin_dir=bin_dir,
    )


def _last_operation(cli_env: CliEnv) -> dict[str, object]:
    lines = (cli_env.root / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    cli_env = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=cli_env.env)

    assert result.exit_code == 0
    assert f"stackbackup {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    cli_env = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=cli_env.env)

    assert result.exit_code == 0
    assert "Docker Stack Backup" in result.stdout


def test_invalid_config_exits_with_config_code(tmp_path: Path) -> None:
    """Configuration errors map to exit code 1."""
    cli_env = _prepare_environment(tmp_path, config_overrides={"unexpected": True})
    result = runner.invoke(app, ["config", "show"], env=cli_env.env)

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_config_show_renders_table(tmp_path: Path) -> None:
    """`config show` prints the merged configuration in a table."""
    cli_env = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["config", "show"], env=cli_env.env)

    assert result.exit_code == 0
    assert "stacks_dir" in result.stdout
    assert "lock_timeout" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits the resolved configuration with secrets redacted."""
    cli_env = _prepare_environment(
        tmp_path,
        config_overrides={"restic": {"repository": "/srv/restic", "password": "hunter2"}},
    )
    result = runner.invoke(app, ["config", "show", "--json"], env=cli_env.env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["stacks_dir"] == str(cli_env.stacks)
    restic = payload["restic"]
    assert isinstance(restic, dict)
    assert restic["password"] == "********"
    assert "hunter2" not in result.stdout


def test_dirlist_sync_list_and_enable(tmp_path: Path) -> None:
    """New directories are added disabled and can then be enabled."""
    cli_env = _prepare_environment(tmp_path)

    synced = runner.invoke(app, ["dirlist", "sync"], env=cli_env.env)
    assert synced.exit_code == 0
    assert "+ db" in synced.stdout
    assert "+ webapp" in synced.stdout

    again = runner.invoke(app, ["dirlist", "sync"], env=cli_env.env)
    assert "Directory list is up to date." in again.stdout

    enabled = runner.invoke(app, ["dirlist", "enable", "webapp"], env=cli_env.env)
    assert enabled.exit_code == 0
    assert "Enabled webapp." in enabled.stdout
    assert isinstance(_last_operation(cli_env)["lock_wait_ms"], int)
    content = cli_env.dirlist_file.read_text(encoding="utf-8")
    assert "webapp=true" in content
    assert "db=false" in content

    listed = runner.invoke(app, ["dirlist", "list", "--json"], env=cli_env.env)
    assert listed.exit_code == 0
    payload = _extract_json(listed.stdout)
    assert payload["directories"] == [
        {"identifier": "db", "enabled": False, "external": False},
        {"identifier": "webapp", "enabled": True, "external": False},
    ]


def test_dirlist_sync_dry_run_writes_nothing(tmp_path: Path) -> None:
    """`dirlist sync --dry-run` reports changes without creating the file."""
    cli_env = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["dirlist", "sync", "--dry-run"], env=cli_env.env)

    assert result.exit_code == 0
    assert "Dry run" in result.stdout
    assert not cli_env.dirlist_file.exists()


def test_dirlist_enable_unknown_directory_fails(tmp_path: Path) -> None:
    """Enabling an unlisted directory is a validation error."""
    cli_env = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["dirlist", "enable", "ghost"], env=cli_env.env)

    assert result.exit_code == 2
    record = _last_operation(cli_env)
    assert record["command"] == "dirlist enable"
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_dirlist_external_paths(tmp_path: Path) -> None:
    """External paths must be absolute and are added disabled."""
    cli_env = _prepare_environment(tmp_path)
    external = tmp_path / "srv" / "data"
    external.mkdir(parents=True)
    (external / "compose.yaml").write_text("services: {}\n", encoding="utf-8")

    relative = runner.invoke(app, ["dirlist", "add-external", "srv/data"], env=cli_env.env)
    assert relative.exit_code == 2

    added = runner.invoke(app, ["dirlist", "add-external", str(external)], env=cli_env.env)
    assert added.exit_code == 0
    assert f"{external}=false" in cli_env.dirlist_file.read_text(encoding="utf-8")

    listed = runner.invoke(app, ["dirlist", "list", "--json"], env=cli_env.env)
    entries = _extract_json(listed.stdout)["directories"]
    assert isinstance(entries, list)
    assert {"identifier": str(external), "enabled": False, "external": True} in entries

    removed = runner.invoke(app, ["dirlist", "remove-external", str(external)], env=cli_env.env)
    assert removed.exit_code == 0
    assert str(external) not in cli_env.dirlist_file.read_text(encoding="utf-8")


def test_run_backs_up_enabled_directories(tmp_path: Path) -> None:
    """A full run drives docker and restic for each enabled directory."""
    cli_env = _prepare_environment(tmp_path)
    runner.invoke(app, ["dirlist", "sync"], env=cli_env.env)
    runner.invoke(app, ["dirlist", "enable", "webapp"], env=cli_env.env)
    (cli_env.stacks / "cache").mkdir()
    (cli_env.stacks / "cache" / "compose.yaml").write_text("services: {}\n", encoding="utf-8")

    result = runner.invoke(app, ["run"], env=cli_env.env)

    assert result.exit_code == 0, result.output
    backups = [line for line in cli_env.calls("restic") if line.startswith("backup")]
    assert len(backups) == 1
    assert "--tag webapp" in backups[0]
    assert backups[0].endswith(str(cli_env.stacks / "webapp"))
    assert any(line.startswith("forget") for line in cli_env.calls("restic"))
    assert not any("stop" in line for line in cli_env.calls("docker"))
    assert not (tmp_path / "run" / "stackbackup.pid").exists()
    record = _last_operation(cli_env)
    assert record["command"] == "run"
    assert isinstance(record["lock_wait_ms"], int)
    assert "cache=false" in cli_env.dirlist_file.read_text(encoding="utf-8")


def test_run_dry_run_skips_restic_mutations(tmp_path: Path) -> None:
    """`run --dry-run` only probes; no snapshot is written."""
    cli_env = _prepare_environment(tmp_path)
    runner.invoke(app, ["dirlist", "sync"], env=cli_env.env)
    runner.invoke(app, ["dirlist", "enable-all"], env=cli_env.env)

    result = runner.invoke(app, ["run", "--dry-run"], env=cli_env.env)

    assert result.exit_code == 0, result.output
    assert "Dry run" in result.stdout
    assert not any(line.startswith("backup") for line in cli_env.calls("restic"))


def test_run_backup_failure_exits_with_backup_code(tmp_path: Path) -> None:
    """A failed snapshot is reported with exit code 3 and the directory name."""
    cli_env = _prepare_environment(tmp_path, restic_backup_exit=1)
    runner.invoke(app, ["dirlist", "sync"], env=cli_env.env)
    runner.invoke(app, ["dirlist", "enable", "db"], env=cli_env.env)

    result = runner.invoke(app, ["run"], env=cli_env.env)

    assert result.exit_code == 3
    assert "Backup completed with 1 failures." in result.output
    record = _last_operation(cli_env)
    assert record["result"]["errors"] == ["db"]  # type: ignore[index]


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (RunCancelled("SIGTERM"), 5),
        (InstanceRunningError(4242, Path("/run/stackbackup/stackbackup.pid")), 6),
        (PreflightError("docker compose is not available", "docker"), 4),
        (PreflightError("cannot access restic repository", "restic"), 3),
    ],
)
def test_run_maps_fatal_errors_to_exit_codes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    error: Exception,
    code: int,
) -> None:
    """Fatal run errors map onto distinct exit codes."""
    cli_env = _prepare_environment(tmp_path)

    def _raise(self: BackupService) -> RunStats:
        raise error

    monkeypatch.setattr(BackupService, "run", _raise)
    result = runner.invoke(app, ["run"], env=cli_env.env)

    assert result.exit_code == code


def test_run_verbose_reaches_logger(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """`run --verbose` switches the console to verbose output."""
    cli_env = _prepare_environment(tmp_path)
    seen: list[bool] = []

    def _fake_run(self: BackupService) -> RunStats:
        seen.append(self.logger.verbose)
        return RunStats()

    monkeypatch.setattr(BackupService, "run", _fake_run)
    result = runner.invoke(app, ["run", "--verbose"], env=cli_env.env)

    assert result.exit_code == 0
    assert seen == [True]


def test_health_reports_checks(tmp_path: Path) -> None:
    """`health --json` passes with working tools and fails without restic."""
    cli_env = _prepare_environment(tmp_path)
    healthy = runner.invoke(app, ["health", "--json"], env=cli_env.env)

    assert healthy.exit_code == 0, healthy.output
    payload = _extract_json(healthy.stdout)
    assert payload["ok"] is True
    entries = payload["checks"]
    assert isinstance(entries, list)
    checks = {check["name"]: check["detail"] for check in entries}
    assert checks["repository access"] == "1 snapshots, 2.00 KB"

    (cli_env.bin_dir / "restic").unlink()
    broken = runner.invoke(app, ["health"], env=cli_env.env)
    assert broken.exit_code == 2
    assert "FAIL" in broken.stdout


def test_snapshots_list_and_preview(tmp_path: Path) -> None:
    """Snapshots are grouped by directory tag and previewable."""
    cli_env = _prepare_environment(tmp_path)

    listed = runner.invoke(app, ["snapshots", "list", "--json"], env=cli_env.env)
    assert listed.exit_code == 0, listed.output
    snapshots = _extract_json(listed.stdout)["snapshots"]
    assert isinstance(snapshots, dict)
    assert [item["short_id"] for item in snapshots["webapp"]] == ["cafebabe"]

    preview = runner.invoke(app, ["snapshots", "preview", "webapp"], env=cli_env.env)
    assert preview.exit_code == 0, preview.output
    assert "cafebabe" in preview.stdout
    assert "docker-compose.yml" in preview.stdout
    assert "ls cafebabe" in cli_env.calls("restic")


def test_snapshots_list_requires_repository(tmp_path: Path) -> None:
    """Missing repository settings are configuration errors."""
    cli_env = _prepare_environment(tmp_path, config_overrides={"restic": {}})
    result = runner.invoke(app, ["snapshots", "list"], env=cli_env.env)

    assert result.exit_code == 1


def test_cloud_commands_require_remote(tmp_path: Path) -> None:
    """Cloud commands refuse to run without a configured remote."""
    cli_env = _prepare_environment(tmp_path)

    for args in (["cloud", "test"], ["cloud", "sync"], ["cloud", "restore", str(tmp_path / "r")]):
        result = runner.invoke(app, args, env=cli_env.env)
        assert result.exit_code == 1, args


def test_cloud_test_shows_contents_and_size(tmp_path: Path) -> None:
    """`cloud test --json` reports the remote listing and total size."""
    cli_env = _prepare_environment(
        tmp_path,
        config_overrides={
            "cloud": {"remote": "b2", "rclone_bin": str(tmp_path / "bin" / "rclone")},
        },
    )
    _write_stub(
        cli_env.bin_dir,
        "rclone",
        "case \"$1\" in\n"
        "  lsd) echo '          -1 2024-05-01 00:00:00        -1 data' ;;\n"
        "  size) echo '{\"count\": 2, \"bytes\": 1048576}' ;;\n"
        "esac\n"
        "exit 0\n",
        tmp_path / "rclone.calls",
    )

    result = runner.invoke(app, ["cloud", "test", "--json"], env=cli_env.env)

    assert result.exit_code == 0, result.output
    payload = _extract_json(result.stdout)
    assert payload["entries"] == ["-1 2024-05-01 00:00:00        -1 data"]
    assert payload["size"] == "1.00 MB"
    assert any(line.startswith("size ") for line in cli_env.calls("rclone"))
