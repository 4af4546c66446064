"""Configuration loader for stackbackup.

Values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/stackbackup/config.yml`` (or an override path).
3. Environment variables prefixed with ``STACKBACKUP_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STACKBACKUP_RESTIC__REPOSITORY=/srv/restic
    export STACKBACKUP_RESTIC__RETENTION__KEEP_DAILY=14
    export STACKBACKUP_CLOUD__REMOTE=b2

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load stackbackup configuration. Install with "
        "`pip install stackbackup` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "STACKBACKUP_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

VERIFICATION_DEPTHS = ("metadata", "files", "data")


class ConfigError(RuntimeError):
    """Raised when configuration parsing or validation fails."""


@dataclass(frozen=True)
class DockerConfig:
    """docker compose invocation settings."""

    timeout: int = 300
    compose_bin: str = "docker"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "compose_bin": self.compose_bin}


@dataclass(frozen=True)
class RetentionConfig:
    """Snapshot retention policy applied per directory tag."""

    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6
    keep_yearly: int = 2
    auto_prune: bool = True

    def has_policy(self) -> bool:
        """Return ``True`` when at least one keep count is positive."""
        return any(
            value > 0
            for value in (self.keep_daily, self.keep_weekly, self.keep_monthly, self.keep_yearly)
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "keep_daily": self.keep_daily,
            "keep_weekly": self.keep_weekly,
            "keep_monthly": self.keep_monthly,
            "keep_yearly": self.keep_yearly,
            "auto_prune": self.auto_prune,
        }


@dataclass(frozen=True)
class VerificationConfig:
    """Post-backup verification settings."""

    enabled: bool = True
    depth: str = "metadata"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "depth": self.depth}


@dataclass(frozen=True)
class ResticConfig:
    """restic repository access and backup behaviour."""

    repository: str = ""
    password: str | None = None
    password_file: Path | None = None
    password_command: str | None = None
    timeout: int = 3600
    hostname: str | None = None
    restic_bin: str = "restic"
    retention: RetentionConfig = RetentionConfig()
    verification: VerificationConfig = VerificationConfig()

    def password_method(self) -> str:
        """Return ``command``, ``file``, ``inline`` or ``none``."""
        if self.password_command:
            return "command"
        if self.password_file is not None:
            return "file"
        if self.password:
            return "inline"
        return "none"

    def configured_password_methods(self) -> list[str]:
        """Return every credential method that has a value."""
        methods: list[str] = []
        if self.password_command:
            methods.append("command")
        if self.password_file is not None:
            methods.append("file")
        if self.password:
            methods.append("inline")
        return methods

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets redacted)."""
        return {
            "repository": self.repository,
            "password": "********" if self.password else None,
            "password_file": str(self.password_file) if self.password_file else None,
            "password_command": self.password_command,
            "timeout": self.timeout,
            "hostname": self.hostname,
            "restic_bin": self.restic_bin,
            "retention": self.retention.to_dict(),
            "verification": self.verification.to_dict(),
        }


@dataclass(frozen=True)
class CloudConfig:
    """rclone remote used to mirror the restic repository."""

    remote: str = ""
    path: str = "/backup/restic"
    transfers: int = 4
    retries: int = 3
    bandwidth: str | None = None
    rclone_bin: str = "rclone"

    @property
    def destination(self) -> str:
        """Return the ``remote:path`` destination string."""
        return f"{self.remote}:{self.path}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "remote": self.remote,
            "path": self.path,
            "transfers": self.transfers,
            "retries": self.retries,
            "bandwidth": self.bandwidth,
            "rclone_bin": self.rclone_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackbackup."""

    config_file: Path
    stacks_dir: Path
    dirlist_file: Path
    logs_dir: Path
    lock_dir: Path
    lock_timeout: float
    docker: DockerConfig
    restic: ResticConfig
    cloud: CloudConfig

    def validate_for_backup(self) -> None:
        """Raise :class:`ConfigError` unless a backup run can be attempted."""
        if not self.stacks_dir.is_dir():
            raise ConfigError(f"stacks_dir {self.stacks_dir} does not exist.")
        self.validate_repository()

    def validate_repository(self) -> None:
        """Raise :class:`ConfigError` unless repository access is configured."""
        if not self.restic.repository:
            raise ConfigError("restic.repository must be set.")
        methods = self.restic.configured_password_methods()
        if not methods:
            raise ConfigError(
                "No restic credentials configured: set one of restic.password_file, "
                "restic.password_command or restic.password."
            )
        if len(methods) > 1:
            joined = ", ".join(methods)
            raise ConfigError(f"Configure exactly one restic credential method (found: {joined}).")

    def validate_for_cloud(self) -> None:
        """Raise :class:`ConfigError` unless cloud sync can be attempted."""
        self.validate_repository()
        if not self.cloud.remote:
            raise ConfigError("cloud.remote must be set for cloud sync.")

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "stacks_dir": str(self.stacks_dir),
            "dirlist_file": str(self.dirlist_file),
            "logs_dir": str(self.logs_dir),
            "lock_dir": str(self.lock_dir),
            "lock_timeout": self.lock_timeout,
            "docker": self.docker.to_dict(),
            "restic": self.restic.to_dict(),
            "cloud": self.cloud.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackbackup/config.yml",
    "stacks_dir": "/opt/docker-stacks",
    "dirlist_file": "/var/lib/stackbackup/dirlist",
    "logs_dir": "/var/log/stackbackup",
    "lock_dir": "/run/stackbackup",
    "lock_timeout": 30.0,
    "docker": {
        "timeout": 300,
        "compose_bin": "docker",
    },
    "restic": {
        "repository": "",
        "password": None,
        "password_file": None,
        "password_command": None,
        "timeout": 3600,
        "hostname": None,
        "restic_bin": "restic",
        "retention": {
            "keep_daily": 7,
            "keep_weekly": 4,
            "keep_monthly": 6,
            "keep_yearly": 2,
            "auto_prune": True,
        },
        "verification": {
            "enabled": True,
            "depth": "metadata",
        },
    },
    "cloud": {
        "remote": "",
        "path": "/backup/restic",
        "transfers": 4,
        "retries": 3,
        "bandwidth": None,
        "rclone_bin": "rclone",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "docker": set(cast(Mapping[str, object], DEFAULTS["docker"]).keys()),
    "restic": set(cast(Mapping[str, object], DEFAULTS["restic"]).keys()),
    "restic.retention": {"keep_daily", "keep_weekly", "keep_monthly", "keep_yearly", "auto_prune"},
    "restic.verification": {"enabled", "depth"},
    "cloud": set(cast(Mapping[str, object], DEFAULTS["cloud"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section in ("docker", "restic", "cloud"):
        mapping = _as_dict(raw.get(section), section)
        _reject_unknown(mapping, section)
        if section == "restic":
            for nested in ("retention", "verification"):
                label = f"restic.{nested}"
                _reject_unknown(_as_dict(mapping.get(nested), label), label)


def _reject_unknown(mapping: Mapping[str, object], section: str) -> None:
    unknown = set(mapping.keys()) - _SECTION_KEYS[section]
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    stacks_dir = _to_path(raw.get("stacks_dir"))
    dirlist_file = _to_path(raw.get("dirlist_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    lock_dir = _to_path(raw.get("lock_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        timeout=_expect_positive_int(docker_mapping.get("timeout"), "docker.timeout", default=300),
        compose_bin=_expect_str(docker_mapping.get("compose_bin", "docker"), "docker.compose_bin"),
    )

    restic_mapping = _as_dict(raw.get("restic"), "restic")
    retention_mapping = _as_dict(restic_mapping.get("retention"), "restic.retention")
    retention = RetentionConfig(
        keep_daily=_expect_non_negative_int(
            retention_mapping.get("keep_daily"), "restic.retention.keep_daily", default=7
        ),
        keep_weekly=_expect_non_negative_int(
            retention_mapping.get("keep_weekly"), "restic.retention.keep_weekly", default=4
        ),
        keep_monthly=_expect_non_negative_int(
            retention_mapping.get("keep_monthly"), "restic.retention.keep_monthly", default=6
        ),
        keep_yearly=_expect_non_negative_int(
            retention_mapping.get("keep_yearly"), "restic.retention.keep_yearly", default=2
        ),
        auto_prune=_expect_bool(
            retention_mapping.get("auto_prune"), "restic.retention.auto_prune", default=True
        ),
    )

    verification_mapping = _as_dict(restic_mapping.get("verification"), "restic.verification")
    depth = str(verification_mapping.get("depth") or "metadata").lower()
    if depth not in VERIFICATION_DEPTHS:
        allowed = ", ".join(VERIFICATION_DEPTHS)
        raise ConfigError(
            f"Unsupported restic.verification.depth '{depth}'. Allowed: {allowed}."
        )
    verification = VerificationConfig(
        enabled=_expect_bool(
            verification_mapping.get("enabled"), "restic.verification.enabled", default=True
        ),
        depth=depth,
    )

    password_file_value = restic_mapping.get("password_file")
    restic = ResticConfig(
        repository=str(restic_mapping.get("repository") or ""),
        password=_optional_str(restic_mapping.get("password"), "restic.password"),
        password_file=_to_path(password_file_value) if password_file_value else None,
        password_command=_optional_str(
            restic_mapping.get("password_command"), "restic.password_command"
        ),
        timeout=_expect_positive_int(restic_mapping.get("timeout"), "restic.timeout", default=3600),
        hostname=_optional_str(restic_mapping.get("hostname"), "restic.hostname"),
        restic_bin=_expect_str(restic_mapping.get("restic_bin", "restic"), "restic.restic_bin"),
        retention=retention,
        verification=verification,
    )

    cloud_mapping = _as_dict(raw.get("cloud"), "cloud")
    retries = _expect_int(cloud_mapping.get("retries"), "cloud.retries", default=3)
    cloud = CloudConfig(
        remote=str(cloud_mapping.get("remote") or "").rstrip(":"),
        path=str(cloud_mapping.get("path") or "/backup/restic"),
        transfers=_expect_positive_int(
            cloud_mapping.get("transfers"), "cloud.transfers", default=4
        ),
        retries=retries if retries >= 1 else 3,
        bandwidth=_optional_str(cloud_mapping.get("bandwidth"), "cloud.bandwidth"),
        rclone_bin=_expect_str(cloud_mapping.get("rclone_bin", "rclone"), "cloud.rclone_bin"),
    )

    return AppConfig(
        config_file=config_file,
        stacks_dir=stacks_dir,
        dirlist_file=dirlist_file,
        logs_dir=logs_dir,
        lock_dir=lock_dir,
        lock_timeout=lock_timeout,
        docker=docker,
        restic=restic,
        cloud=cloud,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object, label: str) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "yes", "no"}:
        return value.strip().lower() in {"true", "yes"}
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    result = _expect_int(value, label, default=default)
    if result <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {result}.")
    return result


def _expect_non_negative_int(value: object | None, label: str, *, default: int) -> int:
    result = _expect_int(value, label, default=default)
    if result < 0:
        raise ConfigError(f"{label} must be non-negative. Got {result}.")
    return result


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CloudConfig",
    "ConfigError",
    "DockerConfig",
    "ResticConfig",
    "RetentionConfig",
    "VERIFICATION_DEPTHS",
    "VerificationConfig",
    "load_config",
]
