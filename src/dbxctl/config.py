"""Configuration loader for dbxctl.

Configuration is merged from several sources, later sources winning:

1. Built-in defaults.
2. ``dbx.yml`` in the working directory (or ``--config-file`` /
   ``DBXCTL_CONFIG_FILE``).
3. Environment variables prefixed with ``DBXCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DBXCTL_VPS__HOST=db.example.com
    export DBXCTL_MONGODB__BASE_PORT=28000

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Relative paths are resolved against the directory holding
the config file, which is treated as the project root. The resulting
configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import DbxError, ErrorKind
from .state.schema import is_valid_segment

ENV_PREFIX = "DBXCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DEFAULT_CONFIG_NAME = "dbx.yml"

MIN_PORT = 1024
MAX_PORT = 65535
VERSION_PATTERN = re.compile(r"^\d+(\.\d+)?(\.\d+)?$")


def _error(message: str) -> DbxError:
    return DbxError(
        ErrorKind.CONFIG,
        message,
        remediation=f"Fix {DEFAULT_CONFIG_NAME} (or run `dbxctl init`) and retry.",
    )


@dataclass(frozen=True)
class VpsConfig:
    """Connection settings for the managed host."""

    host: str
    user: str
    port: int = 22
    ssh_key_path: Path = Path("~/.ssh/id_rsa")
    connect_timeout: float = 30.0
    command_timeout: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "user": self.user,
            "port": self.port,
            "ssh_key_path": str(self.ssh_key_path),
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
        }


@dataclass(frozen=True)
class MongoConfig:
    """Database service settings."""

    version: str = "7"
    base_port: int = 27018
    image: str | None = None
    ready_timeout: float = 30.0

    @property
    def image_ref(self) -> str:
        """Return the container image to run."""
        return self.image or f"mongo:{self.version}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "base_port": self.base_port,
            "image": self.image,
            "ready_timeout": self.ready_timeout,
        }


@dataclass(frozen=True)
class StateConfig:
    """Locations of the state files and backups."""

    local_dir: Path
    remote_path: str = "/var/lib/dbx/state.json"
    backup_dir: str = "/var/lib/dbx/backups"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "local_dir": str(self.local_dir),
            "remote_path": self.remote_path,
            "backup_dir": self.backup_dir,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for dbxctl."""

    config_file: Path
    project_root: Path
    project: str
    default_env: str
    logs_dir: Path
    lock_dir: Path
    lock_timeout: float
    vps: VpsConfig
    mongodb: MongoConfig
    state: StateConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_root": str(self.project_root),
            "project": self.project,
            "default_env": self.default_env,
            "logs_dir": str(self.logs_dir),
            "lock_dir": str(self.lock_dir),
            "lock_timeout": self.lock_timeout,
            "vps": self.vps.to_dict(),
            "mongodb": self.mongodb.to_dict(),
            "state": self.state.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": DEFAULT_CONFIG_NAME,
    "project": None,
    "default_env": "dev",
    "logs_dir": ".dbx/logs",
    "lock_dir": ".dbx/locks",
    "lock_timeout": 30.0,
    "vps": {
        "host": None,
        "user": None,
        "port": 22,
        "ssh_key_path": "~/.ssh/id_rsa",
        "connect_timeout": 30.0,
        "command_timeout": 120.0,
    },
    "mongodb": {
        "version": "7",
        "base_port": 27018,
        "image": None,
        "ready_timeout": 30.0,
    },
    "state": {
        "local_dir": ".dbx",
        "remote_path": "/var/lib/dbx/state.json",
        "backup_dir": "/var/lib/dbx/backups",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("vps", "mongodb", "state")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)
    base_dir = (cwd or Path.cwd()).resolve()

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env, base_dir)

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

    return _build_app_config(merged, project_root=config_path.parent)


def write_config(path: Path, values: Mapping[str, object]) -> None:
    """Atomically write *values* as a YAML config file at *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(dict(values), handle, sort_keys=False)
        os.replace(tmp_path, path)
        os.chmod(path, 0o644)
    finally:
        tmp_path.unlink(missing_ok=True)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
    base_dir: Path,
) -> Path:
    if cli_override:
        candidate = Path(cli_override)
    elif CONFIG_ENV_VAR in env:
        candidate = Path(env[CONFIG_ENV_VAR])
    else:
        candidate = Path(default_path)
    candidate = candidate.expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise _error(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise _error(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise _error(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        values = _as_dict(raw.get(section), section)
        unknown = set(values.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise _error(f"Unknown keys for {section}: {joined}.")


def _build_app_config(raw: Mapping[str, object], *, project_root: Path) -> AppConfig:
    project = _expect_segment(raw.get("project"), "project")
    default_env = _expect_segment(raw.get("default_env"), "default_env")

    vps_raw = _as_dict(raw.get("vps"), "vps")
    port = _expect_int(vps_raw.get("port"), "vps.port", default=22)
    if not 1 <= port <= MAX_PORT:
        raise _error(f"vps.port must be between 1 and {MAX_PORT}. Got {port}.")
    vps = VpsConfig(
        host=_expect_required_str(vps_raw.get("host"), "vps.host"),
        user=_expect_required_str(vps_raw.get("user"), "vps.user"),
        port=port,
        ssh_key_path=_to_path(vps_raw.get("ssh_key_path") or "~/.ssh/id_rsa", project_root),
        connect_timeout=_expect_positive_float(
            vps_raw.get("connect_timeout"), "vps.connect_timeout", default=30.0
        ),
        command_timeout=_expect_positive_float(
            vps_raw.get("command_timeout"), "vps.command_timeout", default=120.0
        ),
    )

    mongo_raw = _as_dict(raw.get("mongodb"), "mongodb")
    version_raw = mongo_raw.get("version", "7")
    if isinstance(version_raw, bool) or not isinstance(version_raw, (str, int)):
        # YAML reads 7.10 as the float 7.1; the original text is already gone.
        raise _error(
            f"mongodb.version must be a quoted string such as \"7.0\". Got {version_raw!r};"
            " quote the version in the config file."
        )
    version = str(version_raw).strip()
    if not VERSION_PATTERN.match(version):
        raise _error(f"mongodb.version must look like 7, 7.0 or 7.0.14. Got {version!r}.")
    base_port = _expect_int(mongo_raw.get("base_port"), "mongodb.base_port", default=27018)
    if not MIN_PORT <= base_port <= MAX_PORT:
        raise _error(
            f"mongodb.base_port must be between {MIN_PORT} and {MAX_PORT}. Got {base_port}."
        )
    image_value = mongo_raw.get("image")
    if image_value is not None and not (isinstance(image_value, str) and image_value.strip()):
        raise _error("mongodb.image must be a non-empty string when provided.")
    mongodb = MongoConfig(
        version=version,
        base_port=base_port,
        image=image_value.strip() if isinstance(image_value, str) else None,
        ready_timeout=_expect_positive_float(
            mongo_raw.get("ready_timeout"), "mongodb.ready_timeout", default=30.0
        ),
    )

    state_raw = _as_dict(raw.get("state"), "state")
    state = StateConfig(
        local_dir=_to_path(state_raw.get("local_dir") or ".dbx", project_root),
        remote_path=_expect_absolute_posix(state_raw.get("remote_path"), "state.remote_path"),
        backup_dir=_expect_absolute_posix(state_raw.get("backup_dir"), "state.backup_dir"),
    )

    return AppConfig(
        config_file=Path(_expect_str(raw["config_file"], "config_file")),
        project_root=project_root,
        project=project,
        default_env=default_env,
        logs_dir=_to_path(raw.get("logs_dir") or ".dbx/logs", project_root),
        lock_dir=_to_path(raw.get("lock_dir") or ".dbx/locks", project_root),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        vps=vps,
        mongodb=mongodb,
        state=state,
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
        raise _error(
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
    except yaml.YAMLError:
        return raw
    return parsed


def _to_path(value: object, base_dir: Path) -> Path:
    if isinstance(value, Path):
        path = value.expanduser()
    elif isinstance(value, str):
        path = Path(value).expanduser()
    else:
        raise _error(f"Cannot convert value {value!r} to Path.")
    return path if path.is_absolute() else base_dir / path


def _expect_absolute_posix(value: object, label: str) -> str:
    text = _expect_required_str(value, label)
    if not text.startswith("/"):
        raise _error(f"{label} must be an absolute path on the remote host. Got {text!r}.")
    return text.rstrip("/") or "/"


def _expect_segment(value: object, label: str) -> str:
    text = _expect_required_str(value, label)
    if not is_valid_segment(text):
        raise _error(
            f"{label} must start with a letter or digit and contain only letters, "
            f"digits, '-' or '_'. Got {text!r}."
        )
    return text


def _expect_required_str(value: object, label: str) -> str:
    if value is None:
        raise _error(f"{label} must be set.")
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise _error(f"Expected {label} to be a string. Got {type(value).__name__}.")
    text = str(value).strip()
    if not text:
        raise _error(f"{label} must be a non-empty string.")
    return text


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise _error(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise _error(f"Invalid integer for {label}: {value!r}.") from exc
    raise _error(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise _error(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise _error(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise _error(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise _error(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise _error(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise _error(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise _error(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "DEFAULTS",
    "MongoConfig",
    "StateConfig",
    "VpsConfig",
    "load_config",
    "write_config",
]
