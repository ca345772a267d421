"""Configuration loader for pteroctl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults (a stock Pterodactyl install on Debian/Ubuntu).
2. ``/etc/pteroctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PTEROCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PTEROCTL_PANEL_DIR=/srv/panel
    export PTEROCTL_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` that are passed explicitly to every component.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load pteroctl configuration. Install with "
        "`pip install pteroctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PTEROCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage location and retention policy."""

    root: Path
    retention_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "retention_days": self.retention_days}


@dataclass(frozen=True)
class ServicesConfig:
    """Service units restarted and inspected by the console."""

    units: tuple[str, ...] = ("nginx", "php8.1-fpm", "redis-server", "pteroq")
    database_unit: str = "mysql"
    systemctl_bin: str = "systemctl"

    @property
    def status_units(self) -> tuple[str, ...]:
        """Return the units reported by the status screen."""
        if self.database_unit in self.units:
            return self.units
        return (*self.units, self.database_unit)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "units": list(self.units),
            "database_unit": self.database_unit,
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class ToolsConfig:
    """Executables invoked through the command runner."""

    php_bin: str = "php"
    composer_bin: str = "composer"
    tar_bin: str = "tar"
    mysqldump_bin: str = "mysqldump"
    mysql_bin: str = "mysql"
    curl_bin: str = "curl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "php_bin": self.php_bin,
            "composer_bin": self.composer_bin,
            "tar_bin": self.tar_bin,
            "mysqldump_bin": self.mysqldump_bin,
            "mysql_bin": self.mysql_bin,
            "curl_bin": self.curl_bin,
        }


@dataclass(frozen=True)
class LogFilesConfig:
    """External log files offered by the log viewer."""

    nginx_error: Path = Path("/var/log/nginx/error.log")
    tail_lines: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"nginx_error": str(self.nginx_error), "tail_lines": self.tail_lines}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for pteroctl."""

    config_file: Path
    panel_dir: Path
    env_file: Path
    logs_dir: Path
    web_user: str
    web_group: str
    require_root: bool
    release_url: str
    backups: BackupConfig
    services: ServicesConfig
    tools: ToolsConfig
    log_files: LogFilesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "panel_dir": str(self.panel_dir),
            "env_file": str(self.env_file),
            "logs_dir": str(self.logs_dir),
            "web_user": self.web_user,
            "web_group": self.web_group,
            "require_root": self.require_root,
            "release_url": self.release_url,
            "backups": self.backups.to_dict(),
            "services": self.services.to_dict(),
            "tools": self.tools.to_dict(),
            "log_files": self.log_files.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/pteroctl/config.yml",
    "panel_dir": "/var/www/pterodactyl",
    "env_file": None,  # derived from panel_dir when absent
    "logs_dir": "/var/log/pteroctl",
    "web_user": "www-data",
    "web_group": None,  # defaults to web_user
    "require_root": True,
    "release_url": "https://github.com/pterodactyl/panel/releases/latest/download/panel.tar.gz",
    "backups": {
        "root": None,  # derived from panel_dir when absent
        "retention_days": 30,
    },
    "services": {
        "units": ["nginx", "php8.1-fpm", "redis-server", "pteroq"],
        "database_unit": "mysql",
        "systemctl_bin": "systemctl",
    },
    "tools": {
        "php_bin": "php",
        "composer_bin": "composer",
        "tar_bin": "tar",
        "mysqldump_bin": "mysqldump",
        "mysql_bin": "mysql",
        "curl_bin": "curl",
    },
    "log_files": {
        "nginx_error": "/var/log/nginx/error.log",
        "tail_lines": 50,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "backups": {"root", "retention_days"},
    "services": {"units", "database_unit", "systemctl_bin"},
    "tools": {"php_bin", "composer_bin", "tar_bin", "mysqldump_bin", "mysql_bin", "curl_bin"},
    "log_files": {"nginx_error", "tail_lines"},
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
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    units = _as_dict(raw.get("services"), "services").get("units")
    if units is not None:
        for index, unit in enumerate(_as_sequence(units, "services.units")):
            if not isinstance(unit, str) or not unit.strip():
                raise ConfigError(f"services.units[{index}] must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    panel_dir = _to_path(raw.get("panel_dir"))
    env_file_value = raw.get("env_file")
    env_file = _to_path(env_file_value) if env_file_value else panel_dir / ".env"
    logs_dir = _to_path(raw.get("logs_dir"))

    web_user = _expect_str(raw.get("web_user", "www-data"), "web_user").strip()
    if not web_user:
        raise ConfigError("web_user must be a non-empty string.")
    web_group_value = raw.get("web_group")
    web_group = (
        _expect_str(web_group_value, "web_group").strip() if web_group_value else web_user
    )

    require_root = raw.get("require_root", True)
    if not isinstance(require_root, bool):
        raise ConfigError(f"Expected require_root to be a boolean. Got {require_root!r}.")

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    backups_root = _to_path(backups_root_value) if backups_root_value else panel_dir / "backups"
    retention_days = _expect_int(
        backups_mapping.get("retention_days"), "backups.retention_days", default=30
    )
    if retention_days <= 0:
        raise ConfigError("backups.retention_days must be greater than zero.")

    services_mapping = _as_dict(raw.get("services"), "services")
    units_raw = services_mapping.get("units")
    units = (
        tuple(str(unit).strip() for unit in _as_sequence(units_raw, "services.units"))
        if units_raw is not None
        else ServicesConfig().units
    )
    services = ServicesConfig(
        units=units,
        database_unit=str(services_mapping.get("database_unit", "mysql")),
        systemctl_bin=str(services_mapping.get("systemctl_bin", "systemctl")),
    )

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    defaults = ToolsConfig()
    tools = ToolsConfig(
        **{
            field: str(tools_mapping.get(field, getattr(defaults, field)))
            for field in _SECTION_KEYS["tools"]
        }
    )

    log_files_mapping = _as_dict(raw.get("log_files"), "log_files")
    tail_lines = _expect_int(log_files_mapping.get("tail_lines"), "log_files.tail_lines", default=50)
    if tail_lines <= 0:
        raise ConfigError("log_files.tail_lines must be greater than zero.")
    log_files = LogFilesConfig(
        nginx_error=_to_path(log_files_mapping.get("nginx_error", "/var/log/nginx/error.log")),
        tail_lines=tail_lines,
    )

    return AppConfig(
        config_file=config_file,
        panel_dir=panel_dir,
        env_file=env_file,
        logs_dir=logs_dir,
        web_user=web_user,
        web_group=web_group,
        require_root=require_root,
        release_url=str(raw.get("release_url", DEFAULTS["release_url"])),
        backups=BackupConfig(root=backups_root, retention_days=retention_days),
        services=services,
        tools=tools,
        log_files=log_files,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


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
    "BackupConfig",
    "ConfigError",
    "LogFilesConfig",
    "ServicesConfig",
    "ToolsConfig",
    "load_config",
]
