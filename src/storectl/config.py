"""Configuration loader for storectl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``C:/ProgramData/storectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STORECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    set STORECTL_PORTS__BASE=8090
    set STORECTL_DATABASE__PROBE_TIMEOUT=2.5

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
        "PyYAML is required to load storectl configuration. Install with "
        "`pip install storectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "STORECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port selection defaults for new IIS sites."""

    base: int = 8080
    strategy: str = "sequential"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "strategy": self.strategy}


@dataclass(frozen=True)
class DatabaseConfig:
    """SQL Server defaults and the live-probe timeout."""

    server: str = "localhost\\SQLEXPRESS"
    sqlcmd_bin: str = "sqlcmd"
    probe_timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "server": self.server,
            "sqlcmd_bin": self.sqlcmd_bin,
            "probe_timeout": self.probe_timeout,
        }


@dataclass(frozen=True)
class HostToolsConfig:
    """Executables used to drive IIS and the service control manager."""

    powershell_bin: str = "powershell.exe"
    sc_bin: str = "sc.exe"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"powershell_bin": self.powershell_bin, "sc_bin": self.sc_bin}


@dataclass(frozen=True)
class DemoConfig:
    """Pacing used when pipelines run in demonstration mode."""

    step_delay: float = 0.8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"step_delay": self.step_delay}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for storectl."""

    config_file: Path
    state_dir: Path
    store_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    tool_dir: Path
    bundle_dir: Path
    service_bundle_dir: Path
    migrations_bundle: Path
    key_file: Path
    lock_timeout: float
    min_free_space_mb: int
    product_name: str
    publisher: str
    ports: PortsConfig
    database: DatabaseConfig
    tools: HostToolsConfig
    demo: DemoConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "store_dir": str(self.store_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "tool_dir": str(self.tool_dir),
            "bundle_dir": str(self.bundle_dir),
            "service_bundle_dir": str(self.service_bundle_dir),
            "migrations_bundle": str(self.migrations_bundle),
            "key_file": str(self.key_file),
            "lock_timeout": self.lock_timeout,
            "min_free_space_mb": self.min_free_space_mb,
            "product_name": self.product_name,
            "publisher": self.publisher,
            "ports": self.ports.to_dict(),
            "database": self.database.to_dict(),
            "tools": self.tools.to_dict(),
            "demo": self.demo.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "C:/ProgramData/storectl/config.yml",
    "state_dir": "C:/ProgramData/storectl",
    "store_dir": None,  # derived from state_dir when absent
    "logs_dir": None,
    "runtime_dir": None,
    "templates_dir": "C:/ProgramData/storectl/templates",
    "tool_dir": "C:/Program Files/EcommerceStarter",
    "bundle_dir": None,  # <tool_dir>/app
    "service_bundle_dir": None,  # <tool_dir>/WindowsService
    "migrations_bundle": None,  # <tool_dir>/migrations/efbundle.exe
    "key_file": None,  # <state_dir>/secret.key
    "lock_timeout": 30.0,
    "min_free_space_mb": 2048,
    "product_name": "EcommerceStarter",
    "publisher": "EcommerceStarter",
    "ports": {
        "base": 8080,
        "strategy": "sequential",
    },
    "database": {
        "server": "localhost\\SQLEXPRESS",
        "sqlcmd_bin": "sqlcmd",
        "probe_timeout": 5.0,
    },
    "tools": {
        "powershell_bin": "powershell.exe",
        "sc_bin": "sc.exe",
    },
    "demo": {
        "step_delay": 0.8,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PORT_STRATEGIES = {"sequential"}
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"base", "strategy"},
    "database": {"server", "sqlcmd_bin", "probe_timeout"},
    "tools": {"powershell_bin", "sc_bin"},
    "demo": {"step_delay"},
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

    ports = _as_dict(raw.get("ports"), "ports")
    strategy = ports.get("strategy")
    if strategy is not None and str(strategy) not in ALLOWED_PORT_STRATEGIES:
        allowed_strategies = ", ".join(sorted(ALLOWED_PORT_STRATEGIES))
        raise ConfigError(
            f"Unsupported port allocation strategy '{strategy}'. "
            f"Allowed: {allowed_strategies}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    store_dir = _optional_path(raw.get("store_dir")) or state_dir / "store"
    logs_dir = _optional_path(raw.get("logs_dir")) or state_dir / "logs"
    runtime_dir = _optional_path(raw.get("runtime_dir")) or state_dir / "run"
    templates_dir = _to_path(raw.get("templates_dir"))
    tool_dir = _to_path(raw.get("tool_dir"))
    bundle_dir = _optional_path(raw.get("bundle_dir")) or tool_dir / "app"
    service_bundle_dir = (
        _optional_path(raw.get("service_bundle_dir")) or tool_dir / "WindowsService"
    )
    migrations_bundle = (
        _optional_path(raw.get("migrations_bundle"))
        or tool_dir / "migrations" / "efbundle.exe"
    )
    key_file = _optional_path(raw.get("key_file")) or state_dir / "secret.key"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    min_free_space_mb = _expect_int(
        raw.get("min_free_space_mb"), "min_free_space_mb", default=2048
    )
    if min_free_space_mb < 0:
        raise ConfigError("min_free_space_mb must be non-negative.")

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    base_port = _expect_int(ports_mapping.get("base"), "ports.base", default=8080)
    if not 1 <= base_port <= 65535:
        raise ConfigError(f"ports.base must be between 1 and 65535. Got {base_port}.")
    ports = PortsConfig(
        base=base_port,
        strategy=str(ports_mapping.get("strategy", "sequential")),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        server=str(database_mapping.get("server", "localhost\\SQLEXPRESS")),
        sqlcmd_bin=str(database_mapping.get("sqlcmd_bin", "sqlcmd")),
        probe_timeout=_expect_positive_float(
            database_mapping.get("probe_timeout"),
            "database.probe_timeout",
            default=5.0,
        ),
    )

    tools_mapping = _as_dict(raw.get("tools"), "tools")
    tools = HostToolsConfig(
        powershell_bin=str(tools_mapping.get("powershell_bin", "powershell.exe")),
        sc_bin=str(tools_mapping.get("sc_bin", "sc.exe")),
    )

    demo_mapping = _as_dict(raw.get("demo"), "demo")
    step_delay = _expect_float(demo_mapping.get("step_delay"), "demo.step_delay", default=0.8)
    if step_delay < 0:
        raise ConfigError("demo.step_delay must be non-negative.")

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        store_dir=store_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        tool_dir=tool_dir,
        bundle_dir=bundle_dir,
        service_bundle_dir=service_bundle_dir,
        migrations_bundle=migrations_bundle,
        key_file=key_file,
        lock_timeout=lock_timeout,
        min_free_space_mb=min_free_space_mb,
        product_name=str(raw.get("product_name", "EcommerceStarter")),
        publisher=str(raw.get("publisher", "EcommerceStarter")),
        ports=ports,
        database=database,
        tools=tools,
        demo=DemoConfig(step_delay=step_delay),
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


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


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


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default=default)
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
    "ConfigError",
    "DatabaseConfig",
    "DemoConfig",
    "HostToolsConfig",
    "PortsConfig",
    "load_config",
]
