"""Configuration loader for dnactl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/dnactl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DNACTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DNACTL_PORTS__BASE=6000
    export DNACTL_FIREWALL__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
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
        "PyYAML is required to load dnactl configuration. Install with "
        "`pip install dnactl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DNACTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

MIN_PORT = 1024
MAX_PORT = 65535


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 5000
    min: int = MIN_PORT
    max: int = MAX_PORT
    probe_host: str = "0.0.0.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base": self.base,
            "min": self.min,
            "max": self.max,
            "probe_host": self.probe_host,
        }


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection coordinates of the shared engine and pooler."""

    host: str = "127.0.0.1"
    direct_port: int = 15432
    pooled_port: int = 16432
    admin_user: str = "postgres"
    admin_database: str = "postgres"
    pool_params: str = "pgbouncer=true"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "direct_port": self.direct_port,
            "pooled_port": self.pooled_port,
            "admin_user": self.admin_user,
            "admin_database": self.admin_database,
            "pool_params": self.pool_params,
        }


@dataclass(frozen=True)
class InfrastructureConfig:
    """Container runtime settings for the shared engine and pooler."""

    runtime_bin: str = "podman"
    engine_container: str = "postgres"
    pooler_container: str = "pgbouncer"
    engine_ready_wait: float = 5.0
    pooler_ready_wait: float = 3.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "runtime_bin": self.runtime_bin,
            "engine_container": self.engine_container,
            "pooler_container": self.pooler_container,
            "engine_ready_wait": self.engine_ready_wait,
            "pooler_ready_wait": self.pooler_ready_wait,
        }


@dataclass(frozen=True)
class SupervisorConfig:
    """pm2 process supervisor settings."""

    pm2_bin: str = "pm2"
    entrypoint: str = "index.js"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"pm2_bin": self.pm2_bin, "entrypoint": self.entrypoint}


@dataclass(frozen=True)
class ToolchainConfig:
    """Node toolchain binaries used by the provisioning pipeline."""

    npm_bin: str = "npm"
    npx_bin: str = "npx"
    node_bin: str = "node"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"npm_bin": self.npm_bin, "npx_bin": self.npx_bin, "node_bin": self.node_bin}


@dataclass(frozen=True)
class FirewallConfig:
    """Host firewall integration (best-effort)."""

    enabled: bool = True
    ufw_bin: str = "ufw"
    use_sudo: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "ufw_bin": self.ufw_bin, "use_sudo": self.use_sudo}


@dataclass(frozen=True)
class HealthConfig:
    """Post-start health verification settings."""

    attempts: int = 10
    interval: float = 1.0
    initial_delay: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "attempts": self.attempts,
            "interval": self.interval,
            "initial_delay": self.initial_delay,
        }


DEFAULT_ENV_PASSTHROUGH: tuple[str, ...] = (
    "EMAIL_USER",
    "EMAIL_PASSWORD",
    "SENDGRID_API_KEY",
    "S3_ACCESS_KEY_ID",
    "S3_SECRET_ACCESS_KEY",
    "S3_REGION",
    "S3_BUCKET_NAME",
    "JWT_SECRET",
)


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for dnactl."""

    config_file: Path
    template_root: Path
    instance_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    command_timeout: float
    ports: PortsConfig
    database: DatabaseSettings
    infrastructure: InfrastructureConfig
    supervisor: SupervisorConfig
    toolchain: ToolchainConfig
    firewall: FirewallConfig
    health: HealthConfig
    env_passthrough: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "template_root": str(self.template_root),
            "instance_root": str(self.instance_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "ports": self.ports.to_dict(),
            "database": self.database.to_dict(),
            "infrastructure": self.infrastructure.to_dict(),
            "supervisor": self.supervisor.to_dict(),
            "toolchain": self.toolchain.to_dict(),
            "firewall": self.firewall.to_dict(),
            "health": self.health.to_dict(),
            "env_passthrough": list(self.env_passthrough),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/dnactl/config.yml",
    "template_root": "/opt/dna",
    "instance_root": None,  # derived from template_root when absent
    "logs_dir": "/var/log/dnactl",
    "runtime_dir": "/run/dnactl",
    "templates_dir": "/etc/dnactl/templates",
    "lock_timeout": 30.0,
    "command_timeout": 900.0,
    "ports": {
        "base": 5000,
        "min": MIN_PORT,
        "max": MAX_PORT,
        "probe_host": "0.0.0.0",
    },
    "database": {
        "host": "127.0.0.1",
        "direct_port": 15432,
        "pooled_port": 16432,
        "admin_user": "postgres",
        "admin_database": "postgres",
        "pool_params": "pgbouncer=true",
    },
    "infrastructure": {
        "runtime_bin": "podman",
        "engine_container": "postgres",
        "pooler_container": "pgbouncer",
        "engine_ready_wait": 5.0,
        "pooler_ready_wait": 3.0,
    },
    "supervisor": {
        "pm2_bin": "pm2",
        "entrypoint": "index.js",
    },
    "toolchain": {
        "npm_bin": "npm",
        "npx_bin": "npx",
        "node_bin": "node",
    },
    "firewall": {
        "enabled": True,
        "ufw_bin": "ufw",
        "use_sudo": True,
    },
    "health": {
        "attempts": 10,
        "interval": 1.0,
        "initial_delay": 2.0,
    },
    "env_passthrough": list(DEFAULT_ENV_PASSTHROUGH),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"base", "min", "max", "probe_host"},
    "database": {
        "host",
        "direct_port",
        "pooled_port",
        "admin_user",
        "admin_database",
        "pool_params",
    },
    "infrastructure": {
        "runtime_bin",
        "engine_container",
        "pooler_container",
        "engine_ready_wait",
        "pooler_ready_wait",
    },
    "supervisor": {"pm2_bin", "entrypoint"},
    "toolchain": {"npm_bin", "npx_bin", "node_bin"},
    "firewall": {"enabled", "ufw_bin", "use_sudo"},
    "health": {"attempts", "interval", "initial_delay"},
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

    for key in ("lock_timeout", "command_timeout"):
        value = raw.get(key)
        if value is not None:
            _expect_positive_float(value, key, default=1.0)

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    passthrough = raw.get("env_passthrough")
    if passthrough is not None:
        for index, item in enumerate(_as_sequence(passthrough, "env_passthrough")):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"env_passthrough[{index}] must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    template_root = _to_path(raw.get("template_root"))
    instance_root_value = raw.get("instance_root")
    instance_root = (
        _to_path(instance_root_value) if instance_root_value else template_root / "instances"
    )
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    command_timeout = _expect_positive_float(
        raw.get("command_timeout"), "command_timeout", default=900.0
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_expect_int(ports_mapping.get("base"), "ports.base", default=5000),
        min=_expect_int(ports_mapping.get("min"), "ports.min", default=MIN_PORT),
        max=_expect_int(ports_mapping.get("max"), "ports.max", default=MAX_PORT),
        probe_host=str(ports_mapping.get("probe_host", "0.0.0.0")),
    )
    if not MIN_PORT <= ports.min <= ports.max <= MAX_PORT:
        raise ConfigError(
            f"ports.min/ports.max must satisfy {MIN_PORT} <= min <= max <= {MAX_PORT}."
        )
    if not ports.min <= ports.base <= ports.max:
        raise ConfigError(f"ports.base must lie between {ports.min} and {ports.max}.")

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseSettings(
        host=str(database_mapping.get("host", "127.0.0.1")),
        direct_port=_expect_int(
            database_mapping.get("direct_port"), "database.direct_port", default=15432
        ),
        pooled_port=_expect_int(
            database_mapping.get("pooled_port"), "database.pooled_port", default=16432
        ),
        admin_user=str(database_mapping.get("admin_user", "postgres")),
        admin_database=str(database_mapping.get("admin_database", "postgres")),
        pool_params=str(database_mapping.get("pool_params") or ""),
    )

    infra_mapping = _as_dict(raw.get("infrastructure"), "infrastructure")
    infrastructure = InfrastructureConfig(
        runtime_bin=str(infra_mapping.get("runtime_bin", "podman")),
        engine_container=str(infra_mapping.get("engine_container", "postgres")),
        pooler_container=str(infra_mapping.get("pooler_container", "pgbouncer")),
        engine_ready_wait=_expect_non_negative_float(
            infra_mapping.get("engine_ready_wait"),
            "infrastructure.engine_ready_wait",
            default=5.0,
        ),
        pooler_ready_wait=_expect_non_negative_float(
            infra_mapping.get("pooler_ready_wait"),
            "infrastructure.pooler_ready_wait",
            default=3.0,
        ),
    )

    supervisor_mapping = _as_dict(raw.get("supervisor"), "supervisor")
    supervisor = SupervisorConfig(
        pm2_bin=str(supervisor_mapping.get("pm2_bin", "pm2")),
        entrypoint=str(supervisor_mapping.get("entrypoint", "index.js")),
    )

    toolchain_mapping = _as_dict(raw.get("toolchain"), "toolchain")
    toolchain = ToolchainConfig(
        npm_bin=str(toolchain_mapping.get("npm_bin", "npm")),
        npx_bin=str(toolchain_mapping.get("npx_bin", "npx")),
        node_bin=str(toolchain_mapping.get("node_bin", "node")),
    )

    firewall_mapping = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(
        enabled=bool(firewall_mapping.get("enabled", True)),
        ufw_bin=str(firewall_mapping.get("ufw_bin", "ufw")),
        use_sudo=bool(firewall_mapping.get("use_sudo", True)),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    attempts = _expect_int(health_mapping.get("attempts"), "health.attempts", default=10)
    if attempts <= 0:
        raise ConfigError("health.attempts must be greater than zero.")
    health = HealthConfig(
        attempts=attempts,
        interval=_expect_non_negative_float(
            health_mapping.get("interval"), "health.interval", default=1.0
        ),
        initial_delay=_expect_non_negative_float(
            health_mapping.get("initial_delay"), "health.initial_delay", default=2.0
        ),
    )

    passthrough_raw = raw.get("env_passthrough")
    env_passthrough = (
        tuple(str(item).strip() for item in _as_sequence(passthrough_raw, "env_passthrough"))
        if passthrough_raw is not None
        else DEFAULT_ENV_PASSTHROUGH
    )

    return AppConfig(
        config_file=config_file,
        template_root=template_root,
        instance_root=instance_root,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        command_timeout=command_timeout,
        ports=ports,
        database=database,
        infrastructure=infrastructure,
        supervisor=supervisor,
        toolchain=toolchain,
        firewall=firewall,
        health=health,
        env_passthrough=env_passthrough,
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


def _expect_number(value: object, label: str) -> float:
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
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
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
    "DatabaseSettings",
    "FirewallConfig",
    "HealthConfig",
    "InfrastructureConfig",
    "PortsConfig",
    "SupervisorConfig",
    "ToolchainConfig",
    "load_config",
]
