"""Helpers for reading and writing instance state on disk.

Each instance owns a directory under the instance root (``<base>/instances``
by default). The directory itself is the source of truth for existence; its
``config.json`` carries the port and database details. A directory whose
config cannot be read is *corrupt*, which callers must treat differently
from an absent instance.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..models import (
    DatabaseConfig,
    Instance,
    InstancePaths,
)


class StateRegistryError(RuntimeError):
    """Raised when instance state cannot be read or written."""


class InstanceNotFoundError(StateRegistryError):
    """Raised when no directory exists for the requested instance."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Instance '{name}' does not exist.")
        self.name = name


class CorruptInstanceError(StateRegistryError):
    """Raised when an instance directory exists but its config is unusable."""

    def __init__(self, name: str, path: Path) -> None:
        super().__init__(f"Instance '{name}' is corrupt: {path} is missing or unreadable.")
        self.name = name
        self.path = path


@dataclass(frozen=True)
class RegistryEntry:
    """Directory name paired with its parsed instance (``None`` when corrupt)."""

    name: str
    instance: Instance | None

    @property
    def corrupt(self) -> bool:
        return self.instance is None


@dataclass(frozen=True)
class InstanceRegistry:
    """Enumerate and persist instances under ``root``."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the instance root if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def paths_for(self, name: str) -> InstancePaths:
        """Return the derived filesystem layout for *name*."""
        return InstancePaths.for_instance(self.root, name)

    def list(self) -> list[str]:
        """Return instance directory names, sorted, regardless of validity."""
        if not self.root.is_dir():
            return []
        return sorted(
            child.name
            for child in self.root.iterdir()
            if child.is_dir() and not child.name.startswith(".")
        )

    def exists(self, name: str) -> bool:
        """Return ``True`` when a directory exists for *name*."""
        return self.paths_for(name).instance.is_dir()

    def get(self, name: str) -> Instance | None:
        """Return the parsed instance, or ``None`` when absent or corrupt."""
        paths = self.paths_for(name)
        if not paths.instance.is_dir():
            return None
        raw = _read_json(paths.config_file)
        if raw is None:
            return None
        try:
            return _instance_from_config(name, raw, paths)
        except (KeyError, TypeError, ValueError):
            return None

    def require(self, name: str) -> Instance:
        """Return the instance or raise a not-found/corrupt error."""
        if not self.exists(name):
            raise InstanceNotFoundError(name)
        instance = self.get(name)
        if instance is None:
            raise CorruptInstanceError(name, self.paths_for(name).config_file)
        return instance

    def entries(self) -> list[RegistryEntry]:
        """Return every directory with its parsed instance."""
        return [RegistryEntry(name=name, instance=self.get(name)) for name in self.list()]

    def claimed_ports(self, *, exclude: str | None = None) -> dict[int, str]:
        """Return ``{port: instance}`` for every readable instance."""
        claimed: dict[int, str] = {}
        for entry in self.entries():
            if entry.instance is None or entry.name == exclude:
                continue
            claimed[entry.instance.port] = entry.name
        return claimed

    def read_database(self, name: str) -> DatabaseConfig | None:
        """Return the database config from ``db-config.json`` when readable."""
        raw = _read_json(self.paths_for(name).db_config_file)
        if raw is None:
            return None
        try:
            return DatabaseConfig.from_dict(raw)
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def write_config(self, instance: Instance) -> None:
        """Atomically write ``config.json`` for *instance*."""
        _write_json(instance.paths.config_file, instance.to_config_dict(), mode=0o640)

    def write_database(self, name: str, database: DatabaseConfig) -> Path:
        """Atomically write ``db-config.json`` and return its path."""
        path = self.paths_for(name).db_config_file
        _write_json(path, database.to_dict(), mode=0o600)
        return path

    def update_port(self, name: str, port: int) -> Instance:
        """Rewrite only the ``port`` field of the instance config."""
        paths = self.paths_for(name)
        raw = _read_json(paths.config_file)
        if raw is None:
            if not paths.instance.is_dir():
                raise InstanceNotFoundError(name)
            raise CorruptInstanceError(name, paths.config_file)
        updated = dict(raw)
        updated["port"] = port
        _write_json(paths.config_file, updated, mode=0o640)
        return self.require(name)


def _instance_from_config(
    name: str,
    raw: Mapping[str, object],
    paths: InstancePaths,
) -> Instance:
    port = raw["port"]
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError("port must be an integer")
    database_raw = raw.get("database")
    if not isinstance(database_raw, Mapping):
        raise ValueError("database block missing")
    created = raw.get("created", raw.get("created_at", ""))
    return Instance(
        name=name,
        port=port,
        database=DatabaseConfig.from_dict(database_raw),
        paths=paths,
        created_at=str(created),
    )


def _read_json(path: Path) -> dict[str, object] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _write_json(path: Path, payload: Mapping[str, object], *, mode: int) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise StateRegistryError(f"Failed to write {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StateRegistryError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CorruptInstanceError",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "RegistryEntry",
    "StateRegistryError",
]
