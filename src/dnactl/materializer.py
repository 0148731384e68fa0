"""Materialise per-instance copies of the application template.

The template root holds ``server/`` and ``client/`` trees plus the
reference ``server/.env`` whose passthrough keys (mail, storage, JWT) are
copied into every instance. Instance ``.env`` files are written from the
``env/server.env.j2`` template and later edited key-by-key with
python-dotenv, which only ever touches the exact key requested.
"""
from __future__ import annotations

import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from dotenv import dotenv_values, set_key

from .models import DatabaseConfig, Instance, InstancePaths
from .state import InstanceRegistry
from .templates import TemplateEngine

ENV_TEMPLATE = "env/server.env.j2"
COPY_IGNORE = shutil.ignore_patterns("node_modules", ".env")


class MaterializeError(RuntimeError):
    """Raised when instance files cannot be created or updated."""


def quote_env_value(value: str) -> str:
    """Return *value* double-quoted with dotenv escaping."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


@dataclass(slots=True)
class InstanceMaterializer:
    """Copy the application template and write instance configuration."""

    registry: InstanceRegistry
    templates: TemplateEngine
    template_root: Path
    env_passthrough: Sequence[str] = ()

    @property
    def template_server(self) -> Path:
        return self.template_root / "server"

    @property
    def template_client(self) -> Path:
        return self.template_root / "client"

    def validate_template(self) -> None:
        """Raise :class:`MaterializeError` when the template trees are missing."""
        for source in (self.template_server, self.template_client):
            if not source.is_dir():
                raise MaterializeError(f"Template directory not found: {source}")

    def passthrough_values(self) -> list[tuple[str, str]]:
        """Return non-empty passthrough entries from the template ``.env``."""
        env_path = self.template_server / ".env"
        if not env_path.is_file():
            return []
        values = dotenv_values(env_path)
        entries: list[tuple[str, str]] = []
        for key in self.env_passthrough:
            value = values.get(key)
            if value:
                entries.append((key, value))
        return entries

    # ------------------------------------------------------------------
    def materialize(
        self,
        name: str,
        port: int,
        database: DatabaseConfig,
        *,
        created_at: str | None = None,
    ) -> Instance:
        """Copy the template into the instance directory and configure it.

        ``DATABASE_URL`` and ``DIRECT_URL`` both point at the direct engine
        port until :meth:`switch_to_pooled` runs after the admin seed.
        """
        self.validate_template()
        paths = self.registry.paths_for(name)
        try:
            paths.instance.mkdir(parents=True, exist_ok=True)
            self.copy_application(paths)
            (paths.uploads / "profile-pics").mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MaterializeError(
                f"Failed to copy application files for '{name}': {exc}"
            ) from exc

        self.write_env(name, port, database, paths)
        instance = Instance(
            name=name,
            port=port,
            database=database,
            paths=paths,
            created_at=created_at or datetime.now(UTC).isoformat(),
        )
        self.registry.write_config(instance)
        return instance

    def copy_application(self, paths: InstancePaths) -> None:
        """Copy ``server/`` and ``client/`` from the template into *paths*."""
        shutil.copytree(self.template_server, paths.server, ignore=COPY_IGNORE)
        shutil.copytree(self.template_client, paths.client, ignore=COPY_IGNORE)

    def write_env(
        self,
        name: str,
        port: int,
        database: DatabaseConfig,
        paths: InstancePaths,
    ) -> None:
        """Render ``server/.env`` with direct database URLs."""
        context = {
            "instance_name": name,
            "database_url": quote_env_value(database.direct_url),
            "direct_url": quote_env_value(database.direct_url),
            "port": port,
            "passthrough": [
                (key, quote_env_value(value)) for key, value in self.passthrough_values()
            ],
        }
        try:
            self.templates.render_to_path(ENV_TEMPLATE, paths.env_file, context, mode=0o600)
        except OSError as exc:
            raise MaterializeError(f"Failed to write {paths.env_file}: {exc}") from exc

    def switch_to_pooled(self, instance: Instance) -> None:
        """Point ``DATABASE_URL`` at the pooler, leaving every other key alone."""
        self._set_env_key(instance.paths.env_file, "DATABASE_URL", instance.database.pooled_url)

    def set_port(self, name: str, port: int) -> Instance:
        """Rewrite the config's port for *name*, then the ``PORT`` key.

        If ``.env`` cannot be updated the config gets its previous port back,
        so both files keep agreeing.
        """
        paths = self.registry.paths_for(name)
        if not paths.env_file.is_file():
            raise MaterializeError(f"Environment file not found: {paths.env_file}")
        previous = self.registry.require(name).port
        updated = self.registry.update_port(name, port)
        try:
            self._set_env_key(paths.env_file, "PORT", str(port), quote=False)
        except MaterializeError:
            self.registry.update_port(name, previous)
            raise
        return updated

    def read_env(self, name: str) -> dict[str, str | None]:
        """Return the parsed ``server/.env`` of *name*."""
        return dict(dotenv_values(self.registry.paths_for(name).env_file))

    # ------------------------------------------------------------------
    @staticmethod
    def _set_env_key(env_file: Path, key: str, value: str, *, quote: bool = True) -> None:
        if not env_file.is_file():
            raise MaterializeError(f"Environment file not found: {env_file}")
        try:
            set_key(env_file, key, value, quote_mode="always" if quote else "never")
        except OSError as exc:
            raise MaterializeError(f"Failed to update {key} in {env_file}: {exc}") from exc


__all__ = ["InstanceMaterializer", "MaterializeError", "quote_env_value"]
