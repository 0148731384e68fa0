"""Per-instance database provisioning on the shared engine container.

All statements run through the engine's administrative ``psql`` inside the
container (never through the pooler). Identifiers are double-quoted and
literals single-quote escaped; the statement travels as one argv element,
so no shell ever sees operator input.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import DatabaseSettings
from .models import DatabaseConfig
from .providers import ContainerRuntime, ContainerRuntimeError
from .state import InstanceRegistry

PROVISION_STEPS = (
    "create_database",
    "create_role",
    "grant_privileges",
    "transfer_ownership",
)


class DatabaseError(RuntimeError):
    """Base class for database provisioning failures."""


class DatabaseExistsError(DatabaseError):
    """Raised when the instance database already exists on the engine."""

    def __init__(self, database: str) -> None:
        super().__init__(
            f"Database '{database}' already exists; refusing to provision over it."
        )
        self.database = database


class DatabaseProvisionError(DatabaseError):
    """Raised when one provisioning step fails."""

    def __init__(self, step: str, database: str, cause: Exception) -> None:
        super().__init__(f"Database step '{step}' failed for '{database}': {cause}")
        self.step = step
        self.database = database
        self.cause = cause


def quote_identifier(value: str) -> str:
    """Return *value* as a double-quoted SQL identifier."""
    return '"' + value.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Return *value* as a single-quoted SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(slots=True)
class DatabaseProvisioner:
    """Create and drop instance databases and roles."""

    containers: ContainerRuntime
    registry: InstanceRegistry
    settings: DatabaseSettings
    engine_container: str = "postgres"

    def build_config(self, instance_name: str) -> DatabaseConfig:
        """Return a fresh :class:`DatabaseConfig` for *instance_name*."""
        return DatabaseConfig.build(
            instance_name,
            host=self.settings.host,
            pooled_port=self.settings.pooled_port,
            direct_port=self.settings.direct_port,
            pool_params=self.settings.pool_params,
        )

    def exists(self, database: str) -> bool:
        """Return ``True`` when *database* exists on the engine."""
        sql = f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(database)}"
        try:
            result = self._psql(sql)
        except ContainerRuntimeError as exc:
            raise DatabaseProvisionError("check_existing", database, exc) from exc
        return result.strip() == "1"

    def ensure_absent(self, instance_name: str) -> None:
        """Raise :class:`DatabaseExistsError` if the instance database exists."""
        database, _ = DatabaseConfig.names_for(instance_name)
        if self.exists(database):
            raise DatabaseExistsError(database)

    def provision(self, instance_name: str, *, check_existing: bool = True) -> DatabaseConfig:
        """Create the database and role for *instance_name*.

        Steps run strictly in order and each failure is reported with its
        step name so the caller knows how far provisioning got.
        """
        if check_existing:
            self.ensure_absent(instance_name)
        config = self.build_config(instance_name)
        database = quote_identifier(config.name)
        role = quote_identifier(config.user)
        statements = (
            ("create_database", f"CREATE DATABASE {database}"),
            (
                "create_role",
                f"CREATE USER {role} WITH ENCRYPTED PASSWORD {quote_literal(config.password)}",
            ),
            ("grant_privileges", f"GRANT ALL PRIVILEGES ON DATABASE {database} TO {role}"),
            ("transfer_ownership", f"ALTER DATABASE {database} OWNER TO {role}"),
        )
        for step, sql in statements:
            try:
                self._psql(sql)
            except ContainerRuntimeError as exc:
                raise DatabaseProvisionError(step, config.name, exc) from exc
        return config

    def persist(self, instance_name: str, config: DatabaseConfig) -> Path:
        """Write ``db-config.json`` into the instance directory."""
        return self.registry.write_database(instance_name, config)

    def drop(self, instance_name: str) -> None:
        """Terminate connections, then drop the database and role if present."""
        database_name, role_name = DatabaseConfig.names_for(instance_name)
        statements = (
            (
                "terminate_connections",
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                f"WHERE datname = {quote_literal(database_name)} AND pid <> pg_backend_pid()",
            ),
            ("drop_database", f"DROP DATABASE IF EXISTS {quote_identifier(database_name)}"),
            ("drop_role", f"DROP ROLE IF EXISTS {quote_identifier(role_name)}"),
        )
        for step, sql in statements:
            try:
                self._psql(sql)
            except ContainerRuntimeError as exc:
                raise DatabaseProvisionError(step, database_name, exc) from exc

    # ------------------------------------------------------------------
    def _psql(self, sql: str) -> str:
        result = self.containers.exec(
            self.engine_container,
            [
                "psql",
                "-U",
                self.settings.admin_user,
                "-d",
                self.settings.admin_database,
                "-v",
                "ON_ERROR_STOP=1",
                "-tAc",
                sql,
            ],
        )
        return result.stdout or ""


__all__ = [
    "DatabaseConfig",
    "DatabaseError",
    "DatabaseExistsError",
    "DatabaseProvisionError",
    "DatabaseProvisioner",
    "PROVISION_STEPS",
    "quote_identifier",
    "quote_literal",
]
