"""Value objects shared by the dnactl components."""
from __future__ import annotations

import re
import secrets
import string
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import quote

INSTANCE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 24

CONFIG_FILENAME = "config.json"
DB_CONFIG_FILENAME = "db-config.json"


class InstanceNameError(RuntimeError):
    """Raised when an instance name is not usable."""


def validate_instance_name(name: str) -> str:
    """Return *name* stripped, raising :class:`InstanceNameError` when invalid."""
    candidate = name.strip()
    if not candidate:
        raise InstanceNameError("Instance name must be a non-empty string.")
    if not INSTANCE_NAME_PATTERN.match(candidate):
        raise InstanceNameError(
            f"Invalid instance name '{candidate}': use letters, digits, '-' and '_' only."
        )
    return candidate


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random alphanumeric password."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


# ----------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DatabaseConfig:
    """Connection parameters of an instance's dedicated database.

    ``port`` is the pooler port used by the running application;
    ``direct_port`` reaches the engine directly and is reserved for schema
    migrations and the administrator seed.
    """

    name: str
    user: str
    password: str
    host: str
    port: int
    direct_port: int
    pool_params: str = ""

    @staticmethod
    def names_for(instance_name: str) -> tuple[str, str]:
        """Return the ``(database, role)`` names derived from *instance_name*."""
        base = instance_name.lower()
        return f"{base}_db", f"{base}_user"

    @classmethod
    def build(
        cls,
        instance_name: str,
        *,
        host: str,
        pooled_port: int,
        direct_port: int,
        pool_params: str = "",
        password: str | None = None,
    ) -> DatabaseConfig:
        """Create a config for *instance_name* with a fresh password."""
        database, user = cls.names_for(instance_name)
        return cls(
            name=database,
            user=user,
            password=password if password is not None else generate_password(),
            host=host,
            port=pooled_port,
            direct_port=direct_port,
            pool_params=pool_params,
        )

    def _url(self, port: int, params: str) -> str:
        credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{credentials}@{self.host}:{port}/{quote(self.name, safe='')}"
        return f"{url}?{params}" if params else url

    @property
    def direct_url(self) -> str:
        """URL that bypasses the pooler."""
        return self._url(self.direct_port, "")

    @property
    def pooled_url(self) -> str:
        """URL routed through the connection pooler."""
        return self._url(self.port, self.pool_params)

    def to_dict(self) -> dict[str, object]:
        """Return the representation persisted to ``db-config.json``."""
        return {
            "name": self.name,
            "user": self.user,
            "password": self.password,
            "host": self.host,
            "port": self.port,
            "direct_port": self.direct_port,
            "pool_params": self.pool_params,
            "url": self.pooled_url,
            "direct_url": self.direct_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DatabaseConfig:
        """Parse a persisted mapping; camelCase keys are accepted too."""
        direct_port = data.get("direct_port", data.get("directPort"))
        pool_params = data.get("pool_params")
        if pool_params is None:
            url = str(data.get("url", ""))
            pool_params = url.split("?", 1)[1] if "?" in url else ""
        return cls(
            name=_require_str(data, "name"),
            user=_require_str(data, "user"),
            password=_require_str(data, "password"),
            host=str(data.get("host", "127.0.0.1")),
            port=_require_int(data.get("port"), "port"),
            direct_port=_require_int(direct_port, "direct_port"),
            pool_params=str(pool_params),
        )


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class InstancePaths:
    """Filesystem layout of an instance, derived from its name."""

    instance: Path
    server: Path
    client: Path
    uploads: Path

    @classmethod
    def for_instance(cls, instance_root: Path, name: str) -> InstancePaths:
        """Return the layout for *name* under *instance_root*."""
        instance = Path(instance_root) / name
        server = instance / "server"
        return cls(
            instance=instance,
            server=server,
            client=instance / "client",
            uploads=server / "uploads",
        )

    @property
    def config_file(self) -> Path:
        return self.instance / CONFIG_FILENAME

    @property
    def db_config_file(self) -> Path:
        return self.instance / DB_CONFIG_FILENAME

    @property
    def env_file(self) -> Path:
        return self.server / ".env"

    def to_dict(self) -> dict[str, str]:
        """Return the paths block written to ``config.json``."""
        return {
            "instance": str(self.instance),
            "server": str(self.server),
            "client": str(self.client),
            "uploads": str(self.uploads),
        }


@dataclass(frozen=True)
class Instance:
    """A provisioned instance as recorded in its ``config.json``."""

    name: str
    port: int
    database: DatabaseConfig
    paths: InstancePaths
    created_at: str

    def to_config_dict(self) -> dict[str, object]:
        """Return the ``config.json`` payload."""
        return {
            "name": self.name,
            "port": self.port,
            "database": self.database.to_dict(),
            "paths": self.paths.to_dict(),
            "created": self.created_at,
        }


# ----------------------------------------------------------------------
# Process state and reports
# ----------------------------------------------------------------------
class ProcessStatus(str, Enum):
    """Live status of an instance's supervised process."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProcessState:
    """Process status together with the supervisor's raw detail."""

    status: ProcessStatus
    detail: str | None = None
    pid: int | None = None

    @property
    def running(self) -> bool:
        return self.status is ProcessStatus.RUNNING


@dataclass(slots=True)
class OperationReport:
    """Outcome of a single-instance operation with best-effort warnings."""

    name: str
    action: str
    warnings: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "action": self.action,
            "warnings": list(self.warnings),
            "steps": list(self.steps),
        }


class ItemOutcome(str, Enum):
    """Per-instance outcome inside a batch operation."""

    STARTED = "started"
    STOPPED = "stopped"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemResult:
    """Result of one instance inside a batch."""

    name: str
    outcome: ItemOutcome
    detail: str | None = None


@dataclass(slots=True)
class BatchReport:
    """Tally of a batch operation; corrupt instances are listed apart."""

    items: list[ItemResult] = field(default_factory=list)
    corrupt: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add(self, name: str, outcome: ItemOutcome, detail: str | None = None) -> None:
        self.items.append(ItemResult(name=name, outcome=outcome, detail=detail))

    def _count(self, outcome: ItemOutcome) -> int:
        return sum(1 for item in self.items if item.outcome is outcome)

    @property
    def started(self) -> int:
        return self._count(ItemOutcome.STARTED)

    @property
    def stopped(self) -> int:
        return self._count(ItemOutcome.STOPPED)

    @property
    def skipped(self) -> int:
        return self._count(ItemOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(ItemOutcome.FAILED)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "started": self.started,
            "stopped": self.stopped,
            "skipped": self.skipped,
            "failed": self.failed,
            "corrupt": list(self.corrupt),
            "warnings": list(self.warnings),
            "items": [
                {"name": item.name, "outcome": item.outcome.value, "detail": item.detail}
                for item in self.items
            ],
        }


def _require_str(data: Mapping[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing or invalid '{key}'.")
    return value


def _require_int(value: object, key: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer for '{key}'.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"Missing or invalid '{key}'.")


__all__ = [
    "BatchReport",
    "DatabaseConfig",
    "Instance",
    "InstanceNameError",
    "InstancePaths",
    "ItemOutcome",
    "ItemResult",
    "OperationReport",
    "ProcessState",
    "ProcessStatus",
    "generate_password",
    "validate_instance_name",
]
