"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from dnactl.models import DatabaseConfig, Instance, InstancePaths
from dnactl.state import InstanceRegistry

InstanceFactory = Callable[..., Instance]


@pytest.fixture
def registry(tmp_path: Path) -> InstanceRegistry:
    """Empty instance registry rooted in a temporary directory."""
    root = tmp_path / "instances"
    root.mkdir()
    return InstanceRegistry(root)


@pytest.fixture
def make_instance(registry: InstanceRegistry) -> InstanceFactory:
    """Return a factory that writes a minimal instance into ``registry``."""

    def factory(name: str, port: int, *, with_env: bool = True) -> Instance:
        paths = InstancePaths.for_instance(registry.root, name)
        paths.server.mkdir(parents=True)
        paths.client.mkdir(parents=True)
        database = DatabaseConfig.build(
            name,
            host="127.0.0.1",
            pooled_port=16432,
            direct_port=15432,
            pool_params="pgbouncer=true",
            password="pw",
        )
        instance = Instance(
            name=name,
            port=port,
            database=database,
            paths=paths,
            created_at="2024-01-01T00:00:00+00:00",
        )
        registry.write_config(instance)
        registry.write_database(name, database)
        if with_env:
            paths.env_file.write_text(
                f'DATABASE_URL="{database.pooled_url}"\n'
                f'DIRECT_URL="{database.direct_url}"\n'
                f"PORT={port}\n",
                encoding="utf-8",
            )
        return instance

    return factory


@pytest.fixture
def template_root(tmp_path: Path) -> Path:
    """Minimal application template with server, client and reference ``.env``."""
    root = tmp_path / "dna"
    server = root / "server"
    client = root / "client"
    (server / "prisma").mkdir(parents=True)
    (server / "node_modules" / "left-pad").mkdir(parents=True)
    (client / "src").mkdir(parents=True)
    (server / "index.js").write_text("console.log('hi')\n", encoding="utf-8")
    (server / "prisma" / "schema.prisma").write_text("model User {}\n", encoding="utf-8")
    (client / "src" / "App.js").write_text("export default 1\n", encoding="utf-8")
    (server / ".env").write_text(
        'DATABASE_URL="postgresql://template"\n'
        'JWT_SECRET="top secret"\n'
        "S3_REGION=eu-west-1\n"
        "UNRELATED=1\n",
        encoding="utf-8",
    )
    return root
