"""Node toolchain provider used by provisioning and rebuilds.

Wraps ``npm install``, the Prisma CLI (``npx prisma ...``), the one-shot
administrator seed script and ``npm run build``. Every command runs with an
argv list and a timeout; environment overrides (database URLs, seed
values) are layered over the current environment.
"""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .commands import ProviderError, run_command

SEED_SCRIPT_NAME = ".dnactl-seed-admin.js"
SEED_EXISTS_EXIT_CODE = 3


class ToolchainError(ProviderError):
    """Raised when an npm/npx/node step fails."""


class SeedOutcome(str, Enum):
    """Result of the administrator seed."""

    CREATED = "created"
    EXISTS = "exists"


@dataclass(slots=True)
class NodeToolchain:
    """Run Node toolchain commands inside instance directories."""

    npm_bin: str = "npm"
    npx_bin: str = "npx"
    node_bin: str = "node"
    timeout: float | None = 900.0

    def install_dependencies(self, directory: Path) -> None:
        """Run ``npm install`` in *directory*."""
        self._run_command([self.npm_bin, "install"], cwd=directory)

    def generate_client(self, server_dir: Path, database_url: str) -> None:
        """Regenerate the Prisma client."""
        self._run_command(
            [self.npx_bin, "prisma", "generate"],
            cwd=server_dir,
            env=_database_env(database_url),
        )

    def push_schema(self, server_dir: Path, database_url: str) -> None:
        """Apply the Prisma schema to the database at *database_url*."""
        self._run_command(
            [self.npx_bin, "prisma", "db", "push", "--accept-data-loss"],
            cwd=server_dir,
            env=_database_env(database_url),
        )

    def migrate_schema(self, server_dir: Path, database_url: str) -> None:
        """Generate the client and push the schema using *database_url*."""
        self.generate_client(server_dir, database_url)
        self.push_schema(server_dir, database_url)

    def seed_admin(
        self,
        server_dir: Path,
        script: str,
        *,
        database_url: str,
        values: Mapping[str, str],
    ) -> SeedOutcome:
        """Run the rendered seed *script* once from *server_dir*.

        The script is written next to the server's ``node_modules`` so it can
        resolve the Prisma client, and is always removed afterwards.
        """
        script_path = server_dir / SEED_SCRIPT_NAME
        env = dict(_database_env(database_url))
        env.update(values)
        script_path.write_text(script, encoding="utf-8")
        try:
            result = self._run_command(
                [self.node_bin, SEED_SCRIPT_NAME],
                cwd=server_dir,
                env=env,
                check=False,
            )
        finally:
            script_path.unlink(missing_ok=True)
        if result.returncode == 0:
            return SeedOutcome.CREATED
        if result.returncode == SEED_EXISTS_EXIT_CODE:
            return SeedOutcome.EXISTS
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise ToolchainError(f"admin seed failed (exit {result.returncode}): {message}")

    def build_frontend(self, client_dir: Path) -> None:
        """Run ``npm run build`` in *client_dir*."""
        self._run_command([self.npm_bin, "run", "build"], cwd=client_dir)

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute a toolchain command (isolated for testing)."""
        return run_command(
            args,
            error_cls=ToolchainError,
            check=check,
            error_prefix=" ".join(args[:3]),
            timeout=self.timeout,
            cwd=cwd,
            env=env,
        )


def _database_env(database_url: str) -> dict[str, str]:
    return {"DATABASE_URL": database_url, "DIRECT_URL": database_url}


__all__ = ["NodeToolchain", "SeedOutcome", "ToolchainError"]
