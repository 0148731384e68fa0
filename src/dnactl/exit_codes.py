"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``VALIDATION`` covers operator input rejected before side effects,
    ``ENVIRONMENT`` covers missing tools or stopped infrastructure and
    ``PROVIDER`` covers failures reported by pm2, the container runtime,
    the database engine or the Node toolchain.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
