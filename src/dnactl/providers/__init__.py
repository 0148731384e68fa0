"""Provider interfaces for dnactl."""
from __future__ import annotations

from .commands import ProviderError, run_command
from .containers import ContainerRuntime, ContainerRuntimeError
from .firewall import FirewallError, FirewallProvider, FirewallResult
from .pm2 import Pm2Process, ProcessSupervisor, ProcessSupervisorError
from .toolchain import NodeToolchain, SeedOutcome, ToolchainError

__all__ = [
    "ContainerRuntime",
    "ContainerRuntimeError",
    "FirewallError",
    "FirewallProvider",
    "FirewallResult",
    "NodeToolchain",
    "Pm2Process",
    "ProcessSupervisor",
    "ProcessSupervisorError",
    "ProviderError",
    "SeedOutcome",
    "ToolchainError",
    "run_command",
]
