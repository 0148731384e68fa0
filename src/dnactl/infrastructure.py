"""Supervisor for the shared database engine and connection pooler.

Both containers are created once by the operator (outside dnactl). This
module only observes and starts/stops them. Status is queried from the
container runtime on every call and never cached.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .providers import ContainerRuntime, ContainerRuntimeError


class InfrastructureError(RuntimeError):
    """Raised when the shared containers cannot be inspected or controlled."""


class InfrastructureSetupError(InfrastructureError):
    """Raised when a container was never created and must be set up first."""

    def __init__(self, missing: list[str]) -> None:
        joined = ", ".join(missing)
        super().__init__(
            f"Infrastructure setup required: container(s) {joined} do not exist."
        )
        self.missing = missing


class InfrastructureUnavailableError(InfrastructureError):
    """Raised when an instance operation needs infrastructure that is not running."""


@dataclass(frozen=True)
class ContainerState:
    """Observed state of one shared container."""

    name: str
    exists: bool
    running: bool

    @property
    def label(self) -> str:
        if not self.exists:
            return "absent"
        return "running" if self.running else "stopped"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "exists": self.exists,
            "running": self.running,
            "state": self.label,
        }


@dataclass(frozen=True)
class InfrastructureStatus:
    """Engine and pooler state at one point in time."""

    engine: ContainerState
    pooler: ContainerState

    @property
    def healthy(self) -> bool:
        return self.engine.running and self.pooler.running

    @property
    def setup_required(self) -> bool:
        return not (self.engine.exists and self.pooler.exists)

    @property
    def missing(self) -> list[str]:
        return [state.name for state in (self.engine, self.pooler) if not state.exists]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "healthy": self.healthy,
            "setup_required": self.setup_required,
            "engine": self.engine.to_dict(),
            "pooler": self.pooler.to_dict(),
        }


@dataclass(slots=True)
class InfrastructureSupervisor:
    """Observe and control the engine and pooler containers."""

    containers: ContainerRuntime
    engine_container: str = "postgres"
    pooler_container: str = "pgbouncer"
    engine_ready_wait: float = 5.0
    pooler_ready_wait: float = 3.0
    sleep: Callable[[float], None] = field(default=time.sleep)

    def status(self) -> InfrastructureStatus:
        """Query the runtime for the current engine and pooler state."""
        return InfrastructureStatus(
            engine=self._state(self.engine_container),
            pooler=self._state(self.pooler_container),
        )

    def start(self) -> InfrastructureStatus:
        """Start the engine, wait, start the pooler, wait again."""
        current = self.status()
        if current.setup_required:
            raise InfrastructureSetupError(current.missing)
        if not current.engine.running:
            self._control("start", self.engine_container)
            self.sleep(self.engine_ready_wait)
        if not current.pooler.running:
            self._control("start", self.pooler_container)
            self.sleep(self.pooler_ready_wait)
        return self.status()

    def stop(self) -> InfrastructureStatus:
        """Stop the pooler first, then the engine."""
        current = self.status()
        if current.pooler.running:
            self._control("stop", self.pooler_container)
        if current.engine.running:
            self._control("stop", self.engine_container)
        return self.status()

    def restart(self) -> InfrastructureStatus:
        """Stop then start both containers."""
        self.stop()
        return self.start()

    def require_healthy(self) -> InfrastructureStatus:
        """Return the status, raising when either container is not running."""
        current = self.status()
        if current.setup_required:
            raise InfrastructureSetupError(current.missing)
        if not current.healthy:
            raise InfrastructureUnavailableError(
                "Database infrastructure is not running "
                f"(engine: {current.engine.label}, pooler: {current.pooler.label})."
            )
        return current

    def logs(self, component: str, *, tail: int = 50) -> str:
        """Return recent logs for ``engine`` or ``pooler``."""
        if component == "engine":
            name = self.engine_container
        elif component == "pooler":
            name = self.pooler_container
        else:
            raise InfrastructureError(f"Unknown infrastructure component '{component}'.")
        try:
            return self.containers.logs(name, tail=tail)
        except ContainerRuntimeError as exc:
            raise InfrastructureError(str(exc)) from exc

    # ------------------------------------------------------------------
    def _state(self, name: str) -> ContainerState:
        try:
            exists = self.containers.exists(name)
            running = exists and self.containers.running(name)
        except ContainerRuntimeError as exc:
            raise InfrastructureError(f"Unable to query container '{name}': {exc}") from exc
        return ContainerState(name=name, exists=exists, running=running)

    def _control(self, action: str, name: str) -> None:
        try:
            if action == "start":
                self.containers.start(name)
            else:
                self.containers.stop(name)
        except ContainerRuntimeError as exc:
            raise InfrastructureError(f"Failed to {action} container '{name}': {exc}") from exc


__all__ = [
    "ContainerState",
    "InfrastructureError",
    "InfrastructureSetupError",
    "InfrastructureStatus",
    "InfrastructureSupervisor",
    "InfrastructureUnavailableError",
]
