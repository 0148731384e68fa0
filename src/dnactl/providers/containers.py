"""Container runtime provider (podman, or a docker-compatible CLI)."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .commands import ProviderError, run_command


class ContainerRuntimeError(ProviderError):
    """Raised when a container runtime command fails."""


@dataclass(slots=True)
class ContainerRuntime:
    """Thin wrapper over the container runtime CLI."""

    runtime_bin: str = "podman"
    timeout: float | None = 120.0

    def exists(self, name: str) -> bool:
        """Return ``True`` when a container named *name* was ever created."""
        return name in self._names(all_containers=True, name=name)

    def running(self, name: str) -> bool:
        """Return ``True`` when the container named *name* is running."""
        return name in self._names(all_containers=False, name=name)

    def start(self, *names: str) -> None:
        """Start the named containers."""
        self._run(["start", *names])

    def stop(self, *names: str) -> None:
        """Stop the named containers."""
        self._run(["stop", *names])

    def logs(self, name: str, *, tail: int = 50) -> str:
        """Return the last *tail* log lines of container *name*."""
        result = self._run(["logs", "--tail", str(tail), name])
        return "\n".join(part for part in (result.stdout, result.stderr) if part).rstrip()

    def exec(
        self,
        container: str,
        command: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *container*."""
        return self._run(["exec", container, *command], check=check)

    # ------------------------------------------------------------------
    def _names(self, *, all_containers: bool, name: str) -> set[str]:
        args = ["ps"]
        if all_containers:
            args.append("-a")
        args.extend(["--filter", f"name={name}", "--format", "{{.Names}}"])
        result = self._run(args)
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def _run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.runtime_bin, *args],
            error_cls=ContainerRuntimeError,
            check=check,
            error_prefix=f"{self.runtime_bin} {args[0]}",
            timeout=self.timeout,
        )


__all__ = ["ContainerRuntime", "ContainerRuntimeError"]
