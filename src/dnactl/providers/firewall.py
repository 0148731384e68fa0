"""Best-effort host firewall provider (ufw).

Firewall changes never fail an operation: every outcome, including a
missing ``ufw`` binary, is reported as a :class:`FirewallResult`.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from .commands import ProviderError, run_command


class FirewallError(ProviderError):
    """Raised internally when a ufw command fails."""


@dataclass(frozen=True, slots=True)
class FirewallResult:
    """Outcome of a firewall change."""

    applied: bool
    skipped: bool = False
    detail: str = ""

    @property
    def failed(self) -> bool:
        return not self.applied and not self.skipped


@dataclass(slots=True)
class FirewallProvider:
    """Open and close instance ports through ufw."""

    enabled: bool = True
    ufw_bin: str = "ufw"
    use_sudo: bool = True
    timeout: float | None = 60.0

    def allow(self, port: int) -> FirewallResult:
        """Allow inbound TCP traffic on *port*."""
        return self._apply(["allow", f"{port}/tcp"], f"allowed {port}/tcp")

    def remove(self, port: int) -> FirewallResult:
        """Delete the allow rule for *port*."""
        return self._apply(["delete", "allow", f"{port}/tcp"], f"removed {port}/tcp")

    # ------------------------------------------------------------------
    def _apply(self, args: Sequence[str], summary: str) -> FirewallResult:
        if not self.enabled:
            return FirewallResult(
                applied=False, skipped=True, detail="firewall management disabled"
            )
        try:
            status = self._run(["status"])
            if "Status: inactive" in (status.stdout or ""):
                return FirewallResult(applied=False, skipped=True, detail="ufw inactive")
            self._run(args)
        except FirewallError as exc:
            return FirewallResult(applied=False, detail=str(exc))
        return FirewallResult(applied=True, detail=summary)

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.ufw_bin, *args]
        if self.use_sudo:
            command = ["sudo", "-n", *command]
        return run_command(
            command,
            error_cls=FirewallError,
            error_prefix=f"{self.ufw_bin} {args[0]}",
            timeout=self.timeout,
        )


__all__ = ["FirewallError", "FirewallProvider", "FirewallResult"]
