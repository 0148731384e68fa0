"""pm2 provider: registers, inspects and persists instance processes."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .commands import ProviderError, run_command

# Same layout as the prefix written by processes started with ``--time``.
LOG_TIMESTAMP_FORMAT = "YYYY-MM-DDTHH:mm:ss"


class ProcessSupervisorError(ProviderError):
    """Raised when a pm2 command fails or returns unparsable output."""


@dataclass(frozen=True, slots=True)
class Pm2Process:
    """Entry from ``pm2 jlist``."""

    name: str
    status: str
    pid: int | None = None

    @property
    def online(self) -> bool:
        return self.status == "online"


@dataclass(slots=True)
class ProcessSupervisor:
    """Drive the pm2 CLI."""

    pm2_bin: str = "pm2"
    timeout: float | None = 120.0

    def start(self, name: str, *, script: str, cwd: Path) -> None:
        """Register and start *script* under process name *name*."""
        self._run(["start", script, "--name", name, "--cwd", str(cwd), "--time"])

    def stop(self, name: str) -> None:
        """Stop the process *name*."""
        self._run(["stop", name])

    def delete(self, name: str) -> None:
        """Remove the registration of *name*."""
        self._run(["delete", name])

    def save(self) -> None:
        """Persist the process list so pm2 restores it at boot."""
        self._run(["save"])

    def list(self) -> list[Pm2Process]:
        """Return every registered process."""
        result = self._run(["jlist"])
        return _parse_jlist(result.stdout or "")

    def find(self, name: str) -> Pm2Process | None:
        """Return the process registered under exactly *name*."""
        for process in self.list():
            if process.name == name:
                return process
        return None

    def logs(
        self,
        name: str,
        *,
        lines: int = 50,
        errors_only: bool = False,
        timestamps: bool = False,
    ) -> str:
        """Return recent log lines for *name* without streaming."""
        args = ["logs", name, "--lines", str(lines), "--nostream"]
        if errors_only:
            args.append("--err")
        if timestamps:
            args.extend(["--timestamp", LOG_TIMESTAMP_FORMAT])
        result = self._run(args)
        return (result.stdout or "").rstrip()

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.pm2_bin, *args],
            error_cls=ProcessSupervisorError,
            error_prefix=f"{self.pm2_bin} {args[0]}",
            timeout=self.timeout,
        )


def _parse_jlist(output: str) -> list[Pm2Process]:
    """Parse ``pm2 jlist`` output, ignoring any banner printed before the JSON."""
    start = output.find("[")
    if start == -1:
        if not output.strip():
            return []
        raise ProcessSupervisorError("pm2 jlist returned no JSON document.")
    try:
        payload = json.loads(output[start:])
    except ValueError as exc:
        raise ProcessSupervisorError(f"pm2 jlist returned invalid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ProcessSupervisorError("pm2 jlist did not return a list.")

    processes: list[Pm2Process] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str):
            continue
        env = item.get("pm2_env")
        status = env.get("status") if isinstance(env, dict) else None
        pid = item.get("pid")
        processes.append(
            Pm2Process(
                name=name,
                status=str(status or "unknown"),
                pid=pid if isinstance(pid, int) and pid > 0 else None,
            )
        )
    return processes


__all__ = ["LOG_TIMESTAMP_FORMAT", "Pm2Process", "ProcessSupervisor", "ProcessSupervisorError"]
