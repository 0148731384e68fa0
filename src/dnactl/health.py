"""Post-start health verification for instance processes."""
from __future__ import annotations

import socket
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .providers import ProcessSupervisor, ProcessSupervisorError


def tcp_connect(host: str, port: int, timeout: float = 1.0) -> bool:
    """Return ``True`` when a TCP connection to ``host:port`` succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


@dataclass(slots=True)
class HealthChecker:
    """Poll pm2 and the instance port until both report healthy."""

    supervisor: ProcessSupervisor
    attempts: int = 10
    interval: float = 1.0
    initial_delay: float = 2.0
    host: str = "127.0.0.1"
    sleep: Callable[[float], None] = field(default=time.sleep)
    connect: Callable[[str, int], bool] = field(default=tcp_connect)

    def verify(self, name: str, port: int) -> bool:
        """Return ``True`` once *name* is online and accepting on *port*."""
        self.sleep(self.initial_delay)
        for attempt in range(self.attempts):
            if self._online(name) and self.connect(self.host, port):
                return True
            if attempt < self.attempts - 1:
                self.sleep(self.interval)
        return False

    def _online(self, name: str) -> bool:
        try:
            process = self.supervisor.find(name)
        except ProcessSupervisorError:
            return False
        return process is not None and process.online


__all__ = ["HealthChecker", "tcp_connect"]
