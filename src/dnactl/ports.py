"""Port allocation helpers for dnactl.

The instance registry is authoritative: a port claimed by another
instance's ``config.json`` is a hard conflict. The operating-system probe
(bind-and-release) only catches foreign listeners and may be overridden by
the operator.
"""
from __future__ import annotations

import errno
import socket
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import MAX_PORT, MIN_PORT
from .state import InstanceRegistry


class PortsRegistryError(RuntimeError):
    """Raised when port allocation fails."""


class PortRangeError(PortsRegistryError):
    """Raised when a requested port lies outside the allowed range."""

    def __init__(self, port: int, minimum: int, maximum: int) -> None:
        super().__init__(f"Port {port} is outside the allowed range {minimum}-{maximum}.")
        self.port = port


class PortConflictError(PortsRegistryError):
    """Raised when another instance already claims the port."""

    def __init__(self, port: int, owner: str) -> None:
        super().__init__(f"Port {port} is already assigned to instance '{owner}'.")
        self.port = port
        self.owner = owner


class PortBusyError(PortsRegistryError):
    """Raised when the OS reports the port in use by a foreign process."""

    def __init__(self, port: int) -> None:
        super().__init__(f"Port {port} appears to be in use by another process.")
        self.port = port


class PortAllocationError(PortsRegistryError):
    """Raised when no free port remains in the range."""


def probe_port(port: int, host: str = "0.0.0.0") -> bool:
    """Return ``True`` when *port* can be bound on *host* right now."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = None
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError as exc:
        if exc.errno in (errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT):
            # Host address not configured here; nothing can be listening on it.
            return True
        return False
    finally:
        if sock is not None:
            sock.close()


@dataclass(slots=True)
class PortAllocator:
    """Pick non-conflicting ports for instances."""

    registry: InstanceRegistry
    base_port: int = 5000
    min_port: int = MIN_PORT
    max_port: int = MAX_PORT
    probe_host: str = "0.0.0.0"
    probe: Callable[[int, str], bool] = field(default=probe_port)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not MIN_PORT <= self.min_port <= self.base_port <= self.max_port <= MAX_PORT:
            raise PortsRegistryError(
                f"Invalid port range: base {self.base_port} must lie within "
                f"{self.min_port}-{self.max_port}."
            )

    # ------------------------------------------------------------------
    def claimed_ports(self, *, exclude: str | None = None) -> dict[int, str]:
        """Return ``{port: instance}`` for every readable instance."""
        return self.registry.claimed_ports(exclude=exclude)

    def is_free(self, port: int) -> bool:
        """Return ``True`` when the OS probe succeeds for *port*."""
        return self.probe(port, self.probe_host)

    def allocate(
        self,
        preferred: int | None = None,
        *,
        exclude: str | None = None,
        allow_busy: bool = False,
    ) -> int:
        """Return a usable port.

        With *preferred* unset the range is scanned upward from the base
        port. Otherwise *preferred* is validated: range first, then the
        registry (hard conflict), then the OS probe, which *allow_busy*
        downgrades to a no-op.
        """
        claimed = self.claimed_ports(exclude=exclude)
        if preferred is None:
            return self._next_available_port(claimed)
        return self.check(preferred, claimed=claimed, allow_busy=allow_busy)

    def check(
        self,
        port: int,
        *,
        claimed: dict[int, str] | None = None,
        exclude: str | None = None,
        allow_busy: bool = False,
    ) -> int:
        """Validate an operator-chosen *port* and return it."""
        if not self.min_port <= port <= self.max_port:
            raise PortRangeError(port, self.min_port, self.max_port)
        if claimed is None:
            claimed = self.claimed_ports(exclude=exclude)
        owner = claimed.get(port)
        if owner is not None:
            raise PortConflictError(port, owner)
        if not allow_busy and not self.is_free(port):
            raise PortBusyError(port)
        return port

    # Internal helpers -------------------------------------------------
    def _next_available_port(self, claimed: dict[int, str]) -> int:
        """Return the first port from the base that nobody holds."""
        candidate = self.base_port
        while candidate <= self.max_port:
            if candidate not in claimed and self.is_free(candidate):
                return candidate
            candidate += 1
        raise PortAllocationError(
            f"No free port available between {self.base_port} and {self.max_port}."
        )


__all__ = [
    "PortAllocationError",
    "PortAllocator",
    "PortBusyError",
    "PortConflictError",
    "PortRangeError",
    "PortsRegistryError",
    "probe_port",
]
