"""Tests for port allocation and validation."""
from __future__ import annotations

import socket
from collections.abc import Callable

import pytest

from dnactl.models import Instance
from dnactl.ports import (
    PortAllocationError,
    PortAllocator,
    PortBusyError,
    PortConflictError,
    PortRangeError,
    PortsRegistryError,
    probe_port,
)
from dnactl.state import InstanceRegistry


def _allocator(
    registry: InstanceRegistry,
    busy: set[int] | None = None,
    **kwargs: int,
) -> PortAllocator:
    occupied = busy or set()
    return PortAllocator(
        registry=registry,
        probe=lambda port, host: port not in occupied,
        **kwargs,
    )


def test_first_instance_receives_base_port(registry: InstanceRegistry) -> None:
    assert _allocator(registry).allocate() == 5000


def test_registry_claim_pushes_allocation_forward(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)

    assert _allocator(registry).allocate() == 5001


def test_busy_ports_are_skipped_during_scan(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)

    assert _allocator(registry, busy={5001, 5002}).allocate() == 5003


def test_preferred_port_claimed_by_instance_is_a_hard_conflict(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)

    with pytest.raises(PortConflictError) as excinfo:
        _allocator(registry).allocate(5000, allow_busy=True)

    assert excinfo.value.owner == "alpha"


def test_busy_preferred_port_can_be_overridden(registry: InstanceRegistry) -> None:
    allocator = _allocator(registry, busy={5005})

    with pytest.raises(PortBusyError):
        allocator.allocate(5005)
    assert allocator.allocate(5005, allow_busy=True) == 5005


def test_range_is_checked_before_registry(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)
    allocator = _allocator(registry, min_port=5000, base_port=5000, max_port=5010)

    with pytest.raises(PortRangeError):
        allocator.check(80)
    with pytest.raises(PortRangeError):
        allocator.check(5011)


def test_check_excludes_own_instance(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)
    make_instance("beta", 5001)
    allocator = _allocator(registry)

    assert allocator.check(5000, exclude="alpha") == 5000
    with pytest.raises(PortConflictError):
        allocator.check(5001, exclude="alpha")


def test_exhausted_range_raises(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)
    allocator = _allocator(registry, busy={5001}, min_port=5000, base_port=5000, max_port=5001)

    with pytest.raises(PortAllocationError):
        allocator.allocate()


def test_invalid_range_rejected(registry: InstanceRegistry) -> None:
    with pytest.raises(PortsRegistryError):
        PortAllocator(registry=registry, base_port=4000, min_port=5000, max_port=6000)


def test_probe_detects_listening_socket() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        assert probe_port(port, "127.0.0.1") is False
