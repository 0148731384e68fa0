"""Tests for the shared infrastructure supervisor."""
from __future__ import annotations

import pytest

from dnactl.infrastructure import (
    InfrastructureError,
    InfrastructureSetupError,
    InfrastructureSupervisor,
    InfrastructureUnavailableError,
)
from dnactl.providers import ContainerRuntimeError


class FakeContainers:
    """In-memory container runtime keyed by container name."""

    def __init__(self, state: dict[str, bool], events: list[str]) -> None:
        self.state = state
        self.events = events
        self.fail_start: set[str] = set()

    def exists(self, name: str) -> bool:
        return name in self.state

    def running(self, name: str) -> bool:
        return self.state.get(name, False)

    def start(self, *names: str) -> None:
        for name in names:
            if name in self.fail_start:
                raise ContainerRuntimeError(f"podman start failed (exit 125): {name}")
            self.events.append(f"start:{name}")
            self.state[name] = True

    def stop(self, *names: str) -> None:
        for name in names:
            self.events.append(f"stop:{name}")
            self.state[name] = False

    def logs(self, name: str, *, tail: int = 50) -> str:
        return f"{name} tail={tail}"


def _supervisor(
    state: dict[str, bool],
) -> tuple[InfrastructureSupervisor, FakeContainers, list[str]]:
    events: list[str] = []
    containers = FakeContainers(state, events)
    supervisor = InfrastructureSupervisor(
        containers=containers,  # type: ignore[arg-type]
        engine_ready_wait=5.0,
        pooler_ready_wait=3.0,
        sleep=lambda seconds: events.append(f"sleep:{seconds:g}"),
    )
    return supervisor, containers, events


def test_absent_is_distinct_from_stopped() -> None:
    supervisor, _, _ = _supervisor({"postgres": False})

    status = supervisor.status()

    assert status.engine.label == "stopped"
    assert status.pooler.label == "absent"
    assert status.setup_required is True
    assert status.missing == ["pgbouncer"]
    assert status.healthy is False


def test_start_brings_up_engine_before_pooler_with_waits() -> None:
    supervisor, _, events = _supervisor({"postgres": False, "pgbouncer": False})

    status = supervisor.start()

    assert events == ["start:postgres", "sleep:5", "start:pgbouncer", "sleep:3"]
    assert status.healthy is True


def test_start_skips_running_engine() -> None:
    supervisor, _, events = _supervisor({"postgres": True, "pgbouncer": False})

    supervisor.start()

    assert events == ["start:pgbouncer", "sleep:3"]


def test_start_refuses_when_setup_required() -> None:
    supervisor, _, events = _supervisor({"postgres": False})

    with pytest.raises(InfrastructureSetupError) as excinfo:
        supervisor.start()

    assert excinfo.value.missing == ["pgbouncer"]
    assert events == []


def test_start_failure_is_wrapped() -> None:
    supervisor, containers, _ = _supervisor({"postgres": False, "pgbouncer": False})
    containers.fail_start.add("postgres")

    with pytest.raises(InfrastructureError, match="Failed to start container 'postgres'"):
        supervisor.start()


def test_stop_takes_pooler_down_first() -> None:
    supervisor, _, events = _supervisor({"postgres": True, "pgbouncer": True})

    status = supervisor.stop()

    assert events == ["stop:pgbouncer", "stop:postgres"]
    assert status.engine.label == "stopped"


def test_status_is_never_cached() -> None:
    supervisor, containers, _ = _supervisor({"postgres": True, "pgbouncer": True})
    assert supervisor.status().healthy is True

    containers.state["pgbouncer"] = False

    assert supervisor.status().healthy is False


def test_require_healthy_reports_partial_state() -> None:
    supervisor, _, _ = _supervisor({"postgres": True, "pgbouncer": False})

    with pytest.raises(InfrastructureUnavailableError, match="pooler: stopped"):
        supervisor.require_healthy()


def test_logs_routes_by_component() -> None:
    supervisor, _, _ = _supervisor({"postgres": True, "pgbouncer": True})

    assert supervisor.logs("pooler", tail=5) == "pgbouncer tail=5"
    with pytest.raises(InfrastructureError, match="Unknown infrastructure component"):
        supervisor.logs("cache")
