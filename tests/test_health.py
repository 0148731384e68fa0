"""Tests for post-start health verification."""
from __future__ import annotations

import socket

from dnactl.health import HealthChecker, tcp_connect
from dnactl.providers import Pm2Process, ProcessSupervisorError


class FakeSupervisor:
    def __init__(self, statuses: list[str | None]) -> None:
        self.statuses = statuses

    def find(self, name: str) -> Pm2Process | None:
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if status is None:
            return None
        if status == "error":
            raise ProcessSupervisorError("pm2 jlist failed (exit 1): daemon down")
        return Pm2Process(name=name, status=status)


def _checker(
    statuses: list[str | None],
    connects: list[bool],
) -> tuple[HealthChecker, list[float]]:
    sleeps: list[float] = []
    answers = iter(connects)
    checker = HealthChecker(
        supervisor=FakeSupervisor(statuses),  # type: ignore[arg-type]
        attempts=3,
        interval=0.5,
        initial_delay=2.0,
        sleep=sleeps.append,
        connect=lambda host, port: next(answers, False),
    )
    return checker, sleeps


def test_healthy_on_first_attempt() -> None:
    checker, sleeps = _checker(["online"], [True])

    assert checker.verify("alpha", 5000) is True
    assert sleeps == [2.0]


def test_waits_for_process_to_come_online() -> None:
    checker, sleeps = _checker(["launching", "online"], [True])

    assert checker.verify("alpha", 5000) is True
    assert sleeps == [2.0, 0.5]


def test_gives_up_after_attempts() -> None:
    checker, sleeps = _checker(["online"], [False, False, False])

    assert checker.verify("alpha", 5000) is False
    assert sleeps == [2.0, 0.5, 0.5]


def test_supervisor_errors_count_as_unhealthy() -> None:
    checker, _ = _checker(["error"], [True, True, True])

    assert checker.verify("alpha", 5000) is False


def test_tcp_connect_against_real_listener() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        assert tcp_connect("127.0.0.1", port, timeout=0.5) is True
