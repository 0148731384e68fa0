"""Tests for the external-tool providers (pm2, ufw, Node toolchain, container runtime)."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from dnactl.providers import (
    ContainerRuntime,
    ContainerRuntimeError,
    FirewallProvider,
    NodeToolchain,
    ProcessSupervisor,
    ProcessSupervisorError,
    ProviderError,
    SeedOutcome,
    ToolchainError,
    run_command,
)
from dnactl.providers.pm2 import LOG_TIMESTAMP_FORMAT
from dnactl.providers.toolchain import SEED_SCRIPT_NAME


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


Responder = Callable[[list[str]], DummyResult]


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> Callable[[Responder], list[dict[str, Any]]]:
    """Patch ``subprocess.run`` and return a function installing a responder."""

    def install(responder: Responder) -> list[dict[str, Any]]:
        recorded: list[dict[str, Any]] = []

        def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
            recorded.append({"args": list(args), **kwargs})
            return responder(list(args))

        monkeypatch.setattr("dnactl.providers.commands.subprocess.run", fake_run)
        return recorded

    return install


# ----------------------------------------------------------------------
# run_command
# ----------------------------------------------------------------------
def test_run_command_maps_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("dnactl.providers.commands.subprocess.run", fake_run)

    with pytest.raises(ProviderError) as excinfo:
        run_command(["pm2", "jlist"])

    assert excinfo.value.tool_missing is True


def test_run_command_maps_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr("dnactl.providers.commands.subprocess.run", fake_run)

    with pytest.raises(ToolchainError, match="timed out after 5s"):
        run_command(["npm", "install"], error_cls=ToolchainError, timeout=5)


def test_run_command_layers_env_and_reports_stderr(
    calls: Callable[[Responder], list[dict[str, Any]]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("HOME", "/home/tester")
    recorded = calls(lambda args: DummyResult(returncode=2, stderr="bad things\n"))

    with pytest.raises(ProviderError, match=r"npm install failed \(exit 2\): bad things"):
        run_command(["npm", "install"], env={"DATABASE_URL": "postgresql://x"})

    env = recorded[0]["env"]
    assert env["DATABASE_URL"] == "postgresql://x"
    assert env["HOME"] == "/home/tester"


# ----------------------------------------------------------------------
# pm2
# ----------------------------------------------------------------------
def _jlist(*entries: tuple[str, str, int]) -> str:
    return json.dumps(
        [{"name": name, "pid": pid, "pm2_env": {"status": status}} for name, status, pid in entries]
    )


def test_pm2_list_ignores_banner(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    banner = ">>>> In-memory PM2 is out-of-date, do:\n>>>> $ pm2 update\n"
    calls(lambda args: DummyResult(stdout=banner + _jlist(("alpha", "online", 42))))

    processes = ProcessSupervisor().list()

    assert len(processes) == 1
    assert processes[0].name == "alpha"
    assert processes[0].online is True
    assert processes[0].pid == 42


def test_pm2_find_requires_exact_name(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    listing = _jlist(("alpha-2", "online", 7), ("alpha", "stopped", 0))
    calls(lambda args: DummyResult(stdout=listing))

    process = ProcessSupervisor().find("alpha")

    assert process is not None
    assert process.status == "stopped"
    assert process.pid is None
    assert ProcessSupervisor().find("alp") is None


def test_pm2_empty_output_means_no_processes(
    calls: Callable[[Responder], list[dict[str, Any]]],
) -> None:
    calls(lambda args: DummyResult(stdout=""))

    assert ProcessSupervisor().list() == []


def test_pm2_garbage_output_is_an_error(
    calls: Callable[[Responder], list[dict[str, Any]]],
) -> None:
    calls(lambda args: DummyResult(stdout="[not json"))

    with pytest.raises(ProcessSupervisorError, match="invalid JSON"):
        ProcessSupervisor().list()


def test_pm2_start_passes_name_and_cwd(
    calls: Callable[[Responder], list[dict[str, Any]]],
    tmp_path: Path,
) -> None:
    recorded = calls(lambda args: DummyResult())

    ProcessSupervisor(pm2_bin="/usr/bin/pm2").start("alpha", script="index.js", cwd=tmp_path)

    assert recorded[0]["args"] == [
        "/usr/bin/pm2",
        "start",
        "index.js",
        "--name",
        "alpha",
        "--cwd",
        str(tmp_path),
        "--time",
    ]


def test_pm2_logs_never_stream(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    recorded = calls(lambda args: DummyResult(stdout="line\n"))

    output = ProcessSupervisor().logs("alpha", lines=20, errors_only=True)

    assert output == "line"
    assert recorded[0]["args"] == [
        "pm2", "logs", "alpha", "--lines", "20", "--nostream", "--err"
    ]


def test_pm2_logs_with_timestamps(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    recorded = calls(lambda args: DummyResult(stdout=""))

    ProcessSupervisor().logs("alpha", timestamps=True)

    assert recorded[0]["args"][-2:] == ["--timestamp", LOG_TIMESTAMP_FORMAT]


# ----------------------------------------------------------------------
# ufw
# ----------------------------------------------------------------------
def test_firewall_allow_uses_sudo(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    recorded = calls(lambda args: DummyResult(stdout="Status: active\n"))

    result = FirewallProvider().allow(5000)

    assert result.applied is True
    assert recorded[1]["args"] == ["sudo", "-n", "ufw", "allow", "5000/tcp"]


def test_firewall_inactive_is_skipped(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    recorded = calls(lambda args: DummyResult(stdout="Status: inactive\n"))

    result = FirewallProvider(use_sudo=False).remove(5000)

    assert result.skipped is True
    assert result.failed is False
    assert len(recorded) == 1


def test_firewall_failure_is_reported_not_raised(
    calls: Callable[[Responder], list[dict[str, Any]]],
) -> None:
    def responder(args: list[str]) -> DummyResult:
        if "status" in args:
            return DummyResult(stdout="Status: active\n")
        return DummyResult(returncode=1, stderr="sudo: a password is required")

    calls(responder)

    result = FirewallProvider().allow(5000)

    assert result.failed is True
    assert "password is required" in result.detail


def test_firewall_disabled_runs_nothing(calls: Callable[[Responder], list[dict[str, Any]]]) -> None:
    recorded = calls(lambda args: DummyResult())

    result = FirewallProvider(enabled=False).allow(5000)

    assert result.skipped is True
    assert recorded == []


# ----------------------------------------------------------------------
# Node toolchain
# ----------------------------------------------------------------------
def test_migrate_schema_uses_given_url(
    calls: Callable[[Responder], list[dict[str, Any]]],
    tmp_path: Path,
) -> None:
    recorded = calls(lambda args: DummyResult())

    NodeToolchain().migrate_schema(tmp_path, "postgresql://direct:15432/alpha_db")

    assert [call["args"][1:] for call in recorded] == [
        ["prisma", "generate"],
        ["prisma", "db", "push", "--accept-data-loss"],
    ]
    for call in recorded:
        assert call["cwd"] == str(tmp_path)
        assert call["env"]["DATABASE_URL"] == "postgresql://direct:15432/alpha_db"
        assert call["env"]["DIRECT_URL"] == "postgresql://direct:15432/alpha_db"


def test_seed_admin_exit_three_means_exists(
    calls: Callable[[Responder], list[dict[str, Any]]],
    tmp_path: Path,
) -> None:
    seen: list[bool] = []

    def responder(args: list[str]) -> DummyResult:
        seen.append((tmp_path / SEED_SCRIPT_NAME).is_file())
        return DummyResult(returncode=3, stdout="exists admin@example.com")

    recorded = calls(responder)

    outcome = NodeToolchain().seed_admin(
        tmp_path,
        "console.log('seed')",
        database_url="postgresql://direct",
        values={"DNACTL_ADMIN_EMAIL": "admin@example.com"},
    )

    assert outcome is SeedOutcome.EXISTS
    assert seen == [True]
    assert not (tmp_path / SEED_SCRIPT_NAME).exists()
    assert recorded[0]["args"] == ["node", SEED_SCRIPT_NAME]
    assert recorded[0]["env"]["DNACTL_ADMIN_EMAIL"] == "admin@example.com"


def test_seed_admin_other_failure_raises_and_cleans_up(
    calls: Callable[[Responder], list[dict[str, Any]]],
    tmp_path: Path,
) -> None:
    calls(lambda args: DummyResult(returncode=1, stderr="Cannot find module '@prisma/client'"))

    with pytest.raises(ToolchainError, match="admin seed failed"):
        NodeToolchain().seed_admin(
            tmp_path, "x", database_url="postgresql://direct", values={}
        )

    assert not (tmp_path / SEED_SCRIPT_NAME).exists()


def test_build_frontend_failure_raises(
    calls: Callable[[Responder], list[dict[str, Any]]],
    tmp_path: Path,
) -> None:
    calls(lambda args: DummyResult(returncode=1, stderr="vite: not found"))

    with pytest.raises(ToolchainError, match="npm run build failed"):
        NodeToolchain().build_frontend(tmp_path)


# ----------------------------------------------------------------------
# Container runtime
# ----------------------------------------------------------------------
def test_container_running_matches_exact_name(
    calls: Callable[[Responder], list[dict[str, Any]]],
) -> None:
    calls(lambda args: DummyResult(stdout="postgres-old\n"))

    assert ContainerRuntime().running("postgres") is False


def test_container_exists_uses_all_containers(
    calls: Callable[[Responder], list[dict[str, Any]]],
) -> None:
    recorded = calls(lambda args: DummyResult(stdout="pgbouncer\n"))

    assert ContainerRuntime(runtime_bin="docker").exists("pgbouncer") is True
    assert recorded[0]["args"][:3] == ["docker", "ps", "-a"]


def test_container_exec_failure_raises(
    calls: Callable[[Responder], list[dict[str, Any]]],
) -> None:
    calls(lambda args: DummyResult(returncode=125, stderr="no such container"))

    with pytest.raises(ContainerRuntimeError, match="no such container"):
        ContainerRuntime().exec("postgres", ["psql", "-c", "select 1"])
