"""Process lifecycle control for provisioned instances.

pm2 is the only source of process truth: nothing here persists a running
or stopped flag. Batch operations (resurrection, bulk stop) isolate
failures per instance and return a :class:`~dnactl.models.BatchReport`;
best-effort side effects (firewall rules, pm2 ``save`` after a stop) turn
into warnings rather than failures.
"""
from __future__ import annotations

import re
import shutil
import tempfile
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path

from .database import DatabaseProvisioner
from .health import HealthChecker
from .materializer import InstanceMaterializer, MaterializeError
from .models import (
    BatchReport,
    Instance,
    ItemOutcome,
    OperationReport,
    ProcessState,
    ProcessStatus,
)
from .ports import PortAllocator
from .providers import (
    FirewallProvider,
    NodeToolchain,
    Pm2Process,
    ProcessSupervisor,
    ProcessSupervisorError,
)
from .state import InstanceNotFoundError, InstanceRegistry, StateRegistryError

SCHEMA_FILE = Path("prisma") / "schema.prisma"
LOG_STAMP = re.compile(r"(\d{4}-\d{2}-\d{2})[T -](\d{2}:\d{2}:\d{2})")


class LifecycleError(RuntimeError):
    """Raised when a lifecycle operation cannot be completed."""


class ProcessLifecycleController:
    """Start, stop, migrate and resurrect instance processes."""

    def __init__(
        self,
        *,
        registry: InstanceRegistry,
        supervisor: ProcessSupervisor,
        database: DatabaseProvisioner,
        materializer: InstanceMaterializer,
        firewall: FirewallProvider,
        ports: PortAllocator,
        toolchain: NodeToolchain | None = None,
        health: HealthChecker | None = None,
        entrypoint: str = "index.js",
    ) -> None:
        self.registry = registry
        self.supervisor = supervisor
        self.database = database
        self.materializer = materializer
        self.firewall = firewall
        self.ports = ports
        self.toolchain = toolchain
        self.health = health
        self.entrypoint = entrypoint

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status(self, name: str) -> ProcessState:
        """Return the live process status of *name*."""
        try:
            process = self.supervisor.find(name)
        except ProcessSupervisorError as exc:
            return ProcessState(ProcessStatus.UNKNOWN, detail=str(exc))
        return _state_from_process(process)

    def status_many(self, names: Iterable[str]) -> dict[str, ProcessState]:
        """Return statuses for *names* from a single pm2 listing."""
        wanted = list(names)
        try:
            processes = {process.name: process for process in self.supervisor.list()}
        except ProcessSupervisorError as exc:
            unknown = ProcessState(ProcessStatus.UNKNOWN, detail=str(exc))
            return {name: unknown for name in wanted}
        return {name: _state_from_process(processes.get(name)) for name in wanted}

    def verify_health(self, name: str) -> bool:
        """Return ``True`` when *name* is online and answering on its port."""
        instance = self.registry.require(name)
        if self.health is None:
            return self.status(name).running
        return self.health.verify(name, instance.port)

    # ------------------------------------------------------------------
    # Single-instance operations
    # ------------------------------------------------------------------
    def start(self, name: str) -> OperationReport:
        """Start *name*; a stale registration is replaced so ``.env`` is re-read."""
        instance = self.registry.require(name)
        report = OperationReport(name=name, action="start")
        process = self._find(name)
        if process is not None and process.online:
            report.warnings.append(f"Instance '{name}' is already running.")
            return report
        self._launch(instance, process, report)
        return report

    def stop(self, name: str) -> OperationReport:
        """Stop the process of *name*."""
        self._require_exists(name)
        report = OperationReport(name=name, action="stop")
        process = self._find(name)
        if process is None:
            report.warnings.append(f"Instance '{name}' has no registered process.")
            return report
        if not process.online:
            report.warnings.append(f"Instance '{name}' is not running.")
            return report
        self.supervisor.stop(name)
        report.steps.append("pm2.stop")
        return report

    def restart(self, name: str) -> OperationReport:
        """Delete and re-create the pm2 registration of *name*.

        ``pm2 restart`` keeps the environment captured at first start, so a
        fresh registration is the only way to pick up ``.env`` changes.
        """
        instance = self.registry.require(name)
        report = OperationReport(name=name, action="restart")
        self._launch(instance, self._find(name), report)
        self._check_health(instance, report)
        return report

    def delete(self, name: str) -> OperationReport:
        """Remove the process, database, role and directory of *name*.

        A corrupt instance can still be deleted: database names are derived
        from the instance name.
        """
        self._require_exists(name)
        instance = self.registry.get(name)
        report = OperationReport(name=name, action="delete")

        try:
            process = self.supervisor.find(name)
            if process is not None:
                if process.online:
                    self.supervisor.stop(name)
                    report.steps.append("pm2.stop")
                self.supervisor.delete(name)
                report.steps.append("pm2.delete")
                self.supervisor.save()
                report.steps.append("pm2.save")
        except ProcessSupervisorError as exc:
            report.warnings.append(f"Process cleanup incomplete: {exc}")

        self.database.drop(name)
        report.steps.append("db.drop")

        if instance is not None:
            result = self.firewall.remove(instance.port)
            if result.failed:
                report.warnings.append(f"Firewall rule not removed: {result.detail}")

        shutil.rmtree(self.registry.paths_for(name).instance)
        report.steps.append("files.remove")
        return report

    def logs(
        self,
        name: str,
        *,
        lines: int = 50,
        errors_only: bool = False,
        pattern: re.Pattern[str] | None = None,
        since_minutes: int | None = None,
        now: datetime | None = None,
    ) -> str:
        """Return recent pm2 log output for *name*.

        *pattern* keeps only matching lines; *since_minutes* keeps lines
        stamped within that many minutes of *now* (local time, as pm2
        writes it).
        """
        self._require_exists(name)
        output = self.supervisor.logs(
            name,
            lines=lines,
            errors_only=errors_only,
            timestamps=since_minutes is not None,
        )
        if since_minutes is not None:
            cutoff = (now or datetime.now()) - timedelta(minutes=since_minutes)
            output = filter_since(output, cutoff)
        if pattern is not None:
            output = "\n".join(line for line in output.splitlines() if pattern.search(line))
        return output

    def change_port(
        self,
        name: str,
        new_port: int,
        *,
        allow_busy: bool = False,
    ) -> OperationReport:
        """Move *name* to *new_port*.

        Registry and OS checks run before anything is touched; a conflict
        leaves the instance exactly as it was.
        """
        instance = self.registry.require(name)
        if new_port == instance.port:
            raise LifecycleError(f"Instance '{name}' already uses port {new_port}.")
        self.ports.check(new_port, exclude=name, allow_busy=allow_busy)

        report = OperationReport(name=name, action="change-port")
        old_port = instance.port
        try:
            self.supervisor.stop(name)
            report.steps.append("pm2.stop")
        except ProcessSupervisorError:
            report.steps.append("pm2.stop:skipped")

        try:
            updated = self.materializer.set_port(name, new_port)
        except (MaterializeError, StateRegistryError) as exc:
            try:
                self._launch(instance, self._find(name), report)
            except ProcessSupervisorError as restart_exc:
                exc.add_note(f"Previous process could not be restarted: {restart_exc}")
            raise
        report.steps.append("config.port")

        removed = self.firewall.remove(old_port)
        if removed.failed:
            report.warnings.append(
                f"Firewall rule for port {old_port} not removed: {removed.detail}"
            )
        allowed = self.firewall.allow(new_port)
        if allowed.failed:
            report.warnings.append(
                f"Firewall rule for port {new_port} not applied: {allowed.detail}"
            )

        self._launch(updated, self._find(name), report)
        self._check_health(updated, report)
        return report

    def rebuild(self, name: str, *, apply_schema: bool | None = None) -> OperationReport:
        """Refresh the code of *name* from the template, keeping its data.

        ``.env`` and uploads survive; the previous ``server/``, ``client/``
        and ``config.json`` are snapshotted and restored if any step fails.
        With *apply_schema* left as ``None`` the schema is pushed only when
        the template's Prisma schema differs from the instance's.
        """
        if self.toolchain is None:
            raise LifecycleError("Rebuild requires the Node toolchain.")
        instance = self.registry.require(name)
        self.materializer.validate_template()
        paths = instance.paths
        report = OperationReport(name=name, action="rebuild")

        try:
            self.supervisor.stop(name)
            report.steps.append("pm2.stop")
        except ProcessSupervisorError:
            report.steps.append("pm2.stop:skipped")

        self.registry.ensure_root()
        snapshot = Path(tempfile.mkdtemp(prefix=f".{name}-rollback-", dir=self.registry.root))
        try:
            shutil.copytree(paths.server, snapshot / "server", symlinks=True)
            shutil.copytree(paths.client, snapshot / "client", symlinks=True)
            shutil.copy2(paths.config_file, snapshot / paths.config_file.name)
            report.steps.append("snapshot")
            try:
                self._refresh(instance, snapshot, apply_schema, report)
            except (RuntimeError, OSError) as exc:
                self._restore(instance, snapshot, report)
                raise LifecycleError(
                    f"Rebuild of '{name}' failed; previous version restored: {exc}"
                ) from exc
        finally:
            shutil.rmtree(snapshot, ignore_errors=True)
        self._check_health(instance, report)
        return report

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------
    def resurrect_all(self) -> BatchReport:
        """Start every instance that is not running."""
        return self._resurrect(self.registry.list())

    def resurrect_selected(self, names: Iterable[str]) -> BatchReport:
        """Start the selected instances that are not running."""
        return self._resurrect(names)

    def stop_selected(self, names: Iterable[str]) -> BatchReport:
        """Stop the selected instances, isolating failures."""
        report = BatchReport()
        processes = self._snapshot()
        for name in names:
            if not self.registry.exists(name):
                report.add(name, ItemOutcome.FAILED, "instance does not exist")
                continue
            process = processes.get(name)
            if process is None or not process.online:
                report.add(name, ItemOutcome.SKIPPED, "not running")
                continue
            try:
                self.supervisor.stop(name)
            except ProcessSupervisorError as exc:
                report.add(name, ItemOutcome.FAILED, str(exc))
                continue
            report.add(name, ItemOutcome.STOPPED)
        return report

    def _resurrect(self, names: Iterable[str]) -> BatchReport:
        report = BatchReport()
        processes = self._snapshot()
        for name in names:
            instance = self.registry.get(name)
            if instance is None:
                if self.registry.exists(name):
                    report.corrupt.append(name)
                else:
                    report.add(name, ItemOutcome.FAILED, "instance does not exist")
                continue
            process = processes.get(name)
            if process is not None and process.online:
                report.add(name, ItemOutcome.SKIPPED, "already running")
                continue
            firewall = self.firewall.allow(instance.port)
            if firewall.failed:
                report.warnings.append(f"{name}: firewall rule not applied: {firewall.detail}")
            try:
                if process is not None:
                    self.supervisor.delete(name)
                self.supervisor.start(name, script=self.entrypoint, cwd=instance.paths.server)
            except ProcessSupervisorError as exc:
                report.add(name, ItemOutcome.FAILED, str(exc))
                continue
            report.add(name, ItemOutcome.STARTED, f"port {instance.port}")
        if report.started:
            try:
                self.supervisor.save()
            except ProcessSupervisorError as exc:
                report.warnings.append(f"pm2 save failed: {exc}")
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_exists(self, name: str) -> None:
        if not self.registry.exists(name):
            raise InstanceNotFoundError(name)

    def _find(self, name: str) -> Pm2Process | None:
        return self.supervisor.find(name)

    def _snapshot(self) -> dict[str, Pm2Process]:
        try:
            return {process.name: process for process in self.supervisor.list()}
        except ProcessSupervisorError as exc:
            raise LifecycleError(f"Process supervisor unavailable: {exc}") from exc

    def _launch(
        self,
        instance: Instance,
        existing: Pm2Process | None,
        report: OperationReport,
    ) -> None:
        if existing is not None:
            self.supervisor.delete(instance.name)
            report.steps.append("pm2.delete")
        self.supervisor.start(instance.name, script=self.entrypoint, cwd=instance.paths.server)
        report.steps.append("pm2.start")
        self.supervisor.save()
        report.steps.append("pm2.save")

    def _check_health(self, instance: Instance, report: OperationReport) -> None:
        if self.health is None:
            return
        if not self.health.verify(instance.name, instance.port):
            report.warnings.append(
                f"Instance '{instance.name}' did not answer on port {instance.port}."
            )

    def _refresh(
        self,
        instance: Instance,
        snapshot: Path,
        apply_schema: bool | None,
        report: OperationReport,
    ) -> None:
        toolchain = self.toolchain
        if toolchain is None:
            raise LifecycleError("Rebuild requires the Node toolchain.")
        paths = instance.paths
        shutil.rmtree(paths.server)
        shutil.rmtree(paths.client)
        self.materializer.copy_application(paths)
        shutil.copy2(snapshot / "server" / ".env", paths.env_file)
        previous_uploads = snapshot / "server" / "uploads"
        if previous_uploads.is_dir():
            shutil.copytree(previous_uploads, paths.uploads, dirs_exist_ok=True)
        (paths.uploads / "profile-pics").mkdir(parents=True, exist_ok=True)
        report.steps.append("files.refresh")

        toolchain.install_dependencies(paths.server)
        toolchain.install_dependencies(paths.client)
        report.steps.append("deps.install")
        direct_url = instance.database.direct_url
        toolchain.generate_client(paths.server, direct_url)
        if apply_schema is None:
            apply_schema = _schema_changed(snapshot / "server", paths.server)
        if apply_schema:
            toolchain.push_schema(paths.server, direct_url)
            report.steps.append("schema.push")
        toolchain.build_frontend(paths.client)
        report.steps.append("frontend.build")
        self._launch(instance, self._find(instance.name), report)

    def _restore(self, instance: Instance, snapshot: Path, report: OperationReport) -> None:
        paths = instance.paths
        for target in (paths.server, paths.client):
            if target.exists():
                shutil.rmtree(target)
            shutil.move(str(snapshot / target.name), str(target))
        shutil.copy2(snapshot / paths.config_file.name, paths.config_file)
        report.steps.append("rollback")
        try:
            self._launch(instance, self._find(instance.name), report)
        except ProcessSupervisorError as exc:
            report.warnings.append(f"Restored code could not be restarted: {exc}")


def _state_from_process(process: Pm2Process | None) -> ProcessState:
    if process is None:
        return ProcessState(ProcessStatus.STOPPED, detail="not registered")
    if process.online:
        return ProcessState(ProcessStatus.RUNNING, detail=process.status, pid=process.pid)
    return ProcessState(ProcessStatus.STOPPED, detail=process.status)


def _schema_changed(previous_server: Path, current_server: Path) -> bool:
    old = previous_server / SCHEMA_FILE
    new = current_server / SCHEMA_FILE
    if not new.is_file():
        return False
    if not old.is_file():
        return True
    return old.read_bytes() != new.read_bytes()


def filter_since(output: str, cutoff: datetime) -> str:
    """Keep log lines stamped at or after *cutoff*.

    Unstamped lines (stack traces, wrapped output) follow the verdict of the
    last stamped line; those before any stamp are dropped.
    """
    kept: list[str] = []
    keep = False
    for line in output.splitlines():
        match = LOG_STAMP.search(line)
        if match is not None:
            try:
                stamp = datetime.fromisoformat(f"{match.group(1)}T{match.group(2)}")
            except ValueError:
                stamp = None
            if stamp is not None:
                keep = stamp >= cutoff
        if keep:
            kept.append(line)
    return "\n".join(kept)


__all__ = ["LifecycleError", "ProcessLifecycleController", "filter_since"]
