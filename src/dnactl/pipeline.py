"""Provisioning pipeline for new instances.

Creating an instance walks a fixed sequence of stages::

    DB_CREATED -> FILES_MATERIALIZED -> DEPS_INSTALLED -> SCHEMA_MIGRATED ->
    ADMIN_SEEDED -> POOLED_SWITCH -> FRONTEND_BUILT -> FIREWALL_CONFIGURED ->
    PROCESS_STARTED -> DONE

Progress is carried in an immutable :class:`ProvisioningState`; every step
receives the previous state and returns the next one. A stage is recorded
as *entered* just before its first side effect, so compensation after a
failure is derived from ``state.entered`` alone.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

import bcrypt

from .database import DatabaseProvisioner
from .health import HealthChecker
from .infrastructure import InfrastructureSupervisor
from .materializer import InstanceMaterializer
from .models import DatabaseConfig, Instance, validate_instance_name
from .ports import PortAllocator
from .providers import (
    FirewallProvider,
    NodeToolchain,
    ProcessSupervisor,
    ProcessSupervisorError,
    SeedOutcome,
)
from .state import InstanceRegistry
from .templates import TemplateEngine

SEED_TEMPLATE = "seed/create-admin.js.j2"
BCRYPT_ROUNDS = 10


class PipelineStage(str, Enum):
    """Ordered provisioning stages."""

    DB_CREATED = "db_created"
    FILES_MATERIALIZED = "files_materialized"
    DEPS_INSTALLED = "deps_installed"
    SCHEMA_MIGRATED = "schema_migrated"
    ADMIN_SEEDED = "admin_seeded"
    POOLED_SWITCH = "pooled_switch"
    FRONTEND_BUILT = "frontend_built"
    FIREWALL_CONFIGURED = "firewall_configured"
    PROCESS_STARTED = "process_started"
    DONE = "done"


STAGE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)


class ProvisionValidationError(RuntimeError):
    """Raised when a provisioning request is rejected before any side effect."""


class PipelineOrderError(RuntimeError):
    """Raised when a stage is entered out of order."""


class PipelineError(RuntimeError):
    """Raised when a stage fails; carries the state reached so far."""

    def __init__(self, stage: PipelineStage, cause: Exception, state: ProvisioningState) -> None:
        super().__init__(f"Provisioning failed at {stage.name}: {cause}")
        self.stage = stage
        self.cause = cause
        self.state = state


@dataclass(frozen=True)
class AdminAccount:
    """Initial administrator created by the seed step."""

    name: str
    email: str
    password: str
    role: str = "director"
    status: str = "approved"


@dataclass(frozen=True)
class ProvisionRequest:
    """Operator input for a new instance."""

    name: str
    admin: AdminAccount
    port: int | None = None
    allow_busy_port: bool = False


@dataclass(frozen=True)
class ProvisioningState:
    """Immutable progress record of one provisioning run."""

    name: str
    port: int
    stage: PipelineStage | None = None
    entered: tuple[PipelineStage, ...] = ()
    database: DatabaseConfig | None = None
    instance: Instance | None = None
    process_registered: bool = False
    admin_outcome: SeedOutcome | None = None
    warnings: tuple[str, ...] = ()

    def enter(self, stage: PipelineStage) -> ProvisioningState:
        """Return a state with *stage* entered; stages cannot be skipped."""
        position = len(self.entered)
        expected = STAGE_ORDER[position] if position < len(STAGE_ORDER) else None
        if stage is not expected:
            raise PipelineOrderError(
                f"Cannot enter {stage.name}; next stage is "
                f"{expected.name if expected else 'none'}."
            )
        return replace(self, entered=(*self.entered, stage))

    def complete(self, stage: PipelineStage, **changes: object) -> ProvisioningState:
        """Return a state marking *stage* as finished."""
        if not self.entered or self.entered[-1] is not stage:
            raise PipelineOrderError(f"Cannot complete {stage.name} before entering it.")
        return replace(self, stage=stage, **changes)

    def warn(self, message: str) -> ProvisioningState:
        return replace(self, warnings=(*self.warnings, message))

    @property
    def done(self) -> bool:
        return self.stage is PipelineStage.DONE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary (secrets omitted)."""
        return {
            "name": self.name,
            "port": self.port,
            "stage": self.stage.value if self.stage else None,
            "entered": [stage.value for stage in self.entered],
            "database": self.database.name if self.database else None,
            "process_registered": self.process_registered,
            "admin": self.admin_outcome.value if self.admin_outcome else None,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class CleanupStep:
    """Outcome of one compensating action."""

    name: str
    ok: bool
    detail: str = ""


@dataclass(slots=True)
class CleanupReport:
    """Outcome of compensating a failed provisioning run."""

    steps: list[CleanupStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    @property
    def failures(self) -> list[CleanupStep]:
        return [step for step in self.steps if not step.ok]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "steps": [
                {"name": step.name, "ok": step.ok, "detail": step.detail} for step in self.steps
            ],
        }


StageCallback = Callable[[PipelineStage, ProvisioningState], None]
StageStep = Callable[[ProvisioningState], ProvisioningState]


class ProvisioningPipeline:
    """Drive a new instance from nothing to a registered, running process."""

    def __init__(
        self,
        *,
        registry: InstanceRegistry,
        ports: PortAllocator,
        database: DatabaseProvisioner,
        materializer: InstanceMaterializer,
        toolchain: NodeToolchain,
        firewall: FirewallProvider,
        supervisor: ProcessSupervisor,
        infrastructure: InfrastructureSupervisor,
        templates: TemplateEngine,
        entrypoint: str = "index.js",
        health: HealthChecker | None = None,
    ) -> None:
        self.registry = registry
        self.ports = ports
        self.database = database
        self.materializer = materializer
        self.toolchain = toolchain
        self.firewall = firewall
        self.supervisor = supervisor
        self.infrastructure = infrastructure
        self.templates = templates
        self.entrypoint = entrypoint
        self.health = health
        self._admin: AdminAccount | None = None
        self._steps: Sequence[tuple[PipelineStage, StageStep]] = (
            (PipelineStage.DB_CREATED, self._create_database),
            (PipelineStage.FILES_MATERIALIZED, self._materialize),
            (PipelineStage.DEPS_INSTALLED, self._install_dependencies),
            (PipelineStage.SCHEMA_MIGRATED, self._migrate_schema),
            (PipelineStage.ADMIN_SEEDED, self._seed_admin),
            (PipelineStage.POOLED_SWITCH, self._switch_to_pooled),
            (PipelineStage.FRONTEND_BUILT, self._build_frontend),
            (PipelineStage.FIREWALL_CONFIGURED, self._configure_firewall),
            (PipelineStage.PROCESS_STARTED, self._start_process),
            (PipelineStage.DONE, self._confirm),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self, request: ProvisionRequest) -> int:
        """Check the request without side effects and return the port to use."""
        try:
            name = validate_instance_name(request.name)
        except RuntimeError as exc:
            raise ProvisionValidationError(str(exc)) from exc
        if self.registry.exists(name):
            raise ProvisionValidationError(f"Instance '{name}' already exists.")
        try:
            self.materializer.validate_template()
        except RuntimeError as exc:
            raise ProvisionValidationError(str(exc)) from exc
        if not request.admin.email.strip():
            raise ProvisionValidationError("Administrator email must not be empty.")
        if not request.admin.password:
            raise ProvisionValidationError("Administrator password must not be empty.")
        try:
            return self.ports.allocate(request.port, allow_busy=request.allow_busy_port)
        except RuntimeError as exc:
            raise ProvisionValidationError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def run(
        self,
        request: ProvisionRequest,
        *,
        on_stage: StageCallback | None = None,
    ) -> ProvisioningState:
        """Provision *request*; raise :class:`PipelineError` on stage failure.

        Validation errors, unavailable infrastructure and an existing
        database are raised before any stage is entered.
        """
        port = self.validate(request)
        name = request.name.strip()
        self.infrastructure.require_healthy()
        self.database.ensure_absent(name)
        # The registry is re-read right before the first side effect.
        port = self.ports.check(port, allow_busy=True)

        self._admin = request.admin
        state = ProvisioningState(name=name, port=port)
        try:
            for stage, step in self._steps:
                state = state.enter(stage)
                try:
                    state = step(state)
                except (RuntimeError, OSError, ValueError) as exc:
                    if PipelineStage.PROCESS_STARTED in state.entered:
                        state = self._halt_process(state)
                    raise PipelineError(stage, exc, state) from exc
                state = state.complete(stage)
                if on_stage is not None:
                    on_stage(stage, state)
        finally:
            self._admin = None
        return state

    def _create_database(self, state: ProvisioningState) -> ProvisioningState:
        database = self.database.provision(state.name, check_existing=False)
        state = replace(state, database=database)
        self.database.persist(state.name, database)
        return state

    def _materialize(self, state: ProvisioningState) -> ProvisioningState:
        instance = self.materializer.materialize(state.name, state.port, _need_db(state))
        return replace(state, instance=instance)

    def _install_dependencies(self, state: ProvisioningState) -> ProvisioningState:
        instance = _need_instance(state)
        self.toolchain.install_dependencies(instance.paths.server)
        self.toolchain.install_dependencies(instance.paths.client)
        return state

    def _migrate_schema(self, state: ProvisioningState) -> ProvisioningState:
        instance = _need_instance(state)
        self.toolchain.migrate_schema(instance.paths.server, instance.database.direct_url)
        return state

    def _seed_admin(self, state: ProvisioningState) -> ProvisioningState:
        instance = _need_instance(state)
        admin = self._admin
        if admin is None:
            raise ProvisionValidationError("Administrator account missing from request.")
        script = self.templates.render_to_string(SEED_TEMPLATE, {"instance_name": state.name})
        password_hash = bcrypt.hashpw(
            admin.password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        ).decode("utf-8")
        outcome = self.toolchain.seed_admin(
            instance.paths.server,
            script,
            database_url=instance.database.direct_url,
            values={
                "DNACTL_ADMIN_NAME": admin.name,
                "DNACTL_ADMIN_EMAIL": admin.email,
                "DNACTL_ADMIN_PASSWORD_HASH": password_hash,
                "DNACTL_ADMIN_ROLE": admin.role,
                "DNACTL_ADMIN_STATUS": admin.status,
            },
        )
        state = replace(state, admin_outcome=outcome)
        if outcome is SeedOutcome.EXISTS:
            state = state.warn(f"Administrator {admin.email} already existed; left unchanged.")
        return state

    def _switch_to_pooled(self, state: ProvisioningState) -> ProvisioningState:
        self.materializer.switch_to_pooled(_need_instance(state))
        return state

    def _build_frontend(self, state: ProvisioningState) -> ProvisioningState:
        self.toolchain.build_frontend(_need_instance(state).paths.client)
        return state

    def _configure_firewall(self, state: ProvisioningState) -> ProvisioningState:
        result = self.firewall.allow(state.port)
        if result.failed:
            state = state.warn(
                f"Firewall rule for port {state.port} not applied: {result.detail}"
            )
        return state

    def _start_process(self, state: ProvisioningState) -> ProvisioningState:
        instance = _need_instance(state)
        self.supervisor.start(state.name, script=self.entrypoint, cwd=instance.paths.server)
        state = replace(state, process_registered=True)
        self.supervisor.save()
        return state

    def _halt_process(self, state: ProvisioningState) -> ProvisioningState:
        """Stop a process started by a run that then failed; keep its registration."""
        try:
            if self.supervisor.find(state.name) is not None:
                self.supervisor.stop(state.name)
        except ProcessSupervisorError as exc:
            return state.warn(f"Process '{state.name}' could not be stopped: {exc}")
        return state

    def _confirm(self, state: ProvisioningState) -> ProvisioningState:
        process = self.supervisor.find(state.name)
        if process is None:
            raise ProcessSupervisorError(f"pm2 does not list process '{state.name}' after start.")
        if self.health is not None and not self.health.verify(state.name, state.port):
            state = state.warn(
                f"Instance '{state.name}' did not answer on port {state.port}; check its logs."
            )
        return state

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------
    def cleanup(self, failure: PipelineError) -> CleanupReport:
        """Undo the side effects of the stages entered before *failure*.

        Every action runs even if an earlier one fails.
        """
        state = failure.state
        entered = set(state.entered)
        report = CleanupReport()

        if PipelineStage.PROCESS_STARTED in entered:
            report.steps.append(self._attempt("pm2.delete", lambda: self._delete_process(state)))
        if PipelineStage.FIREWALL_CONFIGURED in entered:
            report.steps.append(self._attempt("firewall.remove", lambda: self._close_port(state)))
        if PipelineStage.DB_CREATED in entered:
            report.steps.append(
                self._attempt("db.drop", lambda: self.database.drop(state.name))
            )
            report.steps.append(
                self._attempt("files.remove", lambda: self._remove_directory(state))
            )
        return report

    @staticmethod
    def _attempt(name: str, action: Callable[[], None]) -> CleanupStep:
        try:
            action()
        except (RuntimeError, OSError) as exc:
            return CleanupStep(name=name, ok=False, detail=str(exc))
        return CleanupStep(name=name, ok=True)

    def _delete_process(self, state: ProvisioningState) -> None:
        if self.supervisor.find(state.name) is None:
            return
        self.supervisor.delete(state.name)
        self.supervisor.save()

    def _close_port(self, state: ProvisioningState) -> None:
        result = self.firewall.remove(state.port)
        if result.failed:
            raise RuntimeError(result.detail)

    def _remove_directory(self, state: ProvisioningState) -> None:
        path = self.registry.paths_for(state.name).instance
        if path.exists():
            shutil.rmtree(path)


def _need_db(state: ProvisioningState) -> DatabaseConfig:
    if state.database is None:
        raise PipelineOrderError("Database has not been provisioned yet.")
    return state.database


def _need_instance(state: ProvisioningState) -> Instance:
    if state.instance is None:
        raise PipelineOrderError("Instance files have not been materialised yet.")
    return state.instance


__all__ = [
    "AdminAccount",
    "CleanupReport",
    "CleanupStep",
    "PipelineError",
    "PipelineOrderError",
    "PipelineStage",
    "ProvisionRequest",
    "ProvisionValidationError",
    "ProvisioningPipeline",
    "ProvisioningState",
    "STAGE_ORDER",
]
