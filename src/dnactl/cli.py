"""Typer-powered command line interface for ``dnactl``.

Every command resolves a shared :class:`RuntimeContext`, records a
structured operation in ``operations.jsonl`` and takes the global plus
per-instance advisory locks before mutating anything. Commands that touch
an instance first confirm that the shared database infrastructure is up.
"""
from __future__ import annotations

import re
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .database import DatabaseError, DatabaseExistsError, DatabaseProvisioner
from .exit_codes import ExitCode
from .health import HealthChecker
from .infrastructure import (
    InfrastructureError,
    InfrastructureStatus,
    InfrastructureSupervisor,
)
from .lifecycle import LifecycleError, ProcessLifecycleController
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .materializer import InstanceMaterializer, MaterializeError
from .models import (
    BatchReport,
    Instance,
    InstanceNameError,
    ItemOutcome,
    OperationReport,
    ProcessStatus,
    generate_password,
    validate_instance_name,
)
from .pipeline import (
    AdminAccount,
    PipelineError,
    PipelineStage,
    ProvisioningPipeline,
    ProvisioningState,
    ProvisionRequest,
    ProvisionValidationError,
)
from .ports import PortAllocator, PortBusyError, PortsRegistryError
from .providers import (
    ContainerRuntime,
    FirewallProvider,
    NodeToolchain,
    ProcessSupervisor,
    ProcessSupervisorError,
    ProviderError,
)
from .state import (
    CorruptInstanceError,
    InstanceNotFoundError,
    InstanceRegistry,
    StateRegistryError,
)
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to dnactl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Answer yes to confirmation prompts (starts stopped infrastructure).",
)

ALLOW_BUSY_PORT_OPTION = typer.Option(
    False,
    "--allow-busy-port",
    help="Accept a port another process is bound to (registry conflicts still fail).",
)

STAGE_LABELS: dict[PipelineStage, str] = {
    PipelineStage.DB_CREATED: "Database and role created",
    PipelineStage.FILES_MATERIALIZED: "Application files copied",
    PipelineStage.DEPS_INSTALLED: "Dependencies installed",
    PipelineStage.SCHEMA_MIGRATED: "Database schema migrated",
    PipelineStage.ADMIN_SEEDED: "Administrator account seeded",
    PipelineStage.POOLED_SWITCH: "Runtime switched to pooled connection",
    PipelineStage.FRONTEND_BUILT: "Frontend built",
    PipelineStage.FIREWALL_CONFIGURED: "Firewall configured",
    PipelineStage.PROCESS_STARTED: "Process started under pm2",
    PipelineStage.DONE: "Instance verified",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        DNA Analysis multi-instance lifecycle CLI.

        Provision, start, stop, migrate and resurrect isolated application
        instances that share one PostgreSQL engine and PgBouncer pooler.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: InstanceRegistry
    ports: PortAllocator
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    containers: ContainerRuntime
    infrastructure: InfrastructureSupervisor
    supervisor: ProcessSupervisor
    firewall: FirewallProvider
    toolchain: NodeToolchain
    database: DatabaseProvisioner
    materializer: InstanceMaterializer
    health: HealthChecker
    pipeline: ProvisioningPipeline
    lifecycle: ProcessLifecycleController


def _build_runtime(config: AppConfig) -> RuntimeContext:
    timeout = config.command_timeout
    registry = InstanceRegistry(config.instance_root)
    ports = PortAllocator(
        registry=registry,
        base_port=config.ports.base,
        min_port=config.ports.min,
        max_port=config.ports.max,
        probe_host=config.ports.probe_host,
    )
    templates = TemplateEngine.with_overrides(config.templates_dir)
    containers = ContainerRuntime(runtime_bin=config.infrastructure.runtime_bin, timeout=timeout)
    infrastructure = InfrastructureSupervisor(
        containers=containers,
        engine_container=config.infrastructure.engine_container,
        pooler_container=config.infrastructure.pooler_container,
        engine_ready_wait=config.infrastructure.engine_ready_wait,
        pooler_ready_wait=config.infrastructure.pooler_ready_wait,
    )
    supervisor = ProcessSupervisor(pm2_bin=config.supervisor.pm2_bin, timeout=timeout)
    firewall = FirewallProvider(
        enabled=config.firewall.enabled,
        ufw_bin=config.firewall.ufw_bin,
        use_sudo=config.firewall.use_sudo,
        timeout=timeout,
    )
    toolchain = NodeToolchain(
        npm_bin=config.toolchain.npm_bin,
        npx_bin=config.toolchain.npx_bin,
        node_bin=config.toolchain.node_bin,
        timeout=timeout,
    )
    database = DatabaseProvisioner(
        containers=containers,
        registry=registry,
        settings=config.database,
        engine_container=config.infrastructure.engine_container,
    )
    materializer = InstanceMaterializer(
        registry=registry,
        templates=templates,
        template_root=config.template_root,
        env_passthrough=config.env_passthrough,
    )
    health = HealthChecker(
        supervisor=supervisor,
        attempts=config.health.attempts,
        interval=config.health.interval,
        initial_delay=config.health.initial_delay,
    )
    entrypoint = config.supervisor.entrypoint
    pipeline = ProvisioningPipeline(
        registry=registry,
        ports=ports,
        database=database,
        materializer=materializer,
        toolchain=toolchain,
        firewall=firewall,
        supervisor=supervisor,
        infrastructure=infrastructure,
        templates=templates,
        entrypoint=entrypoint,
        health=health,
    )
    lifecycle = ProcessLifecycleController(
        registry=registry,
        supervisor=supervisor,
        database=database,
        materializer=materializer,
        firewall=firewall,
        ports=ports,
        toolchain=toolchain,
        health=health,
        entrypoint=entrypoint,
    )
    return RuntimeContext(
        config=config,
        registry=registry,
        ports=ports,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        containers=containers,
        infrastructure=infrastructure,
        supervisor=supervisor,
        firewall=firewall,
        toolchain=toolchain,
        database=database,
        materializer=materializer,
        health=health,
        pipeline=pipeline,
        lifecycle=lifecycle,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        runtime = _build_runtime(config)
    except (ConfigError, PortsRegistryError) as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the dnactl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"dnactl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


instances_app = typer.Typer(help="Provision and manage application instances.")
infra_app = typer.Typer(help="Inspect and control the shared database infrastructure.")
ports_app = typer.Typer(help="Inspect instance port assignments.")
config_app = typer.Typer(help="Inspect the resolved configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(infra_app, name="infra")
app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _environment_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.ENVIRONMENT)


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _lock_error(op: OperationScope, exc: LockTimeoutError) -> NoReturn:
    _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _require_name(op: OperationScope, name: str) -> str:
    try:
        return validate_instance_name(name)
    except InstanceNameError as exc:
        _command_error(op, str(exc))


def _require_instance(runtime: RuntimeContext, name: str, op: OperationScope) -> Instance:
    try:
        return runtime.registry.require(name)
    except InstanceNotFoundError:
        _command_error(op, f"Instance '{name}' not found.")
    except CorruptInstanceError as exc:
        _command_error(op, str(exc))


def _require_infrastructure(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    assume_yes: bool,
) -> None:
    """Block until the engine and pooler are running, or abort the command."""
    try:
        status = runtime.infrastructure.status()
    except InfrastructureError as exc:
        _environment_error(op, str(exc))
    if status.setup_required:
        _environment_error(
            op,
            "Infrastructure setup required: container(s) "
            f"{', '.join(status.missing)} do not exist. Create them before using dnactl.",
        )
    if status.healthy:
        op.add_step("infra.check", status="success")
        return

    console.print(
        "[yellow]Database infrastructure is not running "
        f"(engine: {status.engine.label}, pooler: {status.pooler.label}).[/yellow]"
    )
    if not assume_yes and not typer.confirm("Start the infrastructure now?", default=True):
        op.add_step("infra.check", status="error", detail="not running")
        _environment_error(op, "Aborted: database infrastructure is not running.")
    try:
        runtime.infrastructure.start()
    except InfrastructureError as exc:
        op.add_step("infra.start", status="error", detail=str(exc))
        _environment_error(op, str(exc))
    op.add_step("infra.start", status="success")
    console.print("[green]Infrastructure started.[/green]")


def _finish_report(op: OperationScope, report: OperationReport, message: str) -> None:
    for step in report.steps:
        op.add_step(step, status="success")
    if report.warnings:
        for warning in report.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        op.warning(message, warnings=report.warnings, changed=len(report.steps))
        return
    console.print(f"[green]{message}[/green]")
    op.success(message, changed=len(report.steps))


def _render_batch(title: str, report: BatchReport) -> None:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Instance", style="bold")
    table.add_column("Outcome")
    table.add_column("Detail")
    if not report.items and not report.corrupt:
        table.add_row("(none)", "", "")
    for item in report.items:
        table.add_row(item.name, _outcome_markup(item.outcome.value), item.detail or "")
    for name in report.corrupt:
        table.add_row(name, "[red]corrupt[/red]", "config.json unreadable; excluded")
    console.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def _outcome_markup(outcome: str) -> str:
    if outcome in {"started", "stopped"}:
        return f"[green]{outcome}[/green]"
    if outcome == "failed":
        return f"[red]{outcome}[/red]"
    return f"[yellow]{outcome}[/yellow]"


def _status_markup(status: ProcessStatus) -> str:
    if status is ProcessStatus.RUNNING:
        return "[green]running[/green]"
    if status is ProcessStatus.STOPPED:
        return "[yellow]stopped[/yellow]"
    return "[red]unknown[/red]"


def _render_infra_status(status: InfrastructureStatus) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component", style="bold")
    table.add_column("Container")
    table.add_column("State")
    for component, state in (("engine", status.engine), ("pooler", status.pooler)):
        markup = {
            "running": "[green]running[/green]",
            "stopped": "[yellow]stopped[/yellow]",
        }.get(state.label, "[red]absent[/red]")
        table.add_row(component, state.name, markup)
    console.print(table)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config", "scope": "effective"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Reported configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in _flatten(data):
            table.add_row(key, value)
        console.print(table)
        op.success("Reported configuration.", changed=0)


def _flatten(data: dict[str, object], prefix: str = "") -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(_flatten(value, prefix=f"{dotted}."))
        elif isinstance(value, list):
            rows.append((dotted, ", ".join(str(item) for item in value)))
        else:
            rows.append((dotted, str(value)))
    return rows


# ----------------------------------------------------------------------
# ports
# ----------------------------------------------------------------------
@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List ports claimed by registered instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports", "scope": "registry"},
    ) as op:
        claimed = runtime.ports.claimed_ports()
        entries = [{"port": port, "instance": name} for port, name in sorted(claimed.items())]
        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported ports as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Port", style="bold")
        table.add_column("Instance")
        if not entries:
            table.add_row("(none)", "")
        for entry in entries:
            table.add_row(str(entry["port"]), str(entry["instance"]))
        console.print(table)
        op.success("Reported ports.", changed=0)


@ports_app.command("next")
def ports_next(ctx: typer.Context) -> None:
    """Show the port the next new instance would receive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports next",
        args={},
        target={"kind": "ports", "scope": "allocator"},
    ) as op:
        try:
            port = runtime.ports.allocate()
        except PortsRegistryError as exc:
            _command_error(op, str(exc))
        console.print(str(port))
        op.success(f"Next available port is {port}.", changed=0, context={"port": port})


# ----------------------------------------------------------------------
# infra
# ----------------------------------------------------------------------
@infra_app.command("status")
def infra_status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show whether the database engine and pooler are running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "infra status",
        args={"json": json_output},
        target={"kind": "infra", "scope": "containers"},
    ) as op:
        try:
            status = runtime.infrastructure.status()
        except InfrastructureError as exc:
            _environment_error(op, str(exc))
        if json_output:
            console.print_json(data=status.to_dict())
        else:
            _render_infra_status(status)
            if status.setup_required:
                console.print(
                    "[red]Infrastructure setup required; create the missing containers.[/red]"
                )
        op.success("Reported infrastructure status.", changed=0, context=status.to_dict())


@infra_app.command("start")
def infra_start(ctx: typer.Context) -> None:
    """Start the database engine, then the pooler."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "infra start",
        args={},
        target={"kind": "infra", "scope": "containers"},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                status = runtime.infrastructure.start()
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        except InfrastructureError as exc:
            _environment_error(op, str(exc))
        op.add_step("infra.start", status="success")
        _render_infra_status(status)
        console.print("[green]Infrastructure started.[/green]")
        op.success("Infrastructure started.", changed=1, context=status.to_dict())


@infra_app.command("stop")
def infra_stop(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
) -> None:
    """Stop the pooler, then the database engine."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "infra stop",
        args={"yes": yes},
        target={"kind": "infra", "scope": "containers"},
    ) as op:
        if not yes and not typer.confirm(
            "Stopping the infrastructure disconnects every instance. Continue?",
            default=False,
        ):
            _command_error(op, "Aborted by operator.")
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                status = runtime.infrastructure.stop()
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        except InfrastructureError as exc:
            _environment_error(op, str(exc))
        op.add_step("infra.stop", status="success")
        _render_infra_status(status)
        console.print("[green]Infrastructure stopped.[/green]")
        op.success("Infrastructure stopped.", changed=1, context=status.to_dict())


@infra_app.command("restart")
def infra_restart(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
) -> None:
    """Stop and start the database infrastructure."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "infra restart",
        args={"yes": yes},
        target={"kind": "infra", "scope": "containers"},
    ) as op:
        if not yes and not typer.confirm(
            "Restarting the infrastructure briefly disconnects every instance. Continue?",
            default=False,
        ):
            _command_error(op, "Aborted by operator.")
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                status = runtime.infrastructure.restart()
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        except InfrastructureError as exc:
            _environment_error(op, str(exc))
        op.add_step("infra.restart", status="success")
        _render_infra_status(status)
        console.print("[green]Infrastructure restarted.[/green]")
        op.success("Infrastructure restarted.", changed=1, context=status.to_dict())


@infra_app.command("logs")
def infra_logs(
    ctx: typer.Context,
    component: str = typer.Argument(
        "all",
        help="Which container to read: engine, pooler or all.",
    ),
    tail: int = typer.Option(50, "--tail", min=1, help="Number of lines per container."),
) -> None:
    """Print recent container logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "infra logs",
        args={"component": component, "tail": tail},
        target={"kind": "infra", "scope": component},
    ) as op:
        if component not in {"engine", "pooler", "all"}:
            _command_error(op, "Component must be one of: engine, pooler, all.")
        components = ["engine", "pooler"] if component == "all" else [component]
        for item in components:
            try:
                output = runtime.infrastructure.logs(item, tail=tail)
            except InfrastructureError as exc:
                _environment_error(op, str(exc))
            console.rule(f"[bold]{item}[/bold]")
            console.print(output.rstrip() or "(no output)", markup=False, highlight=False)
        op.success("Reported infrastructure logs.", changed=0)


# ----------------------------------------------------------------------
# instance: read-only commands
# ----------------------------------------------------------------------
@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances with their live process status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        entries = runtime.registry.entries()
        statuses = runtime.lifecycle.status_many(
            entry.name for entry in entries if not entry.corrupt
        )
        rows: list[dict[str, object]] = []
        for entry in entries:
            if entry.instance is None:
                rows.append({"name": entry.name, "port": None, "status": "corrupt"})
                continue
            state = statuses[entry.name]
            rows.append(
                {
                    "name": entry.name,
                    "port": entry.instance.port,
                    "status": state.status.value,
                    "detail": state.detail,
                    "created": entry.instance.created_at,
                }
            )

        if json_output:
            console.print_json(data={"instances": rows})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Port")
        table.add_column("Status")
        table.add_column("Created")
        if not entries:
            table.add_row("(none)", "", "", "")
        for entry in entries:
            if entry.instance is None:
                table.add_row(entry.name, "", "[red]corrupt[/red]", "")
                continue
            state = statuses[entry.name]
            table.add_row(
                entry.name,
                str(entry.instance.port),
                _status_markup(state.status),
                entry.instance.created_at,
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show configuration and status for a single instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        instance = _require_instance(runtime, name, op)
        state = runtime.lifecycle.status(name)
        details: dict[str, object] = {
            "name": instance.name,
            "port": instance.port,
            "created": instance.created_at,
            "status": state.status.value,
            "status_detail": state.detail,
            "pid": state.pid,
            "database": {
                "name": instance.database.name,
                "user": instance.database.user,
                "host": instance.database.host,
                "port": instance.database.port,
                "direct_port": instance.database.direct_port,
            },
            "paths": instance.paths.to_dict(),
        }
        if json_output:
            console.print_json(data=details)
            op.success("Reported instance details as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Name", instance.name)
        table.add_row("Port", str(instance.port))
        table.add_row("Status", _status_markup(state.status))
        table.add_row("PID", "" if state.pid is None else str(state.pid))
        table.add_row("Created", instance.created_at)
        table.add_row("Database", instance.database.name)
        table.add_row("Database user", instance.database.user)
        table.add_row(
            "Database ports",
            f"pooled {instance.database.port}, direct {instance.database.direct_port}",
        )
        table.add_row("Directory", str(instance.paths.instance))
        console.print(table)
        op.success("Reported instance details.", changed=0)


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the live process status of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        if not runtime.registry.exists(name):
            _command_error(op, f"Instance '{name}' not found.")
        state = runtime.lifecycle.status(name)
        payload = {
            "name": name,
            "status": state.status.value,
            "detail": state.detail,
            "pid": state.pid,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            detail = f" ({state.detail})" if state.detail else ""
            console.print(f"{name}: {_status_markup(state.status)}{detail}")
        op.success("Reported instance status.", changed=0, context=payload)


@instances_app.command("logs")
def instance_logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Number of log lines to show."),
    errors_only: bool = typer.Option(False, "--errors", help="Show only the error log."),
    grep: str | None = typer.Option(
        None,
        "--grep",
        metavar="PATTERN",
        help="Keep only lines matching this regular expression.",
    ),
    ignore_case: bool = typer.Option(
        False, "--ignore-case", "-i", help="Match --grep case-insensitively."
    ),
    since: int | None = typer.Option(
        None,
        "--since",
        min=1,
        metavar="MINUTES",
        help="Keep only lines logged within the last MINUTES minutes.",
    ),
    output_file: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        dir_okay=False,
        help="Write the log lines to this file instead of the console.",
    ),
) -> None:
    """Print (or save) recent pm2 logs for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance logs",
        args={
            "name": name,
            "lines": lines,
            "errors": errors_only,
            "grep": grep,
            "ignore_case": ignore_case,
            "since": since,
            "output": output_file,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        pattern = None
        if grep is not None:
            try:
                pattern = re.compile(grep, re.IGNORECASE if ignore_case else 0)
            except re.error as exc:
                _command_error(op, f"Invalid --grep pattern: {exc}")
        try:
            output = runtime.lifecycle.logs(
                name,
                lines=lines,
                errors_only=errors_only,
                pattern=pattern,
                since_minutes=since,
            )
        except InstanceNotFoundError:
            _command_error(op, f"Instance '{name}' not found.")
        except ProcessSupervisorError as exc:
            _provider_error(op, str(exc))
        output = output.rstrip()
        if output_file is not None:
            try:
                output_file.write_text(output + "\n" if output else "", encoding="utf-8")
            except OSError as exc:
                _environment_error(op, f"Cannot write {output_file}: {exc}")
            count = len(output.splitlines())
            console.print(f"Saved {count} log line(s) to {output_file}.")
            op.success(
                "Saved instance logs.",
                changed=1,
                context={"output": str(output_file), "lines": count},
            )
            return
        console.print(output or "(no output)", markup=False, highlight=False)
        op.success("Reported instance logs.", changed=0)


# ----------------------------------------------------------------------
# instance: provisioning
# ----------------------------------------------------------------------
@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new instance."),
    port: int | None = typer.Option(
        None,
        "--port",
        help="Port to bind (defaults to the next free port from the base).",
    ),
    allow_busy_port: bool = ALLOW_BUSY_PORT_OPTION,
    admin_name: str | None = typer.Option(None, "--admin-name", help="Administrator name."),
    admin_email: str | None = typer.Option(None, "--admin-email", help="Administrator email."),
    admin_password: str | None = typer.Option(
        None,
        "--admin-password",
        help="Administrator password (generated when omitted).",
    ),
    cleanup: bool | None = typer.Option(
        None,
        "--cleanup/--no-cleanup",
        help="On failure, undo partial work without prompting (or keep it for inspection).",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Provision a new instance end to end."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={
            "name": name,
            "port": port,
            "allow_busy_port": allow_busy_port,
            "admin_email": admin_email,
            "cleanup": cleanup,
            "yes": yes,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        if runtime.registry.exists(name):
            _command_error(op, f"Instance '{name}' already exists.")

        if admin_name is None:
            admin_name = typer.prompt("Administrator name")
        if admin_email is None:
            admin_email = typer.prompt("Administrator email")
        generated_password = admin_password is None
        password = admin_password if admin_password is not None else generate_password()

        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_infrastructure(runtime, op, assume_yes=yes)
                allow_busy = _confirm_port(runtime, op, port, allow_busy_port, yes)
                request = ProvisionRequest(
                    name=name,
                    admin=AdminAccount(name=admin_name, email=admin_email, password=password),
                    port=port,
                    allow_busy_port=allow_busy,
                )
                state = _run_pipeline(runtime, op, request, cleanup=cleanup, assume_yes=yes)
        except LockTimeoutError as exc:
            _lock_error(op, exc)

        host = runtime.config.database.host
        console.print(f"[green]Instance '{name}' is running on port {state.port}.[/green]")
        console.print(f"  URL: http://{host}:{state.port}")
        console.print(f"  Administrator: {admin_email}")
        if generated_password:
            console.print(f"  Generated password: [bold]{password}[/bold]")
            console.print("  [yellow]Store this password now; it is not saved.[/yellow]")
        context = state.to_dict()
        if state.warnings:
            for warning in state.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            op.warning(
                f"Instance '{name}' provisioned with warnings.",
                warnings=list(state.warnings),
                changed=len(state.entered),
                context=context,
            )
            return
        op.success(f"Instance '{name}' provisioned.", changed=len(state.entered), context=context)


def _confirm_port(
    runtime: RuntimeContext,
    op: OperationScope,
    port: int | None,
    allow_busy: bool,
    assume_yes: bool,
    *,
    exclude: str | None = None,
) -> bool:
    """Return whether a busy requested port has been accepted by the operator."""
    if port is None:
        return allow_busy
    try:
        runtime.ports.check(port, exclude=exclude, allow_busy=allow_busy)
    except PortBusyError as exc:
        if assume_yes or not typer.confirm(f"{exc} Use it anyway?", default=False):
            _command_error(op, f"{exc} Pass --allow-busy-port to use it anyway.")
        op.add_step("ports.busy-accepted", status="warning", detail=str(port))
        return True
    except PortsRegistryError as exc:
        _command_error(op, str(exc))
    return allow_busy


def _run_pipeline(
    runtime: RuntimeContext,
    op: OperationScope,
    request: ProvisionRequest,
    *,
    cleanup: bool | None,
    assume_yes: bool,
) -> ProvisioningState:
    def on_stage(stage: PipelineStage, _state: ProvisioningState) -> None:
        op.add_step(f"pipeline.{stage.value}", status="success")
        console.print(f"  [green]OK[/green] {STAGE_LABELS[stage]}")

    console.print(f"[bold]Provisioning instance '{request.name}'...[/bold]")
    try:
        return runtime.pipeline.run(request, on_stage=on_stage)
    except ProvisionValidationError as exc:
        _command_error(op, str(exc))
    except DatabaseExistsError as exc:
        _command_error(op, str(exc))
    except (InfrastructureError, DatabaseError) as exc:
        _environment_error(op, str(exc))
    except PortsRegistryError as exc:
        _command_error(op, str(exc))
    except PipelineError as failure:
        op.add_step(f"pipeline.{failure.stage.value}", status="error", detail=str(failure.cause))
        console.print(f"  [red]FAILED[/red] {STAGE_LABELS[failure.stage]}: {failure.cause}")
        _handle_failure(runtime, op, failure, cleanup=cleanup, assume_yes=assume_yes)


def _handle_failure(
    runtime: RuntimeContext,
    op: OperationScope,
    failure: PipelineError,
    *,
    cleanup: bool | None,
    assume_yes: bool,
) -> NoReturn:
    if cleanup is None:
        cleanup = assume_yes or typer.confirm(
            "Remove the partially created instance (process, database, files)?",
            default=True,
        )
    warnings: list[str] = list(failure.state.warnings)
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if cleanup:
        report = runtime.pipeline.cleanup(failure)
        for step in report.steps:
            op.add_step(
                f"cleanup.{step.name}",
                status="success" if step.ok else "error",
                detail=step.detail or None,
            )
        if report.ok:
            console.print("[yellow]Partial instance removed.[/yellow]")
        else:
            for step in report.failures:
                message = f"Cleanup step {step.name} failed: {step.detail}"
                warnings.append(message)
                console.print(f"[red]{message}[/red]")
    else:
        op.add_step("cleanup", status="skipped")
        console.print(
            "[yellow]Partial instance left in place for inspection; "
            f"remove it with 'dnactl instance delete {failure.state.name}'.[/yellow]"
        )
    message = str(failure)
    console.print(f"[red]{message}[/red]")
    op.error(
        message,
        errors=[message, *warnings],
        rc=ExitCode.PROVIDER,
        context=failure.state.to_dict(),
    )
    raise typer.Exit(code=ExitCode.PROVIDER)


# ----------------------------------------------------------------------
# instance: lifecycle
# ----------------------------------------------------------------------
@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
    yes: bool = YES_OPTION,
) -> None:
    """Start an instance process under pm2."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance start",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_instance(runtime, name, op)
                _require_infrastructure(runtime, op, assume_yes=yes)
                try:
                    report = runtime.lifecycle.start(name)
                except ProcessSupervisorError as exc:
                    _provider_error(op, str(exc))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_report(op, report, f"Instance '{name}' started.")


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
    yes: bool = YES_OPTION,
) -> None:
    """Stop an instance process."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance stop",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if not runtime.registry.exists(name):
                    _command_error(op, f"Instance '{name}' not found.")
                _require_infrastructure(runtime, op, assume_yes=yes)
                try:
                    report = runtime.lifecycle.stop(name)
                except ProcessSupervisorError as exc:
                    _provider_error(op, str(exc))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_report(op, report, f"Instance '{name}' stopped.")


@instances_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to restart."),
    yes: bool = YES_OPTION,
) -> None:
    """Re-register an instance with pm2 so ``.env`` changes are picked up."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance restart",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_instance(runtime, name, op)
                _require_infrastructure(runtime, op, assume_yes=yes)
                try:
                    report = runtime.lifecycle.restart(name)
                except ProcessSupervisorError as exc:
                    _provider_error(op, str(exc))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_report(op, report, f"Instance '{name}' restarted.")


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to delete."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete an instance, its database, role and files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        if not runtime.registry.exists(name):
            _command_error(op, f"Instance '{name}' not found.")
        if not yes and not typer.confirm(
            f"Permanently delete instance '{name}' and its database?",
            default=False,
        ):
            _command_error(op, "Aborted by operator.")
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_infrastructure(runtime, op, assume_yes=yes)
                try:
                    report = runtime.lifecycle.delete(name)
                except DatabaseError as exc:
                    _provider_error(op, str(exc))
                except OSError as exc:
                    _provider_error(op, f"Failed to remove instance files: {exc}")
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_report(op, report, f"Instance '{name}' deleted.")


@instances_app.command("set-port")
def instance_set_port(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance."),
    port: int = typer.Argument(..., help="New port for the instance."),
    allow_busy_port: bool = ALLOW_BUSY_PORT_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Move an instance to a new port and restart it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance set-port",
        args={"name": name, "port": port, "allow_busy_port": allow_busy_port, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                instance = _require_instance(runtime, name, op)
                if instance.port == port:
                    _command_error(op, f"Instance '{name}' already uses port {port}.")
                _require_infrastructure(runtime, op, assume_yes=yes)
                allow_busy = _confirm_port(
                    runtime, op, port, allow_busy_port, yes, exclude=name
                )
                try:
                    report = runtime.lifecycle.change_port(name, port, allow_busy=allow_busy)
                except PortsRegistryError as exc:
                    _command_error(op, str(exc))
                except LifecycleError as exc:
                    _command_error(op, str(exc))
                except (MaterializeError, StateRegistryError, ProviderError) as exc:
                    _provider_error(op, " ".join([str(exc), *getattr(exc, "__notes__", ())]))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_report(op, report, f"Instance '{name}' now listens on port {port}.")


@instances_app.command("rebuild")
def instance_rebuild(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to rebuild."),
    schema: bool | None = typer.Option(
        None,
        "--schema/--no-schema",
        help="Force or skip the schema push (default: only when the schema changed).",
    ),
    yes: bool = YES_OPTION,
) -> None:
    """Refresh instance code from the template, keeping data and ``.env``."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance rebuild",
        args={"name": name, "schema": schema, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _require_name(op, name)
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_instance(runtime, name, op)
                _require_infrastructure(runtime, op, assume_yes=yes)
                console.print(f"[bold]Rebuilding instance '{name}'...[/bold]")
                try:
                    report = runtime.lifecycle.rebuild(name, apply_schema=schema)
                except (LifecycleError, MaterializeError, ProviderError, OSError) as exc:
                    _provider_error(op, str(exc))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_report(op, report, f"Instance '{name}' rebuilt.")


# ----------------------------------------------------------------------
# instance: batch operations
# ----------------------------------------------------------------------
@instances_app.command("resurrect")
def instance_resurrect(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(
        None,
        help="Instances to start (default: every registered instance).",
    ),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Start every (or each named) instance that is not running."""
    runtime = _get_runtime(ctx)
    selected = list(names or [])
    with runtime.logger.operation(
        "instance resurrect",
        args={"names": selected, "yes": yes, "json": json_output},
        target={"kind": "instance", "scope": "selected" if selected else "all"},
    ) as op:
        selected = [_require_name(op, item) for item in selected]
        targets = selected or runtime.registry.list()
        try:
            with runtime.locks.mutate_instances(targets) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_infrastructure(runtime, op, assume_yes=yes)
                try:
                    if selected:
                        report = runtime.lifecycle.resurrect_selected(selected)
                    else:
                        report = runtime.lifecycle.resurrect_all()
                except LifecycleError as exc:
                    _provider_error(op, str(exc))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_batch(
            op,
            report,
            title="Resurrect",
            summary=(
                f"Started {report.started}, skipped {report.skipped}, failed {report.failed}."
            ),
            json_output=json_output,
        )


@instances_app.command("stop-many")
def instance_stop_many(
    ctx: typer.Context,
    names: list[str] = typer.Argument(..., help="Instances to stop."),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop several instances, continuing past individual failures."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance stop-many",
        args={"names": names, "yes": yes, "json": json_output},
        target={"kind": "instance", "scope": "selected"},
    ) as op:
        names = [_require_name(op, item) for item in names]
        try:
            with runtime.locks.mutate_instances(names) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                _require_infrastructure(runtime, op, assume_yes=yes)
                try:
                    report = runtime.lifecycle.stop_selected(names)
                except LifecycleError as exc:
                    _provider_error(op, str(exc))
        except LockTimeoutError as exc:
            _lock_error(op, exc)
        _finish_batch(
            op,
            report,
            title="Stop",
            summary=(
                f"Stopped {report.stopped}, skipped {report.skipped}, failed {report.failed}."
            ),
            json_output=json_output,
        )


def _finish_batch(
    op: OperationScope,
    report: BatchReport,
    *,
    title: str,
    summary: str,
    json_output: bool,
) -> None:
    for item in report.items:
        status = "error" if item.outcome is ItemOutcome.FAILED else "success"
        op.add_step(f"{item.outcome.value}:{item.name}", status=status, detail=item.detail)
    if json_output:
        console.print_json(data=report.to_dict())
    else:
        _render_batch(title, report)
        console.print(summary)
    changed = report.started + report.stopped
    warnings = list(report.warnings)
    if report.corrupt:
        warnings.append(f"Corrupt instances excluded: {', '.join(report.corrupt)}")
    if report.failed:
        failures = [
            f"{item.name}: {item.detail}"
            for item in report.items
            if item.outcome is ItemOutcome.FAILED
        ]
        op.error(
            summary,
            errors=failures,
            warnings=warnings,
            rc=ExitCode.PROVIDER,
            context=report.to_dict(),
        )
        raise typer.Exit(code=ExitCode.PROVIDER)
    if warnings:
        op.warning(summary, warnings=warnings, changed=changed, context=report.to_dict())
        return
    op.success(summary, changed=changed, context=report.to_dict())


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
