"""Typer-powered command line interface for ``milouctl``.

Every command runs inside a :class:`~milouctl.logging.StructuredLogger`
operation scope so the operations log records what was attempted, which
steps ran and how it ended. Domain errors are mapped onto
:class:`~milouctl.exit_codes.ExitCode` values in one place.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .credentials import CredentialGuard, CredentialLossError, UnrecoverableCredentialError
from .dependencies import DependencyError, DependencyOrchestrator
from .doctor import (
    PROBE_CATEGORY_VALUES,
    DoctorEngine,
    DoctorImpact,
    DoctorReport,
    ProbeStatus,
    collect_probes,
    create_probe_context,
    post_operation_warnings,
    serialize_report,
)
from .engine import InstallationEngine, ServiceHealthError
from .envfile import EnvFile, EnvFileError
from .exit_codes import ExitCode
from .health import HealthMonitor
from .logging import OperationScope, StructuredLogger
from .providers import (
    ComposeProvider,
    DockerError,
    DockerProvider,
    RegistryClient,
    RegistryError,
)
from .recovery import GuardedOperationError, SnapshotError, SnapshotStore, TransactionManager
from .state import (
    StateClassifier,
    UnsafeOperationError,
    describe_state,
    recommended_actions,
)
from .versions import UpdatePlan, VersionReconciler

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to milouctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    help="Reinstall services that already run the target version.",
)
SERVICE_OPTION = typer.Option(
    None,
    "--service",
    "-s",
    help="Limit the operation to this service (repeatable).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Do not ask for confirmation.",
)

_PROBE_CATEGORY_SET = frozenset(PROBE_CATEGORY_VALUES)
_PROBE_STATUS_STYLE = {
    ProbeStatus.GREEN: "[green]PASS[/green]",
    ProbeStatus.YELLOW: "[yellow]WARN[/yellow]",
    ProbeStatus.RED: "[red]FAIL[/red]",
}
_DOCTOR_IMPACT_MESSAGES = {
    DoctorImpact.OK: "Doctor run completed successfully.",
    DoctorImpact.VALIDATION: "Doctor detected configuration validation errors.",
    DoctorImpact.ENVIRONMENT: "Doctor detected environment dependency errors.",
    DoctorImpact.PROVIDER: "Doctor detected provider/service failures.",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Milou installation control.

        Classifies the installation, plans and applies version updates,
        and protects every change with a snapshot and automatic rollback.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    env: EnvFile
    docker: DockerProvider
    compose: ComposeProvider
    registry: RegistryClient
    health: HealthMonitor
    classifier: StateClassifier
    reconciler: VersionReconciler
    orchestrator: DependencyOrchestrator
    snapshots: SnapshotStore
    transactions: TransactionManager
    credentials: CredentialGuard
    engine: InstallationEngine


def _build_runtime(config: AppConfig) -> RuntimeContext:
    logger = StructuredLogger(config.logs_dir)
    env = EnvFile(config.env_file)
    docker = DockerProvider(
        logger=logger,
        docker_bin=config.docker.docker_bin,
        container_prefix=config.services.container_prefix,
        project_label=config.services.project_label,
        timeout=config.docker.command_timeout,
    )
    compose = ComposeProvider(
        logger=logger,
        compose_file=config.compose_file,
        env_file=config.env_file,
        docker_bin=config.docker.docker_bin,
        timeout=config.docker.command_timeout,
    )
    registry = RegistryClient(
        logger=logger,
        api_base=config.registry.api_base,
        organization=config.registry.organization,
        repository=config.registry.repository,
        token=config.registry.token,
        timeout=config.registry.timeout,
        retries=config.registry.retries,
        backoff=config.registry.backoff,
    )
    health = HealthMonitor(compose=compose, logger=logger)
    classifier = StateClassifier(
        env=env,
        runtime=docker,
        health=health,
        logger=logger,
        critical_services=config.services.critical,
        required_keys=config.state.required_keys,
        volume_patterns=config.state.volume_patterns,
        volume_data_age=timedelta(days=config.state.volume_data_age_days),
        cache_ttl=config.state.cache_ttl,
    )
    reconciler = VersionReconciler(registry=registry, logger=logger)
    orchestrator = DependencyOrchestrator(
        compose=compose, logger=logger, settle_delay=config.docker.settle_delay
    )
    snapshots = SnapshotStore(
        root=config.snapshots.root,
        env_file=config.env_file,
        compose_file=config.compose_file,
        runtime=docker,
        logger=logger,
        retention=config.snapshots.retention,
        volume_patterns=config.state.volume_patterns,
    )
    transactions = TransactionManager(
        snapshots=snapshots,
        runtime=docker,
        logger=logger,
        on_complete=classifier.invalidate,
        project_label=config.services.project_label,
    )
    credentials = CredentialGuard(
        env=env,
        backup_dir=config.credentials.backup_dir,
        logger=logger,
        critical_keys=frozenset(config.credentials.critical_keys),
        retention=config.credentials.retention,
    )
    engine = InstallationEngine(
        config=config,
        env=env,
        runtime=docker,
        compose=compose,
        registry=registry,
        classifier=classifier,
        reconciler=reconciler,
        orchestrator=orchestrator,
        transactions=transactions,
        credentials=credentials,
        health=health,
        logger=logger,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        env=env,
        docker=docker,
        compose=compose,
        registry=registry,
        health=health,
        classifier=classifier,
        reconciler=reconciler,
        orchestrator=orchestrator,
        snapshots=snapshots,
        transactions=transactions,
        credentials=credentials,
        engine=engine,
    )
    transactions.post_check = lambda: post_operation_warnings(create_probe_context(runtime))
    return runtime


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = _build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the milouctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"milouctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
    context: dict[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code that reports *exc*."""
    if isinstance(exc, GuardedOperationError):
        if not exc.operation_started:
            return ExitCode.ENVIRONMENT
        if isinstance(exc.cause, UnrecoverableCredentialError) or not exc.rollback_succeeded:
            return ExitCode.UNRECOVERABLE
        return ExitCode.ROLLED_BACK
    if isinstance(exc, UnrecoverableCredentialError):
        return ExitCode.UNRECOVERABLE
    if isinstance(exc, (UnsafeOperationError, CredentialLossError, ValueError)):
        return ExitCode.VALIDATION
    if isinstance(exc, (DependencyError, DockerError, RegistryError, ServiceHealthError)):
        return ExitCode.PROVIDER
    return ExitCode.ENVIRONMENT


_HANDLED_ERRORS = (
    GuardedOperationError,
    UnsafeOperationError,
    CredentialLossError,
    DependencyError,
    DockerError,
    RegistryError,
    EnvFileError,
    SnapshotError,
    ServiceHealthError,
    ValueError,
)


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    context: dict[str, object] | None = None
    if isinstance(exc, GuardedOperationError):
        context = exc.to_dict()
        for step in exc.steps:
            marker = "[green]ok[/green]" if step.ok else f"[red]failed[/red] {step.error}"
            console.print(f"  {step.description}: {marker}")
    if isinstance(exc, CredentialLossError):
        console.print(f"  credential backup: {exc.backup_path}")
    _command_error(op, str(exc), rc=int(exit_code_for(exc)), context=context)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _render_plan(plan: UpdatePlan) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("Action")
    table.add_column("Current")
    table.add_column("Target")
    table.add_column("Reason")
    for action in plan.actions:
        table.add_row(
            action.service,
            action.kind.value,
            action.current or "-",
            action.target or "-",
            action.reason,
        )
    for entry in plan.skipped:
        table.add_row(entry.service, "[yellow]skipped[/yellow]", "-", "-", entry.reason)
    if not plan.actions and not plan.skipped:
        table.add_row("(none)", "", "", "", "")
    console.print(table)


def _render_doctor_report(report: DoctorReport) -> None:
    summary = report.summary
    totals = summary.totals
    console.print(
        f"Doctor summary: {_PROBE_STATUS_STYLE[summary.status]} "
        f"(impact={summary.impact.name.lower()}, exit={summary.exit_code})"
    )
    console.print(
        f"Totals: green={totals.get(ProbeStatus.GREEN, 0)} "
        f"warn={totals.get(ProbeStatus.YELLOW, 0)} "
        f"red={totals.get(ProbeStatus.RED, 0)}"
    )
    if not report.results:
        console.print("No probes were executed.")
        return
    console.print()
    for result in report.results:
        console.print(
            f"{_PROBE_STATUS_STYLE[result.status]} [{result.category}] "
            f"{result.id}: {result.message}"
        )
        if result.remediation:
            console.print(f"  remediation: {result.remediation}")
        if result.warnings:
            console.print(f"  notes: {', '.join(result.warnings)}")


def _parse_categories(raw: str | None) -> set[str]:
    if raw is None:
        return set()
    return {part.strip().lower() for part in raw.split(",") if part.strip()}


# ---------------------------------------------------------------------------
# Top-level commands
# ---------------------------------------------------------------------------


@app.command()
def state(
    ctx: typer.Context,
    refresh: bool = typer.Option(False, "--refresh", help="Ignore the cached classification."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Classify the installation and suggest next steps."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state", args={"refresh": refresh, "json": json_output}, target={"kind": "installation"}
    ) as op:
        observed = runtime.classifier.observe(force_refresh=refresh)
        actions = recommended_actions(observed.state)
        payload = {
            "state": observed.state.value,
            "description": describe_state(observed.state),
            "signals": observed.signals.to_dict() if observed.signals else None,
            "recommended": actions,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[bold]{observed.state.value}[/bold]: {payload['description']}")
            if observed.signals is not None:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Signal", style="bold")
                table.add_column("Value")
                for key, value in observed.signals.to_dict().items():
                    table.add_row(key, str(value))
                console.print(table)
            for action in actions:
                console.print(f"  next: {action}")
        op.success("Reported installation state.", changed=0, context=payload)


@app.command()
def plan(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Version (1.2.3, v1.2.3) or latest/stable."),
    force: bool = FORCE_OPTION,
    services: list[str] | None = SERVICE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show what an update to TARGET would do without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"force": force, "services": services, "json": json_output},
        target={"kind": "version", "target": target},
    ) as op:
        try:
            update_plan = runtime.engine.plan(target, services=services, force=force)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=update_plan.to_dict())
        else:
            _render_plan(update_plan)
        op.success(
            "Planned update.",
            changed=0,
            context={"pending": [action.service for action in update_plan.pending]},
        )


@app.command()
def update(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Version (1.2.3, v1.2.3) or latest/stable."),
    force: bool = FORCE_OPTION,
    services: list[str] | None = SERVICE_OPTION,
) -> None:
    """Update services to TARGET under snapshot protection."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"force": force, "services": services},
        target={"kind": "version", "target": target},
    ) as op:
        try:
            outcome = runtime.engine.update(target, services=services, force=force)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        _render_plan(outcome.plan)
        if not outcome.applied:
            console.print("[green]Nothing to update.[/green]")
            op.success("Nothing to update.", changed=0, context=outcome.to_dict())
            return
        op.add_step("snapshot", detail=outcome.snapshot_id)
        for service in outcome.started_dependencies:
            op.add_step("dependency.start", detail=service)
        changed = len(outcome.plan.pending)
        if outcome.warnings:
            for warning in outcome.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")
            op.warning(
                "Update completed with warnings.",
                warnings=list(outcome.warnings),
                changed=changed,
                context=outcome.to_dict(),
            )
            return
        console.print(f"[green]Update to {outcome.plan.target} complete.[/green]")
        op.success("Update complete.", changed=changed, context=outcome.to_dict())


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the installation and wait for critical services to turn healthy."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target={"kind": "installation"}) as op:
        try:
            result = runtime.engine.start()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(f"[green]Started:[/green] {result.value.summary()}")
        if result.warnings:
            op.warning("Started with warnings.", warnings=list(result.warnings), changed=1)
            return
        op.success("Installation started.", changed=1, context=result.value.to_dict())


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    only: str | None = typer.Option(
        None,
        "--only",
        metavar="CATEGORY[,CATEGORY...]",
        help=f"Probe categories to include ({', '.join(PROBE_CATEGORY_VALUES)}).",
    ),
) -> None:
    """Run environment, configuration and service health checks."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor", args={"json": json_output, "only": only}, target={"kind": "system"}
    ) as op:
        categories = _parse_categories(only)
        invalid = categories - _PROBE_CATEGORY_SET
        if invalid:
            _command_error(op, f"Unknown probe categories: {', '.join(sorted(invalid))}")

        context = create_probe_context(runtime)
        probes = [
            probe
            for probe in collect_probes(context)
            if not categories or probe.category in categories
        ]
        report = DoctorEngine(context).run(probes, metadata={"only": sorted(categories)})
        payload = serialize_report(report)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_doctor_report(report)

        summary = report.summary
        warning_ids = [r.id for r in report.results if r.status is ProbeStatus.YELLOW]
        error_ids = [r.id for r in report.results if r.status is ProbeStatus.RED]
        if summary.exit_code == 0:
            if summary.status is ProbeStatus.YELLOW:
                op.warning(
                    "Doctor completed with warnings.", warnings=warning_ids, context=payload
                )
            else:
                op.success(_DOCTOR_IMPACT_MESSAGES[DoctorImpact.OK], context=payload)
            return
        message = _DOCTOR_IMPACT_MESSAGES[summary.impact]
        if not json_output:
            console.print(f"[red]{message}[/red]")
        op.error(
            message,
            rc=summary.exit_code,
            errors=error_ids or None,
            warnings=warning_ids or None,
            context=payload,
        )
        raise typer.Exit(code=summary.exit_code)


# ---------------------------------------------------------------------------
# Sub-applications
# ---------------------------------------------------------------------------

deps_app = typer.Typer(help="Manage dependency services (database, cache, queue).")
snapshot_app = typer.Typer(help="Inspect and restore pre-operation snapshots.")
credentials_app = typer.Typer(help="Inspect credential backups and continuity.")
config_app = typer.Typer(help="Inspect and regenerate configuration.")

app.add_typer(deps_app, name="deps")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(credentials_app, name="credentials")
app.add_typer(config_app, name="config")


@deps_app.command("ensure")
def deps_ensure(
    ctx: typer.Context,
    services: list[str] | None = SERVICE_OPTION,
) -> None:
    """Start any dependency service that is not running."""
    runtime = _get_runtime(ctx)
    deps = list(services or runtime.config.services.dependencies)
    with runtime.logger.operation(
        "deps ensure", args={"services": deps}, target={"kind": "dependencies"}
    ) as op:
        try:
            started = runtime.orchestrator.ensure_running(deps)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        for service in started:
            op.add_step("dependency.start", detail=service)
        if started:
            console.print(f"[green]Started:[/green] {', '.join(started)}")
        else:
            console.print("All dependencies already running.")
        op.success("Dependencies running.", changed=len(started))


@snapshot_app.command("list")
def snapshot_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List snapshots, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot list", args={"json": json_output}, target={"kind": "snapshots"}
    ) as op:
        snapshots = runtime.snapshots.list_snapshots()
        if json_output:
            console.print_json(data={"snapshots": [item.to_dict() for item in snapshots]})
            op.success("Reported snapshots as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Operation")
        table.add_column("Created")
        table.add_column("Files")
        if not snapshots:
            table.add_row("(none)", "", "", "")
        for item in snapshots:
            files = [
                name
                for name, present in (("env", item.has_env), ("compose", item.has_compose))
                if present
            ]
            table.add_row(item.id, item.operation, item.created_at, ", ".join(files) or "-")
        console.print(table)
        op.success("Reported snapshots.", changed=0)


@snapshot_app.command("show")
def snapshot_show(ctx: typer.Context, snapshot_id: str = typer.Argument(...)) -> None:
    """Show the metadata of one snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot show", target={"kind": "snapshot", "id": snapshot_id}
    ) as op:
        try:
            snapshot = runtime.snapshots.get(snapshot_id)
        except SnapshotError as exc:
            _command_error(op, str(exc))
        console.print_json(data=snapshot.to_dict())
        op.success("Reported snapshot.", changed=0)


@snapshot_app.command("restore")
def snapshot_restore(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(...),
    yes: bool = YES_OPTION,
) -> None:
    """Restore the env and compose files captured in a snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot restore", args={"yes": yes}, target={"kind": "snapshot", "id": snapshot_id}
    ) as op:
        try:
            snapshot = runtime.snapshots.get(snapshot_id)
        except SnapshotError as exc:
            _command_error(op, str(exc))
        if not yes and not typer.confirm(
            f"Overwrite {runtime.config.env_file} and {runtime.config.compose_file} "
            f"with snapshot {snapshot.id}?"
        ):
            op.warning("Restore cancelled.", changed=0)
            raise typer.Exit(code=int(ExitCode.OK))
        try:
            result = runtime.transactions.run_guarded(
                f"restore {snapshot.id}", lambda: runtime.snapshots.restore_files(snapshot)
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        console.print(
            f"[green]Restored from {snapshot.id}[/green] "
            f"(previous files saved as {result.snapshot.id})."
        )
        op.success(
            "Snapshot restored.",
            changed=len(result.value),
            backups=[str(result.snapshot.path)],
            context={"files": result.value},
        )


@snapshot_app.command("prune")
def snapshot_prune(
    ctx: typer.Context,
    keep: int | None = typer.Option(None, "--keep", min=0, help="Snapshots to keep."),
) -> None:
    """Delete old snapshots beyond the retention limit."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot prune", args={"keep": keep}, target={"kind": "snapshots"}
    ) as op:
        removed = runtime.snapshots.prune(keep)
        console.print(f"Removed {len(removed)} snapshot(s).")
        op.success("Pruned snapshots.", changed=len(removed), context={"removed": removed})


@credentials_app.command("list")
def credentials_list(ctx: typer.Context) -> None:
    """List credential backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("credentials list", target={"kind": "credentials"}) as op:
        backups = runtime.credentials.list_backups()
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Backup", style="bold")
        if not backups:
            table.add_row("(none)")
        for path in backups:
            table.add_row(str(path))
        console.print(table)
        op.success("Reported credential backups.", changed=0)


@credentials_app.command("check")
def credentials_check(ctx: typer.Context) -> None:
    """Compare current critical credentials with the newest backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("credentials check", target={"kind": "credentials"}) as op:
        try:
            missing = runtime.credentials.verify_against_latest()
        except EnvFileError as exc:
            _fail(op, exc)
        if missing:
            _command_error(
                op,
                f"Critical credentials missing compared to the latest backup: "
                f"{', '.join(missing)}",
                errors=missing,
            )
        console.print("[green]Critical credentials consistent with the latest backup.[/green]")
        op.success("Credentials consistent.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation(
        "config show", args={"json": json_output}, target={"kind": "config"}
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("regenerate")
def config_regenerate(
    ctx: typer.Context,
    rotate: list[str] | None = typer.Option(
        None, "--rotate", help="Generate a new value for this key (repeatable)."
    ),
) -> None:
    """Rewrite generated credentials, keeping every existing secret."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config regenerate", args={"rotate": rotate}, target={"kind": "config"}
    ) as op:
        try:
            result = runtime.engine.regenerate_config(rotate=rotate or ())
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        report = result.value
        backups = [str(result.snapshot.path)]
        if report.backup_path is not None:
            backups.append(str(report.backup_path))
            console.print(f"[green]Preserved:[/green] {', '.join(report.preserved) or '-'}")
        else:
            console.print("[green]Generated credentials for a fresh install.[/green]")
        if result.warnings:
            op.warning(
                "Configuration regenerated with warnings.",
                warnings=list(result.warnings),
                changed=1,
                backups=backups,
            )
            return
        op.success("Configuration regenerated.", changed=1, backups=backups)


@config_app.command("pin-tags")
def config_pin_tags(ctx: typer.Context) -> None:
    """Replace latest/stable image tags with concrete versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config pin-tags", target={"kind": "config"}) as op:
        try:
            result = runtime.engine.pin_tags()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        updates = result.value
        if not updates:
            console.print("No symbolic tags to pin.")
        for key, value in updates.items():
            console.print(f"{key} -> {value}")
        op.success(
            "Pinned image tags.",
            changed=len(updates),
            backups=[str(result.snapshot.path)],
            context={"updates": updates},
        )


__all__ = ["RuntimeContext", "app", "exit_code_for"]
