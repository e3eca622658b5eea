"""High-level installation operations built from the reconciliation components.

The control flow for a mutating operation is always the same: classify the
installation, refuse unsafe operations, work out what has to change, make
sure prerequisites are running, then apply the change inside a guarded
transaction so a failure restores the configuration files.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .config import AppConfig
from .credentials import CredentialGuard, CredentialReport, CredentialSet, generate_credentials
from .dependencies import DependencyOrchestrator, dependencies_for
from .envfile import EnvFile
from .health import HealthMonitor, HealthReport
from .logging import StructuredLogger
from .providers.base import ComposeStatus, ContainerRuntime, VersionSource
from .providers.docker import DockerError
from .recovery import GuardedResult, TransactionManager
from .state import InstallationState, StateClassifier, check_operation_safety
from .versions import (
    ActionKind,
    ServiceDescriptor,
    UpdatePlan,
    VersionReconciler,
    discover_services,
    pin_symbolic_tags,
)


class ServiceHealthError(RuntimeError):
    """Raised when services fail to become healthy where health is required."""

    def __init__(self, report: HealthReport) -> None:
        """Record the failing health *report*."""
        super().__init__(
            f"{report.summary()}; unhealthy: {', '.join(report.unhealthy) or 'none'}"
        )
        self.report = report


@dataclass(slots=True, frozen=True)
class UpdateOutcome:
    """What an update run did."""

    state: InstallationState
    plan: UpdatePlan
    started_dependencies: tuple[str, ...] = ()
    health: HealthReport | None = None
    snapshot_id: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def applied(self) -> bool:
        """Return ``True`` when the plan contained changes that were applied."""
        return self.snapshot_id is not None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "plan": self.plan.to_dict(),
            "started_dependencies": list(self.started_dependencies),
            "health": self.health.to_dict() if self.health else None,
            "snapshot_id": self.snapshot_id,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class InstallationEngine:
    """Coordinate classification, planning, dependencies and guarded changes."""

    config: AppConfig
    env: EnvFile
    runtime: ContainerRuntime
    compose: ComposeStatus
    registry: VersionSource
    classifier: StateClassifier
    reconciler: VersionReconciler
    orchestrator: DependencyOrchestrator
    transactions: TransactionManager
    credentials: CredentialGuard
    health: HealthMonitor
    logger: StructuredLogger

    # Inspection ------------------------------------------------------
    def services(self, names: Sequence[str] | None = None) -> list[ServiceDescriptor]:
        """Return descriptors for the managed services (or *names*)."""
        wanted = list(names) if names else list(self.config.services.managed)
        try:
            containers = self.runtime.list_containers()
        except DockerError as exc:
            self.logger.warning("Container listing unavailable.", error=str(exc))
            containers = []
        return discover_services(
            containers,
            wanted,
            container_prefix=self.config.services.container_prefix,
            graph=self.config.services.graph,
        )

    def plan(
        self,
        target: str,
        *,
        services: Sequence[str] | None = None,
        force: bool = False,
    ) -> UpdatePlan:
        """Return the update plan for *target* without changing anything."""
        return self.reconciler.plan(target, self.services(services), force=force)

    # Mutations -------------------------------------------------------
    def update(
        self,
        target: str,
        *,
        services: Sequence[str] | None = None,
        force: bool = False,
    ) -> UpdateOutcome:
        """Move the installation to *target*, rolling back on failure."""
        state = self.classifier.classify(force_refresh=True)
        check_operation_safety("update", state)

        descriptors = self.services(services)
        plan = self.reconciler.plan(target, descriptors, force=force)
        if plan.is_noop:
            self.logger.info("Nothing to update.", target=plan.target)
            return UpdateOutcome(state=state, plan=plan)

        deps = dependencies_for(
            plan.pending, descriptors, always=self.config.services.dependencies
        )
        started = self.orchestrator.ensure_running(deps)

        result: GuardedResult[HealthReport] = self.transactions.run_guarded(
            f"update {plan.target}", lambda: self._apply_plan(plan)
        )
        warnings = list(result.warnings)
        if not result.value.all_healthy:
            warnings.append(f"post-update health: {result.value.summary()}")
        return UpdateOutcome(
            state=state,
            plan=plan,
            started_dependencies=tuple(started),
            health=result.value,
            snapshot_id=result.snapshot.id,
            warnings=tuple(warnings),
        )

    def start(self) -> GuardedResult[HealthReport]:
        """Start a stopped or configured installation; all services must turn healthy."""
        state = self.classifier.classify(force_refresh=True)
        check_operation_safety("start", state)
        self.orchestrator.ensure_running(self.config.services.dependencies)
        return self.transactions.run_guarded("start", self._start_all)

    def regenerate_config(self, *, rotate: Sequence[str] = ()) -> GuardedResult[CredentialReport]:
        """Rewrite the standard credentials, preserving existing secrets."""

        def _regenerate() -> None:
            current = CredentialSet.from_env(self.env, self.credentials.critical_keys)
            self.env.update(generate_credentials(current, rotate=rotate))

        return self.transactions.run_guarded(
            "config regenerate",
            lambda: self.credentials.preserve_across_regeneration(_regenerate),
        )

    def pin_tags(self) -> GuardedResult[dict[str, str]]:
        """Replace symbolic image tags in the env file with concrete versions."""
        return self.transactions.run_guarded(
            "config pin-tags",
            lambda: pin_symbolic_tags(
                self.env,
                self.registry,
                self.config.services.managed,
                tag_key=self.config.services.tag_variable,
                logger=self.logger,
            ),
        )

    # ------------------------------------------------------------------
    def _apply_plan(self, plan: UpdatePlan) -> HealthReport:
        services_config = self.config.services
        previous_tags: dict[str, str | None] = {}
        to_start: list[str] = []
        to_recreate: list[str] = []

        for action in plan.pending:
            if action.kind is ActionKind.START:
                to_start.append(action.service)
                continue
            if not action.changes_version or action.target is None:
                continue
            key = services_config.tag_key(action.service)
            previous = self.env.get(key)
            previous_tags[key] = previous
            self.env.set(key, action.target)
            self.transactions.register_rollback(
                f"restore {key}={previous or '<unset>'}",
                lambda key=key, previous=previous: self._restore_tag(key, previous),
            )
            self.runtime.pull(self.config.registry.image_for(action.service, action.target))
            to_recreate.append(action.service)

        if to_recreate:
            self.transactions.register_rollback(
                f"recreate {', '.join(to_recreate)} at previous versions",
                lambda: self._recreate_previous(previous_tags, to_recreate),
            )
            self.compose.up(to_recreate, force_recreate=True, no_deps=True)
        for service in to_start:
            self.compose.start(service)

        report = self.health.wait_until_healthy(
            [action.service for action in plan.pending],
            timeout=self.config.docker.health_timeout,
            interval=self.config.docker.health_interval,
        )
        self.logger.info("Update health.", summary=report.summary())
        return report

    def _start_all(self) -> HealthReport:
        self.compose.up()
        report = self.health.wait_until_healthy(
            self.config.services.critical,
            timeout=self.config.docker.health_timeout,
            interval=self.config.docker.health_interval,
        )
        if not report.all_healthy:
            raise ServiceHealthError(report)
        return report

    def _restore_tag(self, key: str, previous: str | None) -> None:
        if previous is None:
            self.env.unset(key)
        else:
            self.env.set(key, previous)

    def _recreate_previous(self, previous_tags: dict[str, str | None], services: list[str]) -> None:
        for key, previous in previous_tags.items():
            self._restore_tag(key, previous)
        self.compose.up(services, force_recreate=True, no_deps=True)


__all__ = ["InstallationEngine", "ServiceHealthError", "UpdateOutcome"]
