"""Installation state classification.

The classifier reduces a handful of point-in-time observations (config file,
containers, volumes, service health) to one :class:`InstallationState`. The
decision itself lives in :func:`classify_signals`, a pure function over an
:class:`InstallationSignals` value, so it can be exercised without Docker.
Signal collection degrades gracefully: a runtime that cannot be reached
contributes "absent" signals instead of an error.
"""
from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from ..envfile import EnvFile, EnvFileError
from ..health import HealthMonitor
from ..logging import StructuredLogger
from ..providers.base import ContainerRuntime
from ..providers.docker import DockerError, VolumeInfo


class InstallationState(str, Enum):
    """Fixed set of states an installation can be classified into."""

    FRESH = "fresh"
    RUNNING = "running"
    INSTALLED_STOPPED = "installed_stopped"
    CONFIGURED_ONLY = "configured_only"
    CONTAINERS_ONLY = "containers_only"
    BROKEN = "broken"
    PARTIAL_FAILED = "partial_failed"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class InstallationSignals:
    """Observed inputs to the decision table.

    ``config_complete`` and ``services_healthy`` are only gathered when the
    decision table needs them; ``None`` means "not observed" and counts as
    ``False``.
    """

    has_config: bool
    containers_total: int
    containers_running: int
    volumes_with_data: bool
    config_complete: bool | None = None
    services_healthy: bool | None = None

    @property
    def has_containers(self) -> bool:
        """Return ``True`` when at least one managed container exists."""
        return self.containers_total > 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "has_config": self.has_config,
            "containers_total": self.containers_total,
            "containers_running": self.containers_running,
            "volumes_with_data": self.volumes_with_data,
            "config_complete": self.config_complete,
            "services_healthy": self.services_healthy,
        }


def classify_signals(signals: InstallationSignals) -> InstallationState:
    """Map *signals* to an installation state (first matching rule wins)."""
    if signals.has_config and signals.has_containers:
        if signals.containers_running > 0:
            if signals.services_healthy:
                return InstallationState.RUNNING
            return InstallationState.BROKEN
        return InstallationState.INSTALLED_STOPPED
    if signals.has_config:
        if signals.config_complete:
            return InstallationState.CONFIGURED_ONLY
        return InstallationState.PARTIAL_FAILED
    if signals.has_containers:
        return InstallationState.BROKEN
    if signals.volumes_with_data:
        return InstallationState.BROKEN
    return InstallationState.FRESH


def volume_has_data(volume: VolumeInfo, *, now: datetime, threshold: timedelta) -> bool:
    """Return ``True`` when *volume* is presumed to hold data.

    Age stands in for content inspection: volumes older than *threshold* are
    assumed to contain data, and so are volumes whose age cannot be read.
    """
    if volume.created_at is None:
        return True
    return now - volume.created_at > threshold


def missing_required_keys(values: Mapping[str, str], required: Sequence[str]) -> list[str]:
    """Return the keys in *required* that are absent or empty in *values*."""
    return [key for key in required if not values.get(key, "").strip()]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CachedState:
    """A classification result and the clock reading it was taken at."""

    state: InstallationState
    timestamp: float
    signals: InstallationSignals | None = None


def is_fresh(cached: CachedState | None, now: float, ttl: float) -> bool:
    """Return ``True`` when *cached* is younger than *ttl* seconds at *now*."""
    if cached is None or ttl <= 0:
        return False
    return 0 <= now - cached.timestamp < ttl


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class StateClassifier:
    """Collect installation signals and classify them with a TTL cache."""

    env: EnvFile
    runtime: ContainerRuntime
    health: HealthMonitor
    logger: StructuredLogger
    critical_services: Sequence[str]
    required_keys: Sequence[str]
    volume_patterns: Sequence[str] = ("milou", "static")
    volume_data_age: timedelta = timedelta(days=1)
    cache_ttl: float = 30.0
    clock: Callable[[], float] = field(default=time.monotonic)
    wall_clock: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))
    _cache: CachedState | None = field(default=None, init=False, repr=False)

    def classify(self, force_refresh: bool = False) -> InstallationState:
        """Return the current installation state."""
        return self.observe(force_refresh=force_refresh).state

    def observe(self, force_refresh: bool = False) -> CachedState:
        """Return the cached observation, refreshing it when stale."""
        now = self.clock()
        cached = self._cache
        if cached is not None and not force_refresh and is_fresh(cached, now, self.cache_ttl):
            return cached
        try:
            signals = self.collect_signals()
        except EnvFileError as exc:
            self.logger.warning("Config file unreadable; state unknown.", error=str(exc))
            self._cache = None
            return CachedState(state=InstallationState.UNKNOWN, timestamp=now)
        state = classify_signals(signals)
        self.logger.debug("Classified installation.", state=state.value, **signals.to_dict())
        self._cache = CachedState(state=state, timestamp=now, signals=signals)
        return self._cache

    def invalidate(self) -> None:
        """Drop any cached classification."""
        self._cache = None

    def collect_signals(self) -> InstallationSignals:
        """Gather the signals needed by :func:`classify_signals`."""
        has_config = self.env.exists()
        total, running = self._container_counts()
        volumes_with_data = False
        if not has_config and total == 0:
            volumes_with_data = self._volumes_with_data()

        config_complete: bool | None = None
        services_healthy: bool | None = None
        if has_config and total == 0:
            missing = missing_required_keys(self.env.read(), self.required_keys)
            config_complete = not missing
            if missing:
                self.logger.info("Configuration incomplete.", missing=missing)
        elif has_config and running > 0:
            report = self.health.check(self.critical_services)
            services_healthy = report.all_healthy
            if not services_healthy:
                self.logger.info("Critical services unhealthy.", unhealthy=list(report.unhealthy))

        return InstallationSignals(
            has_config=has_config,
            containers_total=total,
            containers_running=running,
            volumes_with_data=volumes_with_data,
            config_complete=config_complete,
            services_healthy=services_healthy,
        )

    # ------------------------------------------------------------------
    def _container_counts(self) -> tuple[int, int]:
        try:
            containers = self.runtime.list_containers()
        except DockerError as exc:
            self.logger.warning("Container listing unavailable.", error=str(exc))
            return 0, 0
        running = sum(1 for container in containers if container.running)
        return len(containers), running

    def _volumes_with_data(self) -> bool:
        try:
            volumes = self.runtime.list_volumes(self.volume_patterns)
        except DockerError as exc:
            self.logger.warning("Volume listing unavailable.", error=str(exc))
            return False
        now = self.wall_clock()
        return any(
            volume_has_data(volume, now=now, threshold=self.volume_data_age)
            for volume in volumes
        )


# ---------------------------------------------------------------------------
# Presentation and policy helpers
# ---------------------------------------------------------------------------

_DESCRIPTIONS: Mapping[InstallationState, str] = {
    InstallationState.FRESH: "No existing installation detected.",
    InstallationState.RUNNING: "Installation is running and critical services are healthy.",
    InstallationState.INSTALLED_STOPPED: "Installation exists but all services are stopped.",
    InstallationState.CONFIGURED_ONLY: "Configuration exists but no containers were created.",
    InstallationState.CONTAINERS_ONLY: "Containers exist without a configuration file.",
    InstallationState.BROKEN: "Installation is inconsistent and needs repair.",
    InstallationState.PARTIAL_FAILED: "A previous setup stopped part-way through.",
    InstallationState.UNKNOWN: "Installation state could not be determined.",
}

_RECOMMENDATIONS: Mapping[InstallationState, tuple[str, ...]] = {
    InstallationState.FRESH: ("Run a fresh install.",),
    InstallationState.RUNNING: (
        "milouctl plan latest",
        "milouctl update latest",
        "milouctl doctor",
    ),
    InstallationState.INSTALLED_STOPPED: ("milouctl start",),
    InstallationState.CONFIGURED_ONLY: ("milouctl start",),
    InstallationState.CONTAINERS_ONLY: ("milouctl config regenerate",),
    InstallationState.BROKEN: (
        "milouctl doctor",
        "milouctl snapshot list",
        "milouctl snapshot restore <id>",
    ),
    InstallationState.PARTIAL_FAILED: (
        "milouctl config regenerate",
        "milouctl doctor",
    ),
    InstallationState.UNKNOWN: ("milouctl doctor",),
}

_SETUP_MODES: Mapping[InstallationState, str] = {
    InstallationState.FRESH: "install",
    InstallationState.RUNNING: "update_check",
    InstallationState.INSTALLED_STOPPED: "resume",
    InstallationState.CONFIGURED_ONLY: "resume",
    InstallationState.PARTIAL_FAILED: "install",
    InstallationState.CONTAINERS_ONLY: "reconfigure",
    InstallationState.BROKEN: "repair",
}


class UnsafeOperationError(RuntimeError):
    """Raised when an operation is refused for the current state."""

    def __init__(self, operation: str, state: InstallationState, reason: str) -> None:
        """Record the refused *operation* and the *state* it was refused in."""
        super().__init__(f"Refusing '{operation}' while installation is {state.value}: {reason}")
        self.operation = operation
        self.state = state
        self.reason = reason


def describe_state(state: InstallationState) -> str:
    """Return a human-readable description of *state*."""
    return _DESCRIPTIONS[state]


def recommended_actions(state: InstallationState) -> list[str]:
    """Return suggested next steps for *state*, most relevant first."""
    return list(_RECOMMENDATIONS[state])


def setup_mode(state: InstallationState, *, force: bool = False) -> str:
    """Return the setup strategy appropriate for *state*."""
    if state is InstallationState.RUNNING and force:
        return "reinstall"
    return _SETUP_MODES.get(state, "install")


def check_operation_safety(
    operation: str,
    state: InstallationState,
    *,
    preserve_data: bool = True,
) -> None:
    """Raise :class:`UnsafeOperationError` when *operation* is unsafe in *state*."""
    if operation == "setup" and state is InstallationState.RUNNING and not preserve_data:
        raise UnsafeOperationError(
            operation, state, "a running installation would lose its data"
        )
    if operation == "update" and state in {InstallationState.FRESH, InstallationState.BROKEN}:
        raise UnsafeOperationError(operation, state, "there is no healthy installation to update")
    if operation == "start" and state in {InstallationState.FRESH, InstallationState.BROKEN}:
        raise UnsafeOperationError(operation, state, "there is no complete installation to start")
    if operation == "backup" and state is InstallationState.FRESH:
        raise UnsafeOperationError(operation, state, "there is nothing to back up")


__all__ = [
    "CachedState",
    "InstallationSignals",
    "InstallationState",
    "StateClassifier",
    "UnsafeOperationError",
    "check_operation_safety",
    "classify_signals",
    "describe_state",
    "is_fresh",
    "missing_required_keys",
    "recommended_actions",
    "setup_mode",
    "volume_has_data",
]
