"""Per-service version reconciliation.

The reconciler turns a target version specifier and the observed service set
into an :class:`UpdatePlan`. Resolution happens independently per service:
a symbolic target may land on different concrete versions for different
services, and a service whose version is missing from the registry (or whose
lookup fails) is reported in ``skipped`` while the rest of the plan proceeds.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from .envfile import EnvFile
from .logging import StructuredLogger
from .providers.base import VersionSource
from .providers.docker import ContainerInfo
from .providers.registry import RegistryError

SYMBOLIC_VERSIONS = frozenset({"latest", "stable"})


# ---------------------------------------------------------------------------
# Version helpers
# ---------------------------------------------------------------------------


def normalize_version(value: str) -> str:
    """Return *value* trimmed and without a leading ``v``."""
    text = value.strip()
    if text[:1] in {"v", "V"} and text[1:2].isdigit():
        return text[1:]
    return text


def is_symbolic(value: str | None) -> bool:
    """Return ``True`` when *value* is a symbolic specifier such as ``latest``."""
    return value is not None and value.strip().lower() in SYMBOLIC_VERSIONS


def version_key(value: str) -> tuple[int, int, int]:
    """Return the ``(major, minor, patch)`` tuple used for comparisons.

    Missing components count as 0 and anything after the leading digits of a
    component (``3-beta``, ``rc1``) is dropped.
    """
    parts = normalize_version(value).split(".")
    numbers: list[int] = []
    for part in parts[:3]:
        match = re.match(r"\d+", part)
        numbers.append(int(match.group(0)) if match else 0)
    while len(numbers) < 3:
        numbers.append(0)
    return numbers[0], numbers[1], numbers[2]


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 as *left* is older than, equal to or newer than *right*."""
    left_key = version_key(left)
    right_key = version_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class ServiceStatus(str, Enum):
    """Runtime status of a managed service."""

    RUNNING = "running"
    STOPPED = "stopped"
    RESTARTING = "restarting"
    MISSING = "missing"


class ActionKind(str, Enum):
    """What the reconciler decided to do with a service."""

    INSTALL = "install"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    START = "start"
    FORCE_REINSTALL = "force_reinstall"
    NOOP = "noop"


@dataclass(slots=True, frozen=True)
class ServiceDescriptor:
    """One managed service as currently observed."""

    name: str
    dependencies: tuple[str, ...] = ()
    current_version: str | None = None
    status: ServiceStatus = ServiceStatus.MISSING

    @property
    def running(self) -> bool:
        """Return ``True`` when the service is running."""
        return self.status is ServiceStatus.RUNNING

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "dependencies": list(self.dependencies),
            "current_version": self.current_version,
            "status": self.status.value,
        }


@dataclass(slots=True, frozen=True)
class VersionResolution:
    """The concrete version chosen for one service in a run."""

    service: str
    requested: str
    resolved: str | None
    available: bool
    source: str
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "service": self.service,
            "requested": self.requested,
            "resolved": self.resolved,
            "available": self.available,
            "source": self.source,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True, frozen=True)
class UpdateAction:
    """A planned change for one service."""

    service: str
    kind: ActionKind
    reason: str
    current: str | None = None
    target: str | None = None

    @property
    def changes_version(self) -> bool:
        """Return ``True`` when the action deploys a (re)pulled image."""
        return self.kind in {
            ActionKind.INSTALL,
            ActionKind.UPGRADE,
            ActionKind.DOWNGRADE,
            ActionKind.FORCE_REINSTALL,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "kind": self.kind.value,
            "reason": self.reason,
            "current": self.current,
            "target": self.target,
        }


@dataclass(slots=True, frozen=True)
class SkippedService:
    """A service left out of the plan, and why."""

    service: str
    reason: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"service": self.service, "reason": self.reason}


@dataclass(slots=True, frozen=True)
class UpdatePlan:
    """Result of reconciling a target specifier against the service set."""

    target: str
    actions: tuple[UpdateAction, ...]
    skipped: tuple[SkippedService, ...]
    resolutions: Mapping[str, VersionResolution] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def pending(self) -> tuple[UpdateAction, ...]:
        """Return the actions that change something."""
        return tuple(action for action in self.actions if action.kind is not ActionKind.NOOP)

    @property
    def is_noop(self) -> bool:
        """Return ``True`` when nothing needs to change."""
        return not self.pending

    def action_for(self, service: str) -> UpdateAction | None:
        """Return the action planned for *service*, if any."""
        for action in self.actions:
            if action.service == service:
                return action
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "target": self.target,
            "actions": [action.to_dict() for action in self.actions],
            "skipped": [entry.to_dict() for entry in self.skipped],
            "resolutions": {
                name: resolution.to_dict() for name, resolution in self.resolutions.items()
            },
        }


# ---------------------------------------------------------------------------
# Decision rules
# ---------------------------------------------------------------------------


def decide_action(
    service: ServiceDescriptor,
    target: str,
    *,
    force: bool = False,
) -> UpdateAction:
    """Return the action that moves *service* to *target* (first rule wins)."""
    current = service.current_version
    if not current or is_symbolic(current):
        reason = "not installed" if not current else f"running unpinned '{current}' tag"
        return UpdateAction(service.name, ActionKind.INSTALL, reason, current, target)

    current_norm = normalize_version(current)
    target_norm = normalize_version(target)
    ordering = compare_versions(current_norm, target_norm)
    if ordering < 0:
        return UpdateAction(
            service.name, ActionKind.UPGRADE, f"{current} -> {target}", current, target
        )
    if ordering > 0:
        return UpdateAction(
            service.name, ActionKind.DOWNGRADE, f"{current} -> {target}", current, target
        )

    # Equal or equivalent spellings (2.0 and 2.0.0) share the start/force rules.
    if not service.running:
        return UpdateAction(
            service.name,
            ActionKind.START,
            f"at {target} but {service.status.value}",
            current,
            target,
        )
    if force:
        return UpdateAction(
            service.name, ActionKind.FORCE_REINSTALL, "reinstall forced", current, target
        )
    reason = "up to date" if current_norm == target_norm else f"{current} is equivalent to {target}"
    return UpdateAction(service.name, ActionKind.NOOP, reason, current, target)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class VersionReconciler:
    """Resolve target versions and plan per-service actions."""

    registry: VersionSource
    logger: StructuredLogger

    def resolve(
        self,
        target_spec: str,
        services: Iterable[str],
    ) -> Mapping[str, VersionResolution]:
        """Return a read-only mapping of per-service resolutions for *target_spec*."""
        requested = target_spec.strip()
        if not requested:
            raise ValueError("Target version must be a non-empty string.")
        resolutions: dict[str, VersionResolution] = {}
        for name in services:
            if name in resolutions:
                continue
            resolutions[name] = self._resolve_one(name, requested)
        return MappingProxyType(resolutions)

    def plan(
        self,
        target_spec: str,
        services: Sequence[ServiceDescriptor],
        *,
        force: bool = False,
    ) -> UpdatePlan:
        """Return the actions needed to move *services* to *target_spec*."""
        resolutions = self.resolve(target_spec, [service.name for service in services])
        actions: list[UpdateAction] = []
        skipped: list[SkippedService] = []
        for service in services:
            resolution = resolutions[service.name]
            if not resolution.available or resolution.resolved is None:
                skipped.append(
                    SkippedService(service.name, resolution.error or "version unavailable")
                )
                continue
            actions.append(decide_action(service, resolution.resolved, force=force))
        plan = UpdatePlan(
            target=target_spec.strip(),
            actions=tuple(actions),
            skipped=tuple(skipped),
            resolutions=resolutions,
        )
        self.logger.info(
            "Planned version reconciliation.",
            target=plan.target,
            pending=[action.service for action in plan.pending],
            skipped=[entry.service for entry in plan.skipped],
        )
        return plan

    # ------------------------------------------------------------------
    def _resolve_one(self, service: str, requested: str) -> VersionResolution:
        if is_symbolic(requested):
            try:
                latest = self.registry.latest_version(service)
            except RegistryError as exc:
                self.logger.warning(
                    "Registry lookup failed; skipping service.", service=service, error=str(exc)
                )
                return VersionResolution(
                    service, requested, None, False, "registry", error=f"lookup failed: {exc}"
                )
            return VersionResolution(service, requested, normalize_version(latest), True, "latest")

        wanted = normalize_version(requested)
        try:
            published = self.registry.list_versions(service)
        except RegistryError as exc:
            self.logger.warning(
                "Registry lookup failed; skipping service.", service=service, error=str(exc)
            )
            return VersionResolution(
                service, requested, None, False, "registry", error=f"lookup failed: {exc}"
            )
        if wanted in {normalize_version(version) for version in published}:
            return VersionResolution(service, requested, wanted, True, "explicit")
        self.logger.warning(
            "Requested version is not published; skipping service.",
            service=service,
            version=wanted,
        )
        return VersionResolution(
            service,
            requested,
            None,
            False,
            "explicit",
            error=f"version {wanted} is not published for {service}",
        )


# ---------------------------------------------------------------------------
# Discovery and tag pinning
# ---------------------------------------------------------------------------


def status_from_text(status: str) -> ServiceStatus:
    """Map a ``docker ps`` status string to a :class:`ServiceStatus`."""
    lowered = status.strip().lower()
    if "restart" in lowered:
        return ServiceStatus.RESTARTING
    if lowered.startswith("up") or lowered == "running":
        return ServiceStatus.RUNNING
    return ServiceStatus.STOPPED


def discover_services(
    containers: Sequence[ContainerInfo],
    managed: Sequence[str],
    *,
    container_prefix: str,
    graph: Mapping[str, Sequence[str]] | None = None,
) -> list[ServiceDescriptor]:
    """Build descriptors for *managed* services from the container listing."""
    by_name = {container.name: container for container in containers}
    descriptors: list[ServiceDescriptor] = []
    for name in managed:
        dependencies = tuple((graph or {}).get(name, ()))
        container = by_name.get(f"{container_prefix}{name}")
        if container is None:
            descriptors.append(ServiceDescriptor(name=name, dependencies=dependencies))
            continue
        tag = container.image_tag
        descriptors.append(
            ServiceDescriptor(
                name=name,
                dependencies=dependencies,
                current_version=normalize_version(tag) if tag else None,
                status=status_from_text(container.status),
            )
        )
    return descriptors


def pin_symbolic_tags(
    env: EnvFile,
    registry: VersionSource,
    services: Sequence[str],
    *,
    tag_key: str = "MILOU_{service}_TAG",
    logger: StructuredLogger | None = None,
) -> dict[str, str]:
    """Replace ``latest``/``stable`` image tags in *env* with concrete versions.

    Returns the keys that were rewritten. Services whose lookup fails keep
    their symbolic tag.
    """
    current = env.read()
    updates: dict[str, str] = {}
    for service in services:
        key = tag_key.format(service=service.upper().replace("-", "_"))
        value = current.get(key)
        if not is_symbolic(value):
            continue
        try:
            updates[key] = normalize_version(registry.latest_version(service))
        except RegistryError as exc:
            if logger is not None:
                logger.warning(
                    "Could not pin symbolic tag.", service=service, key=key, error=str(exc)
                )
    if updates:
        env.update(updates)
    return updates


__all__ = [
    "ActionKind",
    "SYMBOLIC_VERSIONS",
    "ServiceDescriptor",
    "ServiceStatus",
    "SkippedService",
    "UpdateAction",
    "UpdatePlan",
    "VersionReconciler",
    "VersionResolution",
    "compare_versions",
    "decide_action",
    "discover_services",
    "is_symbolic",
    "normalize_version",
    "pin_symbolic_tags",
    "status_from_text",
    "version_key",
]
