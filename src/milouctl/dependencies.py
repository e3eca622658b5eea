"""Make sure prerequisite services are up before dependents change."""
from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from .logging import StructuredLogger
from .providers.base import ComposeStatus
from .providers.docker import DockerError
from .versions import ServiceDescriptor, UpdateAction


class DependencyError(RuntimeError):
    """Raised when a required dependency cannot be started."""

    def __init__(self, service: str, cause: str) -> None:
        """Record the dependency that failed to start."""
        super().__init__(f"Dependency '{service}' failed to start: {cause}")
        self.service = service


def dependencies_for(
    actions: Iterable[UpdateAction],
    services: Sequence[ServiceDescriptor],
    *,
    always: Sequence[str] = (),
) -> list[str]:
    """Return the prerequisites for *actions*, in order and without duplicates.

    Services that are themselves being changed are not listed as
    prerequisites of each other.
    """
    changed = [action.service for action in actions]
    changed_set = set(changed)
    by_name = {service.name: service for service in services}
    ordered: list[str] = list(always)
    for name in changed:
        descriptor = by_name.get(name)
        if descriptor is not None:
            ordered.extend(descriptor.dependencies)
    return [name for name in dict.fromkeys(ordered) if name not in changed_set]


@dataclass(slots=True)
class DependencyOrchestrator:
    """Start missing dependencies and give them time to settle."""

    compose: ComposeStatus
    logger: StructuredLogger
    settle_delay: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep)

    def ensure_running(self, deps: Sequence[str]) -> list[str]:
        """Start every dependency in *deps* that is not running.

        Returns the services that were started. The first failure aborts.
        """
        running = self._running_services()
        started: list[str] = []
        for service in dict.fromkeys(deps):
            if service in running:
                self.logger.debug("Dependency already running.", service=service)
                continue
            self.logger.info("Starting dependency.", service=service)
            try:
                self.compose.start(service)
            except DockerError as exc:
                self.logger.error("Dependency failed to start.", service=service, error=str(exc))
                raise DependencyError(service, str(exc)) from exc
            started.append(service)
        if started and self.settle_delay > 0:
            self.logger.info(
                "Waiting for dependencies to settle.",
                services=started,
                seconds=self.settle_delay,
            )
            self.sleep(self.settle_delay)
        return started

    def _running_services(self) -> set[str]:
        try:
            states = self.compose.service_states()
        except DockerError as exc:
            self.logger.warning(
                "Compose status unavailable; starting all dependencies.", error=str(exc)
            )
            return set()
        return {state.service for state in states if state.running}


__all__ = ["DependencyError", "DependencyOrchestrator", "dependencies_for"]
