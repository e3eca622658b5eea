"""Service health sampling with bounded polling."""
from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .logging import StructuredLogger
from .providers.base import ComposeStatus
from .providers.docker import DockerError


@dataclass(slots=True, frozen=True)
class HealthReport:
    """Outcome of a health sample across a set of services."""

    healthy: tuple[str, ...]
    unhealthy: tuple[str, ...]
    details: dict[str, str] = field(default_factory=dict)
    available: bool = True

    @property
    def total(self) -> int:
        """Return the number of services sampled."""
        return len(self.healthy) + len(self.unhealthy)

    @property
    def all_healthy(self) -> bool:
        """Return ``True`` when every sampled service is healthy."""
        return self.available and not self.unhealthy

    def summary(self) -> str:
        """Return an ``N of M healthy`` summary line."""
        return f"{len(self.healthy)} of {self.total} services healthy"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "healthy": list(self.healthy),
            "unhealthy": list(self.unhealthy),
            "details": dict(self.details),
            "available": self.available,
        }


@dataclass(slots=True)
class HealthMonitor:
    """Sample compose service health, optionally polling until healthy."""

    compose: ComposeStatus
    logger: StructuredLogger
    clock: Callable[[], float] = field(default=time.monotonic)
    sleep: Callable[[float], None] = field(default=time.sleep)

    def check(self, services: Sequence[str]) -> HealthReport:
        """Take a single health sample for *services*."""
        try:
            states = {state.service: state for state in self.compose.service_states()}
        except DockerError as exc:
            self.logger.warning("Compose status unavailable.", error=str(exc))
            return HealthReport(
                healthy=(),
                unhealthy=tuple(services),
                details={name: "status unavailable" for name in services},
                available=False,
            )
        healthy: list[str] = []
        unhealthy: list[str] = []
        details: dict[str, str] = {}
        for name in services:
            state = states.get(name)
            if state is None:
                unhealthy.append(name)
                details[name] = "missing"
            elif state.healthy:
                healthy.append(name)
                details[name] = state.health or state.state
            else:
                unhealthy.append(name)
                details[name] = state.health or state.state or "unknown"
        return HealthReport(healthy=tuple(healthy), unhealthy=tuple(unhealthy), details=details)

    def wait_until_healthy(
        self,
        services: Sequence[str],
        *,
        timeout: float,
        interval: float,
    ) -> HealthReport:
        """Poll until all *services* are healthy or *timeout* seconds elapse.

        The last sample is returned either way; callers decide whether a
        partial report is acceptable.
        """
        deadline = self.clock() + max(timeout, 0.0)
        report = self.check(services)
        while not report.all_healthy and self.clock() < deadline:
            self.sleep(interval)
            report = self.check(services)
        if not report.all_healthy:
            self.logger.warning(
                "Health wait finished with unhealthy services.",
                summary=report.summary(),
                unhealthy=list(report.unhealthy),
            )
        return report


__all__ = ["HealthMonitor", "HealthReport"]
