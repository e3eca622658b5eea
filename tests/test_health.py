"""Tests for service health sampling."""
from __future__ import annotations

from conftest import FakeClock, FakeCompose, service_state

from milouctl.health import HealthMonitor, HealthReport
from milouctl.logging import StructuredLogger
from milouctl.providers.compose import ServiceState


def test_check_reports_each_service(logger: StructuredLogger, clock: FakeClock) -> None:
    """Healthy, unhealthy and missing services are all accounted for."""
    compose = FakeCompose(
        [
            service_state("database"),
            service_state("backend", health="starting"),
            service_state("nginx", health=""),
        ]
    )
    monitor = HealthMonitor(compose=compose, logger=logger, clock=clock, sleep=clock.sleep)

    report = monitor.check(["database", "backend", "nginx", "engine"])

    assert report.healthy == ("database", "nginx")
    assert report.unhealthy == ("backend", "engine")
    assert report.details["backend"] == "starting"
    assert report.details["engine"] == "missing"
    assert report.summary() == "2 of 4 services healthy"
    assert report.all_healthy is False


def test_unavailable_status_marks_everything_unhealthy(
    logger: StructuredLogger, clock: FakeClock
) -> None:
    """Compose failures produce an unavailable report instead of raising."""
    compose = FakeCompose()
    compose.unavailable = True
    monitor = HealthMonitor(compose=compose, logger=logger, clock=clock, sleep=clock.sleep)

    report = monitor.check(["database"])

    assert report.available is False
    assert report.unhealthy == ("database",)
    assert report.to_dict()["available"] is False


def test_empty_report_is_healthy() -> None:
    """An empty sample has nothing unhealthy."""
    report = HealthReport(healthy=(), unhealthy=())

    assert report.all_healthy is True
    assert report.summary() == "0 of 0 services healthy"


def test_wait_until_healthy_polls_until_ready(
    logger: StructuredLogger, clock: FakeClock
) -> None:
    """Polling stops as soon as every service is healthy."""
    compose = FakeCompose([service_state("backend", health="starting")])
    samples: list[int] = []

    class WarmingCompose(FakeCompose):
        def service_states(self) -> list[ServiceState]:
            samples.append(1)
            if len(samples) >= 3:
                self.states["backend"] = service_state("backend")
            return super().service_states()

    warming = WarmingCompose(list(compose.states.values()))
    monitor = HealthMonitor(compose=warming, logger=logger, clock=clock, sleep=clock.sleep)

    report = monitor.wait_until_healthy(["backend"], timeout=60, interval=5)

    assert report.all_healthy is True
    assert clock.sleeps == [5, 5]


def test_wait_until_healthy_returns_last_sample_on_timeout(
    logger: StructuredLogger, clock: FakeClock
) -> None:
    """The final partial report is returned once the deadline passes."""
    compose = FakeCompose([service_state("backend", health="unhealthy")])
    monitor = HealthMonitor(compose=compose, logger=logger, clock=clock, sleep=clock.sleep)

    report = monitor.wait_until_healthy(["backend"], timeout=12, interval=5)

    assert report.all_healthy is False
    assert clock.sleeps == [5, 5, 5]
