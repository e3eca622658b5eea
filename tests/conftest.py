"""Pytest configuration helpers and in-memory providers for the test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from milouctl.cli import RuntimeContext
from milouctl.config import AppConfig, load_config
from milouctl.credentials import CredentialGuard
from milouctl.dependencies import DependencyOrchestrator
from milouctl.doctor import create_probe_context, post_operation_warnings
from milouctl.engine import InstallationEngine
from milouctl.envfile import EnvFile
from milouctl.health import HealthMonitor
from milouctl.logging import StructuredLogger
from milouctl.providers.compose import ServiceState
from milouctl.providers.docker import ContainerInfo, DockerError, VolumeInfo
from milouctl.providers.registry import RegistryError
from milouctl.recovery import SnapshotStore, TransactionManager
from milouctl.state import StateClassifier
from milouctl.versions import VersionReconciler

SERVICES = ("database", "backend", "frontend", "engine", "nginx")

BASE_ENV = {
    "DOMAIN": "milou.example",
    "ADMIN_EMAIL": "admin@milou.example",
    "POSTGRES_USER": "milou_user",
    "POSTGRES_DB": "milou_database",
    "POSTGRES_PASSWORD": "pg-secret-0123456789abcdefABCDEF",
    "DB_PASSWORD": "pg-secret-0123456789abcdefABCDEF",
    "REDIS_PASSWORD": "redis-secret-0123456789abcdefAB",
    "RABBITMQ_USER": "milou_rabbit",
    "RABBITMQ_PASSWORD": "rabbit-secret-0123456789abcdefA",
    "JWT_SECRET": "jwt-secret-0123456789abcdefABCDEF0123456789",
    "SESSION_SECRET": "session-secret-0123456789abcdefABCDEF01234",
    "ENCRYPTION_KEY": "encryption-key-0123456789abcdefABCDEF0123",
    "ADMIN_PASSWORD": "admin-pass-0123456789",
    "MILOU_DATABASE_TAG": "1.0.0",
    "MILOU_BACKEND_TAG": "1.0.0",
    "MILOU_FRONTEND_TAG": "1.0.0",
    "MILOU_ENGINE_TAG": "1.0.0",
    "MILOU_NGINX_TAG": "1.0.0",
}

COMPOSE_TEXT = (
    "services:\n  backend:\n    image: ghcr.io/milou-sh/milou/backend:${MILOU_BACKEND_TAG}\n"
)


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TickingWallClock:
    """Wall clock returning a strictly increasing UTC datetime on every call."""

    def __init__(
        self,
        start: datetime = datetime(2025, 1, 15, 10, 0, 0, tzinfo=UTC),
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def _completed(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(list(args), 0, "", "")


class FakeRuntime:
    """In-memory stand-in for :class:`milouctl.providers.DockerProvider`."""

    def __init__(
        self,
        containers: Sequence[ContainerInfo] = (),
        volumes: Sequence[VolumeInfo] = (),
        networks: Sequence[str] = ("milou_default",),
        journal: list[str] | None = None,
    ) -> None:
        self.containers = list(containers)
        self.volumes = list(volumes)
        self.networks = list(networks)
        self.journal = journal if journal is not None else []
        self.reachable = True
        self.fail_listing = False
        self.pull_errors: dict[str, str] = {}
        self.status_map: dict[str, list[str]] = {}
        self.pulled: list[str] = []
        self.removed: list[str] = []
        self.prune_calls = 0

    def list_containers(self) -> list[ContainerInfo]:
        if self.fail_listing:
            raise DockerError("docker ps failed (exit 1): daemon down")
        return list(self.containers)

    def list_volumes(self, patterns: Sequence[str]) -> list[VolumeInfo]:
        if self.fail_listing:
            raise DockerError("docker volume ls failed (exit 1): daemon down")
        return list(self.volumes)

    def list_networks(self) -> list[str]:
        return list(self.networks)

    def is_reachable(self) -> bool:
        return self.reachable

    def pull(self, image: str) -> subprocess.CompletedProcess[str]:
        self.journal.append(f"pull:{image}")
        if image in self.pull_errors:
            raise DockerError(self.pull_errors[image])
        self.pulled.append(image)
        return _completed(["docker", "pull", image])

    def containers_with_status(self, status: str, *, label: str | None = None) -> list[str]:
        return list(self.status_map.get(status, []))

    def remove_containers(self, names: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.journal.append(f"rm:{','.join(names)}")
        self.removed.extend(names)
        return _completed(["docker", "rm", "-f", *names])

    def prune_dangling_images(self) -> subprocess.CompletedProcess[str]:
        self.journal.append("image-prune")
        self.prune_calls += 1
        return _completed(["docker", "image", "prune", "-f"])


class FakeCompose:
    """In-memory compose project tracking service states."""

    def __init__(
        self,
        states: Sequence[ServiceState] = (),
        journal: list[str] | None = None,
    ) -> None:
        self.states = {state.service: state for state in states}
        self.journal = journal if journal is not None else []
        self.unavailable = False
        self.fail_start: set[str] = set()
        self.fail_up: Exception | None = None  # raised once, by the next up() call
        self.health_after_up = "healthy"
        self.start_calls: list[str] = []
        self.up_calls: list[tuple[tuple[str, ...], bool, bool]] = []

    def service_states(self) -> list[ServiceState]:
        if self.unavailable:
            raise DockerError("compose ps failed (exit 1): no such project")
        return list(self.states.values())

    def start(self, service: str) -> subprocess.CompletedProcess[str]:
        self.journal.append(f"start:{service}")
        self.start_calls.append(service)
        if service in self.fail_start:
            raise DockerError(f"compose up {service} failed (exit 1): port in use")
        self.states[service] = ServiceState(service, "running", "healthy")
        return _completed(["docker", "compose", "up", "-d", service])

    def up(
        self,
        services: Sequence[str] = (),
        *,
        force_recreate: bool = False,
        no_deps: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        names = tuple(services)
        self.journal.append(f"up:{','.join(names) or '*'}")
        self.up_calls.append((names, force_recreate, no_deps))
        if self.fail_up is not None:
            exc, self.fail_up = self.fail_up, None
            raise exc
        for name in names or tuple(self.states):
            self.states[name] = ServiceState(name, "running", self.health_after_up)
        return _completed(["docker", "compose", "up", "-d", *names])


class FakeRegistry:
    """Registry returning canned versions, newest first."""

    def __init__(self, versions: dict[str, list[str]] | None = None) -> None:
        self.versions = {name: list(items) for name, items in (versions or {}).items()}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def list_versions(self, service: str) -> list[str]:
        self.calls.append(("list", service))
        if service in self.failing:
            raise RegistryError(f"Registry request for {service} failed: timed out")
        return list(self.versions.get(service, []))

    def latest_version(self, service: str) -> str:
        self.calls.append(("latest", service))
        if service in self.failing:
            raise RegistryError(f"Registry request for {service} failed: timed out")
        versions = self.versions.get(service) or []
        if not versions:
            raise RegistryError(f"No published versions found for {service}.")
        return versions[0]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def container(service: str, version: str = "1.0.0", status: str = "Up 2 hours") -> ContainerInfo:
    """Return a managed container running *service* at *version*."""
    return ContainerInfo(
        name=f"milou-{service}",
        image=f"ghcr.io/milou-sh/milou/{service}:{version}",
        status=status,
    )


def service_state(service: str, state: str = "running", health: str = "healthy") -> ServiceState:
    """Return a compose service state."""
    return ServiceState(service=service, state=state, health=health, container=f"milou-{service}")


def write_env(path: Path, values: dict[str, str]) -> None:
    """Write *values* as a plain env file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{key}={value}\n" for key, value in values.items()), encoding="utf-8")
    path.chmod(0o600)


@dataclass
class Installation:
    """Paths of a temporary installation."""

    root: Path
    env_path: Path
    compose_path: Path

    def write_env(self, values: dict[str, str] | None = None) -> None:
        write_env(self.env_path, dict(BASE_ENV if values is None else values))

    def write_compose(self, text: str = COMPOSE_TEXT) -> None:
        self.compose_path.parent.mkdir(parents=True, exist_ok=True)
        self.compose_path.write_text(text, encoding="utf-8")


def running_installation(
    install: Installation,
    runtime: FakeRuntime,
    compose: FakeCompose,
    *,
    version: str = "1.0.0",
    status: str = "Up 2 hours",
) -> None:
    """Populate the fakes with a complete installation of *version*."""
    install.write_env()
    install.write_compose()
    runtime.containers = [container(name, version, status) for name in SERVICES]
    state = "running" if status.startswith("Up") else "exited"
    for name in (*SERVICES, "redis", "rabbitmq"):
        compose.states[name] = service_state(name, state=state)


@pytest.fixture()
def logger(tmp_path: Path) -> StructuredLogger:
    """Return a logger writing under the test's temporary directory."""
    return StructuredLogger(tmp_path / "logs")


@pytest.fixture()
def install(tmp_path: Path) -> Installation:
    """Return an empty installation layout under ``tmp_path``."""
    root = tmp_path / "milou"
    return Installation(
        root=root,
        env_path=root / ".env",
        compose_path=root / "static" / "docker-compose.yml",
    )


@pytest.fixture()
def app_config(tmp_path: Path, install: Installation) -> AppConfig:
    """Return configuration rooted in ``tmp_path`` with zero waits."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "install_dir": str(install.root),
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "docker": {"settle_delay": 0, "health_timeout": 0, "health_interval": 1},
        },
    )


@pytest.fixture()
def journal() -> list[str]:
    """Shared call journal for ordering assertions across fakes."""
    return []


@pytest.fixture()
def fake_runtime(journal: list[str]) -> FakeRuntime:
    return FakeRuntime(journal=journal)


@pytest.fixture()
def fake_compose(journal: list[str]) -> FakeCompose:
    return FakeCompose(journal=journal)


@pytest.fixture()
def fake_registry() -> FakeRegistry:
    return FakeRegistry({name: ["1.2.0", "1.1.0", "1.0.0"] for name in SERVICES})


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_runtime(
    app_config: AppConfig,
    logger: StructuredLogger,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
    fake_registry: FakeRegistry,
    clock: FakeClock,
) -> Callable[[], RuntimeContext]:
    """Return a factory wiring the engine components around the fakes."""

    def _factory() -> RuntimeContext:
        config = app_config
        env = EnvFile(config.env_file)
        wall = TickingWallClock()
        health = HealthMonitor(
            compose=fake_compose, logger=logger, clock=clock, sleep=clock.sleep
        )
        classifier = StateClassifier(
            env=env,
            runtime=fake_runtime,
            health=health,
            logger=logger,
            critical_services=config.services.critical,
            required_keys=config.state.required_keys,
            volume_patterns=config.state.volume_patterns,
            cache_ttl=config.state.cache_ttl,
            clock=clock,
            wall_clock=wall,
        )
        snapshots = SnapshotStore(
            root=config.snapshots.root,
            env_file=config.env_file,
            compose_file=config.compose_file,
            runtime=fake_runtime,
            logger=logger,
            retention=config.snapshots.retention,
            now=wall,
        )
        transactions = TransactionManager(
            snapshots=snapshots,
            runtime=fake_runtime,
            logger=logger,
            on_complete=classifier.invalidate,
        )
        credentials = CredentialGuard(
            env=env,
            backup_dir=config.credentials.backup_dir,
            logger=logger,
            critical_keys=frozenset(config.credentials.critical_keys),
            now=wall,
        )
        reconciler = VersionReconciler(registry=fake_registry, logger=logger)
        orchestrator = DependencyOrchestrator(
            compose=fake_compose, logger=logger, settle_delay=0, sleep=clock.sleep
        )
        engine = InstallationEngine(
            config=config,
            env=env,
            runtime=fake_runtime,
            compose=fake_compose,
            registry=fake_registry,
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
            docker=fake_runtime,  # type: ignore[arg-type]
            compose=fake_compose,  # type: ignore[arg-type]
            registry=fake_registry,  # type: ignore[arg-type]
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

    return _factory
