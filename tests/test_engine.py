"""End-to-end tests for installation operations against in-memory providers."""
from __future__ import annotations

from collections.abc import Callable

import pytest
from conftest import (
    BASE_ENV,
    SERVICES,
    FakeCompose,
    FakeRegistry,
    FakeRuntime,
    Installation,
    container,
    running_installation,
    service_state,
)

from milouctl.cli import RuntimeContext
from milouctl.credentials import CredentialLossError
from milouctl.dependencies import DependencyError
from milouctl.engine import ServiceHealthError
from milouctl.envfile import EnvFile, EnvFileError
from milouctl.providers.docker import DockerError
from milouctl.recovery import GuardedOperationError
from milouctl.state import InstallationState, UnsafeOperationError
from milouctl.versions import ActionKind

Factory = Callable[[], RuntimeContext]


def _snapshot_ids(runtime: RuntimeContext) -> list[str]:
    return [item.id for item in runtime.snapshots.list_snapshots()]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def test_plan_does_not_change_anything(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Planning reads state only."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()
    before = install.env_path.read_bytes()

    plan = runtime.engine.plan("latest")

    assert {action.kind for action in plan.actions} == {ActionKind.UPGRADE}
    assert install.env_path.read_bytes() == before
    assert _snapshot_ids(runtime) == []
    assert fake_runtime.pulled == []


def test_services_tolerates_unreachable_runtime(
    make_runtime: Factory, fake_runtime: FakeRuntime
) -> None:
    """A failed listing is treated as no containers."""
    fake_runtime.fail_listing = True

    services = make_runtime().engine.services(["backend"])

    assert services[0].current_version is None
    assert services[0].dependencies == ("database", "redis", "rabbitmq")


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


def test_update_applies_plan_under_snapshot(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
    journal: list[str],
) -> None:
    """Tags are rewritten, images pulled and services recreated after dependencies."""
    running_installation(install, fake_runtime, fake_compose)
    fake_compose.states["redis"] = service_state("redis", state="exited")
    runtime = make_runtime()

    outcome = runtime.engine.update("1.2.0")

    assert outcome.state is InstallationState.RUNNING
    assert outcome.applied is True
    assert outcome.started_dependencies == ("redis",)
    assert outcome.warnings == ()
    assert outcome.health is not None and outcome.health.all_healthy
    assert _snapshot_ids(runtime) == [outcome.snapshot_id]
    for name in SERVICES:
        assert runtime.env.get(f"MILOU_{name.upper()}_TAG") == "1.2.0"
    assert fake_runtime.pulled == [
        f"ghcr.io/milou-sh/milou/{name}:1.2.0" for name in SERVICES
    ]
    assert fake_compose.up_calls == [(SERVICES, True, True)]
    first_pull = journal.index("pull:ghcr.io/milou-sh/milou/database:1.2.0")
    assert journal.index("start:redis") < first_pull
    assert outcome.to_dict()["snapshot_id"] == outcome.snapshot_id


def test_update_noop_takes_no_snapshot(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """An installation already at the target is left alone."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()

    outcome = runtime.engine.update("1.0.0")

    assert outcome.applied is False
    assert outcome.plan.is_noop is True
    assert _snapshot_ids(runtime) == []
    assert fake_compose.up_calls == []
    assert fake_compose.start_calls == []


def test_update_refused_for_fresh_install(make_runtime: Factory) -> None:
    """There is nothing to update on a fresh host."""
    with pytest.raises(UnsafeOperationError) as excinfo:
        make_runtime().engine.update("latest")

    assert excinfo.value.state is InstallationState.FRESH


def test_update_skips_unavailable_services(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
    fake_registry: FakeRegistry,
) -> None:
    """A failed lookup for one service does not block the others."""
    running_installation(install, fake_runtime, fake_compose)
    fake_registry.failing.add("engine")
    runtime = make_runtime()

    outcome = runtime.engine.update("latest")

    assert [entry.service for entry in outcome.plan.skipped] == ["engine"]
    assert runtime.env.get("MILOU_ENGINE_TAG") == "1.0.0"
    assert runtime.env.get("MILOU_BACKEND_TAG") == "1.2.0"
    assert fake_compose.up_calls[0][0] == ("database", "backend", "frontend", "nginx")


def test_update_limited_to_selected_services(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Only the requested services are planned and recreated."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()

    outcome = runtime.engine.update("1.1.0", services=["backend"])

    assert [action.service for action in outcome.plan.actions] == ["backend"]
    assert runtime.env.get("MILOU_BACKEND_TAG") == "1.1.0"
    assert runtime.env.get("MILOU_FRONTEND_TAG") == "1.0.0"


def test_force_reinstall_recreates_current_version(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Force re-pulls and recreates services already at the target."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()

    outcome = runtime.engine.update("1.0.0", services=["nginx"], force=True)

    assert outcome.plan.actions[0].kind is ActionKind.FORCE_REINSTALL
    assert fake_runtime.pulled == ["ghcr.io/milou-sh/milou/nginx:1.0.0"]
    assert fake_compose.up_calls == [(("nginx",), True, True)]


def test_update_with_partial_health_warns(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Services that do not turn healthy are reported, not rolled back."""
    running_installation(install, fake_runtime, fake_compose)
    fake_compose.health_after_up = "unhealthy"
    runtime = make_runtime()

    outcome = runtime.engine.update("1.2.0")

    assert outcome.applied is True
    assert outcome.warnings == ("post-update health: 0 of 5 services healthy",)
    assert runtime.env.get("MILOU_BACKEND_TAG") == "1.2.0"


def test_update_failure_rolls_back_configuration(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
    journal: list[str],
) -> None:
    """A failed recreate restores the env file and recreates the old versions."""
    running_installation(install, fake_runtime, fake_compose)
    original = install.env_path.read_bytes()
    fake_compose.fail_up = DockerError("compose up failed (exit 1): no space left on device")
    runtime = make_runtime()

    with pytest.raises(GuardedOperationError) as excinfo:
        runtime.engine.update("1.2.0")

    error = excinfo.value
    assert error.rollback_succeeded is True
    assert error.steps[0].description.startswith("rollback: recreate ")
    assert [step.description for step in error.steps[1:6]] == [
        f"rollback: restore MILOU_{name.upper()}_TAG=1.0.0" for name in reversed(SERVICES)
    ]
    assert install.env_path.read_bytes() == original
    assert fake_compose.up_calls == [(SERVICES, True, True), (SERVICES, True, True)]
    assert journal[-2:] == ["up:" + ",".join(SERVICES), "image-prune"]
    assert error.snapshot_id in _snapshot_ids(runtime)


def test_pull_failure_restores_tags_already_written(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Tags set before a failing pull are restored; nothing is recreated."""
    running_installation(install, fake_runtime, fake_compose)
    fake_runtime.pull_errors["ghcr.io/milou-sh/milou/backend:1.2.0"] = "manifest unknown"
    runtime = make_runtime()

    with pytest.raises(GuardedOperationError) as excinfo:
        runtime.engine.update("1.2.0")

    assert [step.description for step in excinfo.value.steps[:2]] == [
        "rollback: restore MILOU_BACKEND_TAG=1.0.0",
        "rollback: restore MILOU_DATABASE_TAG=1.0.0",
    ]
    assert runtime.env.get("MILOU_DATABASE_TAG") == "1.0.0"
    assert runtime.env.get("MILOU_BACKEND_TAG") == "1.0.0"
    assert fake_compose.up_calls == []


def test_dependency_failure_aborts_before_snapshot(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Dependencies are started before anything is changed."""
    running_installation(install, fake_runtime, fake_compose)
    fake_compose.states["rabbitmq"] = service_state("rabbitmq", state="exited")
    fake_compose.fail_start.add("rabbitmq")
    runtime = make_runtime()

    with pytest.raises(DependencyError):
        runtime.engine.update("1.2.0")

    assert _snapshot_ids(runtime) == []
    assert runtime.env.get("MILOU_BACKEND_TAG") == "1.0.0"


def test_tag_absent_before_update_is_removed_on_rollback(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Restoring a tag that did not exist removes it again."""
    running_installation(install, fake_runtime, fake_compose)
    values = {key: value for key, value in BASE_ENV.items() if key != "MILOU_NGINX_TAG"}
    install.write_env(values)
    fake_compose.fail_up = DockerError("compose up failed (exit 1): boom")
    runtime = make_runtime()

    with pytest.raises(GuardedOperationError) as excinfo:
        runtime.engine.update("1.2.0", services=["nginx"])

    assert "rollback: restore MILOU_NGINX_TAG=<unset>" in [
        step.description for step in excinfo.value.steps
    ]
    assert runtime.env.get("MILOU_NGINX_TAG") is None


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


def test_start_brings_up_stopped_installation(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Start launches dependencies, then everything, and waits for health."""
    running_installation(install, fake_runtime, fake_compose, status="Exited (0) 1 hour ago")
    runtime = make_runtime()

    result = runtime.engine.start()

    assert result.value.all_healthy is True
    assert fake_compose.start_calls == ["redis", "rabbitmq"]
    assert fake_compose.up_calls == [((), False, False)]
    assert result.snapshot.operation == "start"


def test_start_fails_and_rolls_back_when_unhealthy(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Critical services that stay unhealthy fail the start."""
    running_installation(install, fake_runtime, fake_compose, status="Exited (0) 1 hour ago")
    fake_compose.health_after_up = "unhealthy"
    runtime = make_runtime()

    with pytest.raises(GuardedOperationError) as excinfo:
        runtime.engine.start()

    assert isinstance(excinfo.value.cause, ServiceHealthError)
    assert excinfo.value.rollback_succeeded is True
    assert "0 of 5 services healthy" in str(excinfo.value)


def test_start_refused_for_fresh_install(make_runtime: Factory) -> None:
    """Nothing can be started before an install."""
    with pytest.raises(UnsafeOperationError):
        make_runtime().engine.start()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_regenerate_preserves_and_rotates(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Regeneration keeps secrets, rotates on request and backs up first."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()

    result = runtime.engine.regenerate_config(rotate=["JWT_SECRET"])

    report = result.value
    assert report.backup_path is not None
    assert runtime.env.get("POSTGRES_PASSWORD") == BASE_ENV["POSTGRES_PASSWORD"]
    assert runtime.env.get("JWT_SECRET") != BASE_ENV["JWT_SECRET"]
    assert runtime.env.get("API_KEY")
    assert runtime.credentials.list_backups() == [report.backup_path]
    assert result.warnings == ()


def test_regenerate_loss_is_rolled_back(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A regeneration that blanks a critical secret fails and restores the file."""
    running_installation(install, fake_runtime, fake_compose)
    original = install.env_path.read_bytes()

    def lossy(existing: object, *, rotate: object = ()) -> dict[str, str]:
        return {"POSTGRES_PASSWORD": "", "DB_PASSWORD": ""}

    monkeypatch.setattr("milouctl.engine.generate_credentials", lossy)
    runtime = make_runtime()

    with pytest.raises(GuardedOperationError) as excinfo:
        runtime.engine.regenerate_config()

    assert isinstance(excinfo.value.cause, CredentialLossError)
    assert excinfo.value.cause.missing == ("DB_PASSWORD", "POSTGRES_PASSWORD")
    assert install.env_path.read_bytes() == original


def test_pin_tags_invalidates_cached_state(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Pinned tags are written under a snapshot and the classifier cache is dropped."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()
    runtime.env.set("MILOU_BACKEND_TAG", "latest")
    runtime.classifier.classify()
    assert runtime.classifier._cache is not None  # type: ignore[attr-defined]

    result = runtime.engine.pin_tags()

    assert result.value == {"MILOU_BACKEND_TAG": "1.2.0"}
    assert _snapshot_ids(runtime) == [result.snapshot.id]
    assert runtime.env.get("MILOU_BACKEND_TAG") == "1.2.0"
    assert runtime.classifier._cache is None  # type: ignore[attr-defined]


def test_pin_tags_failure_restores_env_file(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A write that fails midway leaves the previous env file in place."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()
    runtime.env.update({"MILOU_BACKEND_TAG": "latest", "MILOU_ENGINE_TAG": "stable"})
    original = install.env_path.read_bytes()

    def truncating_update(self: EnvFile, values: dict[str, str]) -> None:
        self.write_text("MILOU_BACKEND_TAG=1.2.0\n")
        raise EnvFileError("disk full")

    monkeypatch.setattr(EnvFile, "update", truncating_update)

    with pytest.raises(GuardedOperationError) as excinfo:
        runtime.engine.pin_tags()

    assert excinfo.value.rollback_succeeded is True
    assert install.env_path.read_bytes() == original


def test_repeated_update_is_a_noop(
    make_runtime: Factory,
    install: Installation,
    fake_runtime: FakeRuntime,
    fake_compose: FakeCompose,
) -> None:
    """Updating to the version already applied changes nothing the second time."""
    running_installation(install, fake_runtime, fake_compose)
    runtime = make_runtime()
    first = runtime.engine.update("1.2.0")
    assert first.applied is True
    fake_runtime.containers = [container(name, "1.2.0") for name in SERVICES]
    env_after_first = install.env_path.read_bytes()
    up_calls = list(fake_compose.up_calls)

    assert runtime.engine.plan("1.2.0").is_noop is True
    second = runtime.engine.update("1.2.0")

    assert second.applied is False
    assert install.env_path.read_bytes() == env_after_first
    assert fake_compose.up_calls == up_calls
    assert _snapshot_ids(runtime) == [first.snapshot_id]
