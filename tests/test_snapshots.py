"""Tests for the snapshot store."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest
import yaml
from conftest import FakeRuntime, Installation, TickingWallClock, container

from milouctl import __version__
from milouctl.logging import StructuredLogger
from milouctl.providers.docker import VolumeInfo
from milouctl.recovery import SnapshotError, SnapshotStore, sanitize_operation


def _store(
    tmp_path: Path,
    install: Installation,
    logger: StructuredLogger,
    runtime: FakeRuntime | None = None,
    *,
    retention: int = 10,
) -> SnapshotStore:
    return SnapshotStore(
        root=tmp_path / "snapshots",
        env_file=install.env_path,
        compose_file=install.compose_path,
        runtime=runtime or FakeRuntime(),
        logger=logger,
        retention=retention,
        now=TickingWallClock(),
    )


def test_sanitize_operation() -> None:
    """Operation names become safe directory suffixes."""
    assert sanitize_operation("update 1.2.0") == "update_1_2_0"
    assert sanitize_operation("restore ../../etc") == "restore_etc"
    assert sanitize_operation("  ") == "operation"


def test_create_captures_files_and_listings(
    tmp_path: Path, install: Installation, logger: StructuredLogger
) -> None:
    """A snapshot holds private copies of the files, runtime listings and metadata."""
    install.write_env()
    install.write_compose()
    runtime = FakeRuntime(
        containers=[container("backend"), container("engine", status="Exited (1) 1 minute ago")],
        volumes=[VolumeInfo("milou_pgdata", None)],
    )
    store = _store(tmp_path, install, logger, runtime)

    snapshot = store.create("update latest")

    assert snapshot.id == "20250115_100000_000000_update_latest"
    assert snapshot.path == tmp_path / "snapshots" / snapshot.id
    assert snapshot.env_copy.read_bytes() == install.env_path.read_bytes()
    assert snapshot.compose_copy.read_bytes() == install.compose_path.read_bytes()
    assert stat.S_IMODE(snapshot.path.stat().st_mode) == 0o700
    assert stat.S_IMODE(snapshot.env_copy.stat().st_mode) == 0o600
    assert (snapshot.path / "containers.list").read_text(encoding="utf-8").count("\n") == 2
    assert (snapshot.path / "running_containers.list").read_text(encoding="utf-8") == (
        "milou-backend\tghcr.io/milou-sh/milou/backend:1.0.0\tUp 2 hours\n"
    )
    assert (snapshot.path / "volumes.list").read_text(encoding="utf-8") == "milou_pgdata\n"
    assert (snapshot.path / "networks.list").read_text(encoding="utf-8") == "milou_default\n"

    metadata = yaml.safe_load((snapshot.path / "metadata.yml").read_text(encoding="utf-8"))
    assert metadata["id"] == snapshot.id
    assert metadata["operation"] == "update latest"
    assert metadata["timestamp"] == "2025-01-15T10:00:00.000000Z"
    assert metadata["tool_version"] == __version__
    assert metadata["files"] == {"env": True, "compose": True}
    assert [entry.name for entry in (tmp_path / "snapshots").iterdir()] == [snapshot.id]


def test_create_tolerates_missing_files_and_runtime(
    tmp_path: Path, install: Installation, logger: StructuredLogger
) -> None:
    """Absent files are recorded as absent and runtime failures leave empty listings."""
    runtime = FakeRuntime()
    runtime.fail_listing = True
    store = _store(tmp_path, install, logger, runtime)

    snapshot = store.create("config regenerate")

    assert snapshot.has_env is False
    assert snapshot.has_compose is False
    assert (snapshot.path / "containers.list").read_text(encoding="utf-8") == ""


def test_create_failure_leaves_no_partial_snapshot(
    tmp_path: Path,
    install: Installation,
    logger: StructuredLogger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Errors while staging raise SnapshotError and clean up the staging directory."""
    install.write_env()
    store = _store(tmp_path, install, logger)

    def broken_copy(src: object, dst: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("milouctl.recovery.snapshots.shutil.copyfile", broken_copy)

    with pytest.raises(SnapshotError, match="disk full"):
        store.create("update")
    assert list((tmp_path / "snapshots").iterdir()) == []


def test_list_get_latest(
    tmp_path: Path, install: Installation, logger: StructuredLogger
) -> None:
    """Snapshots list oldest first and can be fetched by id."""
    install.write_env()
    store = _store(tmp_path, install, logger)
    first = store.create("update 1.1.0")
    second = store.create("update 1.2.0")
    (store.root / "stray-dir").mkdir()

    assert [item.id for item in store.list_snapshots()] == [first.id, second.id]
    assert store.latest() == second
    assert store.get(first.id) == first
    with pytest.raises(SnapshotError, match="not found"):
        store.get("20200101_000000_000000_nothing")
    with pytest.raises(SnapshotError, match="Invalid snapshot identifier"):
        store.get("../etc")


def test_restore_files_is_exact(
    tmp_path: Path, install: Installation, logger: StructuredLogger
) -> None:
    """Restore puts back captured files byte-for-byte and removes files created later."""
    install.write_env()
    store = _store(tmp_path, install, logger)
    original = install.env_path.read_bytes()
    snapshot = store.create("update")

    install.env_path.write_text("DOMAIN=changed\n", encoding="utf-8")
    install.write_compose()

    changes = store.restore_files(snapshot)

    assert install.env_path.read_bytes() == original
    assert install.compose_path.exists() is False
    assert changes == [f"restored {install.env_path}", f"removed {install.compose_path}"]
    assert stat.S_IMODE(install.env_path.stat().st_mode) == 0o600


def test_retention_prunes_oldest(
    tmp_path: Path, install: Installation, logger: StructuredLogger
) -> None:
    """Creating beyond the retention limit drops the oldest snapshots."""
    store = _store(tmp_path, install, logger, retention=2)
    created = [store.create(f"op{index}") for index in range(4)]

    assert [item.id for item in store.list_snapshots()] == [created[2].id, created[3].id]
    assert store.prune(1) == [created[2].id]
    assert store.prune(5) == []
