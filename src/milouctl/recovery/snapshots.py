"""Point-in-time snapshots taken before guarded operations.

Each snapshot is a directory under the store root named
``<YYYYmmdd_HHMMSS_ffffff>_<operation>`` holding copies of the env and compose
files, text listings of containers/volumes/networks, and ``metadata.yml``.
Snapshots are never modified after creation; the store only adds and prunes.
"""
from __future__ import annotations

import getpass
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import yaml

from .. import __version__
from ..logging import StructuredLogger
from ..providers.base import ContainerRuntime
from ..providers.docker import DockerError

ENV_COPY = "env.backup"
COMPOSE_COPY = "docker-compose.backup"
METADATA_FILE = "metadata.yml"
DIR_MODE = 0o700
FILE_MODE = 0o600


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be created, read or restored."""


def sanitize_operation(value: str) -> str:
    """Return *value* reduced to characters safe for a directory name."""
    cleaned = re.sub(r"[^A-Za-z0-9_-]+", "_", value.strip())
    return cleaned.strip("_") or "operation"


def _format_timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Metadata describing a stored snapshot."""

    id: str
    path: Path
    operation: str
    created_at: str
    created_by: str
    tool_version: str
    has_env: bool
    has_compose: bool
    env_source: str = ""
    compose_source: str = ""

    @property
    def env_copy(self) -> Path:
        """Return the path of the captured env file."""
        return self.path / ENV_COPY

    @property
    def compose_copy(self) -> Path:
        """Return the path of the captured compose file."""
        return self.path / COMPOSE_COPY

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "path": str(self.path),
            "operation": self.operation,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "tool_version": self.tool_version,
            "files": {"env": self.has_env, "compose": self.has_compose},
            "sources": {"env": self.env_source, "compose": self.compose_source},
        }


@dataclass(slots=True)
class SnapshotStore:
    """Create, list, restore and prune snapshots under *root*."""

    root: Path
    env_file: Path
    compose_file: Path
    runtime: ContainerRuntime
    logger: StructuredLogger
    retention: int = 10
    volume_patterns: Sequence[str] = ("milou", "static")
    now: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        """Normalise the configured paths."""
        self.root = Path(self.root).expanduser()
        self.env_file = Path(self.env_file).expanduser()
        self.compose_file = Path(self.compose_file).expanduser()

    def ensure_root(self) -> None:
        """Create the store root with owner-only permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, DIR_MODE)
        except OSError as exc:
            raise SnapshotError(f"Failed to prepare snapshot root {self.root}: {exc}") from exc

    # Creation ------------------------------------------------------
    def create(self, operation: str) -> Snapshot:
        """Capture the current installation state for *operation*."""
        self.ensure_root()
        moment = self.now()
        snapshot_id = f"{moment.strftime('%Y%m%d_%H%M%S_%f')}_{sanitize_operation(operation)}"
        target = self.root / snapshot_id
        staging = Path(tempfile.mkdtemp(dir=str(self.root), prefix=f".{snapshot_id}."))
        try:
            os.chmod(staging, DIR_MODE)
            has_env = self._copy_if_present(self.env_file, staging / ENV_COPY)
            has_compose = self._copy_if_present(self.compose_file, staging / COMPOSE_COPY)
            for filename, lines in self._runtime_listings().items():
                self._write_private(staging / filename, "\n".join(lines) + ("\n" if lines else ""))
            snapshot = Snapshot(
                id=snapshot_id,
                path=target,
                operation=operation,
                created_at=_format_timestamp(moment),
                created_by=_current_user(),
                tool_version=__version__,
                has_env=has_env,
                has_compose=has_compose,
                env_source=str(self.env_file),
                compose_source=str(self.compose_file),
            )
            self._write_private(
                staging / METADATA_FILE,
                yaml.safe_dump(_metadata_payload(snapshot), sort_keys=False),
            )
            if target.exists():
                raise SnapshotError(f"Snapshot {snapshot_id} already exists.")
            os.replace(staging, target)
        except OSError as exc:
            raise SnapshotError(f"Failed to create snapshot for {operation}: {exc}") from exc
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        self.logger.info("Snapshot created.", snapshot=snapshot_id, path=str(target))
        self.prune()
        return snapshot

    # Queries -------------------------------------------------------
    def list_snapshots(self) -> list[Snapshot]:
        """Return snapshots ordered oldest first by creation time."""
        if not self.root.exists():
            return []
        snapshots: list[Snapshot] = []
        for entry in self.root.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                snapshots.append(self._load(entry))
            except SnapshotError as exc:
                self.logger.warning(
                    "Ignoring unreadable snapshot.", path=str(entry), error=str(exc)
                )
        return sorted(snapshots, key=lambda item: (item.created_at, item.id))

    def get(self, snapshot_id: str) -> Snapshot:
        """Return the snapshot called *snapshot_id*."""
        normalized = snapshot_id.strip()
        if not normalized or "/" in normalized or normalized.startswith("."):
            raise SnapshotError(f"Invalid snapshot identifier: {snapshot_id!r}.")
        path = self.root / normalized
        if not path.is_dir():
            raise SnapshotError(f"Snapshot '{normalized}' not found in {self.root}.")
        return self._load(path)

    def latest(self) -> Snapshot | None:
        """Return the most recent snapshot, if any."""
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    # Restore and pruning -------------------------------------------
    def restore_files(self, snapshot: Snapshot) -> list[str]:
        """Put the env and compose files back exactly as captured.

        A file that did not exist when the snapshot was taken is removed.
        Returns a description of each change made.
        """
        changes: list[str] = []
        pairs = (
            (snapshot.has_env, snapshot.env_copy, self.env_file),
            (snapshot.has_compose, snapshot.compose_copy, self.compose_file),
        )
        for captured, source, destination in pairs:
            try:
                if captured:
                    _atomic_copy(source, destination)
                    changes.append(f"restored {destination}")
                elif destination.exists():
                    destination.unlink()
                    changes.append(f"removed {destination}")
            except OSError as exc:
                raise SnapshotError(
                    f"Failed to restore {destination} from snapshot {snapshot.id}: {exc}"
                ) from exc
        self.logger.info("Snapshot files restored.", snapshot=snapshot.id, changes=changes)
        return changes

    def prune(self, retention: int | None = None) -> list[str]:
        """Delete the oldest snapshots beyond *retention*; return removed ids."""
        keep = self.retention if retention is None else retention
        snapshots = self.list_snapshots()
        excess = len(snapshots) - max(keep, 0)
        removed: list[str] = []
        for snapshot in snapshots[: max(excess, 0)]:
            try:
                shutil.rmtree(snapshot.path)
            except OSError as exc:
                self.logger.warning(
                    "Failed to prune snapshot.", snapshot=snapshot.id, error=str(exc)
                )
                continue
            removed.append(snapshot.id)
        if removed:
            self.logger.info("Pruned snapshots.", removed=removed)
        return removed

    # ------------------------------------------------------------------
    def _runtime_listings(self) -> dict[str, Sequence[str]]:
        listings: dict[str, Sequence[str]] = {}
        try:
            containers = self.runtime.list_containers()
            listings["containers.list"] = [
                f"{item.name}\t{item.image}\t{item.status}" for item in containers
            ]
            listings["running_containers.list"] = [
                f"{item.name}\t{item.image}\t{item.status}" for item in containers if item.running
            ]
        except DockerError as exc:
            self.logger.warning("Container listing unavailable for snapshot.", error=str(exc))
            listings["containers.list"] = []
            listings["running_containers.list"] = []
        try:
            listings["volumes.list"] = [
                volume.name for volume in self.runtime.list_volumes(self.volume_patterns)
            ]
        except DockerError as exc:
            self.logger.warning("Volume listing unavailable for snapshot.", error=str(exc))
            listings["volumes.list"] = []
        try:
            listings["networks.list"] = self.runtime.list_networks()
        except DockerError as exc:
            self.logger.warning("Network listing unavailable for snapshot.", error=str(exc))
            listings["networks.list"] = []
        return listings

    def _copy_if_present(self, source: Path, destination: Path) -> bool:
        if not source.is_file():
            return False
        shutil.copyfile(source, destination)
        os.chmod(destination, FILE_MODE)
        return True

    def _write_private(self, path: Path, text: str) -> None:
        path.write_text(text, encoding="utf-8")
        os.chmod(path, FILE_MODE)

    def _load(self, path: Path) -> Snapshot:
        metadata_path = path / METADATA_FILE
        try:
            raw = yaml.safe_load(metadata_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise SnapshotError(f"Snapshot metadata unreadable ({metadata_path}): {exc}") from exc
        if not isinstance(raw, Mapping):
            raise SnapshotError(f"Snapshot metadata must be a mapping ({metadata_path}).")
        files = raw.get("files") if isinstance(raw.get("files"), Mapping) else {}
        sources = raw.get("sources") if isinstance(raw.get("sources"), Mapping) else {}
        return Snapshot(
            id=str(raw.get("id", path.name)),
            path=path,
            operation=str(raw.get("operation", "")),
            created_at=str(raw.get("timestamp", "")),
            created_by=str(raw.get("created_by", "")),
            tool_version=str(raw.get("tool_version", "")),
            has_env=bool(files.get("env", (path / ENV_COPY).exists())),
            has_compose=bool(files.get("compose", (path / COMPOSE_COPY).exists())),
            env_source=str(sources.get("env", "")),
            compose_source=str(sources.get("compose", "")),
        )


def _metadata_payload(snapshot: Snapshot) -> dict[str, object]:
    return {
        "id": snapshot.id,
        "operation": snapshot.operation,
        "timestamp": snapshot.created_at,
        "created_by": snapshot.created_by,
        "tool_version": snapshot.tool_version,
        "files": {"env": snapshot.has_env, "compose": snapshot.has_compose},
        "sources": {"env": snapshot.env_source, "compose": snapshot.compose_source},
    }


def _atomic_copy(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent),
        prefix=f".{destination.name}.",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle, source.open("rb") as reader:
            shutil.copyfileobj(reader, handle)
        os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["Snapshot", "SnapshotError", "SnapshotStore", "sanitize_operation"]
