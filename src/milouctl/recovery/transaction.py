"""Snapshot-backed execution of mutating operations.

:class:`TransactionManager` wraps an operation so that a failure part-way
through puts the env and compose files back as they were. Rollback is
best-effort and aggregate-and-continue: every step's outcome is recorded and
a failing step never prevents the remaining ones from running. Containers and
volumes are never restored automatically.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from ..logging import StructuredLogger
from ..providers.base import ContainerRuntime
from ..providers.docker import DockerError
from .snapshots import Snapshot, SnapshotError, SnapshotStore

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RollbackAction:
    """A registered undo step."""

    description: str
    undo: Callable[[], object]


@dataclass(slots=True, frozen=True)
class StepOutcome:
    """Result of one rollback or cleanup step."""

    description: str
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"description": self.description, "ok": self.ok}
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True, frozen=True)
class GuardedResult(Generic[T]):
    """Successful outcome of a guarded operation."""

    operation: str
    snapshot: Snapshot
    value: T
    warnings: tuple[str, ...] = ()


class GuardedOperationError(RuntimeError):
    """A guarded operation failed; carries the rollback outcome.

    ``snapshot`` is ``None`` only when the snapshot itself could not be taken,
    in which case the operation never ran.
    """

    def __init__(
        self,
        operation: str,
        cause: BaseException,
        *,
        snapshot: Snapshot | None,
        rollback_succeeded: bool,
        steps: Sequence[StepOutcome] = (),
    ) -> None:
        """Record the failed *operation*, its *cause* and what rollback achieved."""
        self.operation = operation
        self.cause = cause
        self.snapshot = snapshot
        self.rollback_succeeded = rollback_succeeded
        self.steps = tuple(steps)
        super().__init__(self._compose_message())

    @property
    def snapshot_id(self) -> str | None:
        """Return the snapshot identifier for manual recovery."""
        return self.snapshot.id if self.snapshot else None

    @property
    def operation_started(self) -> bool:
        """Return ``False`` when the operation was aborted before running."""
        return self.snapshot is not None

    @property
    def unrecoverable(self) -> bool:
        """Return ``True`` when manual intervention is required."""
        return self.operation_started and not self.rollback_succeeded

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "operation": self.operation,
            "error": str(self.cause),
            "snapshot_id": self.snapshot_id,
            "snapshot_path": str(self.snapshot.path) if self.snapshot else None,
            "rollback_succeeded": self.rollback_succeeded,
            "steps": [step.to_dict() for step in self.steps],
        }

    def _compose_message(self) -> str:
        if self.snapshot is None:
            return f"{self.operation} aborted before running: {self.cause}"
        if self.rollback_succeeded:
            outcome = "automatic rollback succeeded"
        else:
            outcome = (
                "automatic rollback FAILED; restore manually from "
                f"{self.snapshot.path}"
            )
        return (
            f"{self.operation} failed: {self.cause} "
            f"(snapshot {self.snapshot.id}; {outcome})"
        )


@dataclass(slots=True)
class TransactionManager:
    """Run operations under snapshot and rollback protection."""

    snapshots: SnapshotStore
    runtime: ContainerRuntime
    logger: StructuredLogger
    post_check: Callable[[], Sequence[str]] | None = None
    on_complete: Callable[[], None] | None = None
    project_label: str = "milou"
    _rollback_actions: list[RollbackAction] = field(default_factory=list, init=False)

    def register_rollback(self, description: str, undo: Callable[[], object]) -> None:
        """Register an undo step for the operation currently running."""
        self._rollback_actions.append(RollbackAction(description, undo))

    @property
    def rollback_actions(self) -> tuple[RollbackAction, ...]:
        """Return the currently registered undo steps in registration order."""
        return tuple(self._rollback_actions)

    def run_guarded(self, operation: str, op: Callable[[], T]) -> GuardedResult[T]:
        """Run *op* under a fresh snapshot, rolling back if it raises."""
        try:
            snapshot = self.snapshots.create(operation)
        except SnapshotError as exc:
            self.logger.error("Snapshot failed; operation aborted.", operation=operation)
            raise GuardedOperationError(
                operation, exc, snapshot=None, rollback_succeeded=False
            ) from exc

        self._rollback_actions.clear()
        self.logger.info("Guarded operation started.", operation=operation, snapshot=snapshot.id)
        try:
            try:
                value = op()
            except Exception as exc:
                self.logger.error(
                    "Guarded operation failed; rolling back.",
                    operation=operation,
                    snapshot=snapshot.id,
                    error=str(exc),
                )
                steps, succeeded = self._rollback(snapshot)
                error = GuardedOperationError(
                    operation,
                    exc,
                    snapshot=snapshot,
                    rollback_succeeded=succeeded,
                    steps=steps,
                )
                if succeeded:
                    self.logger.warning(str(error), **error.to_dict())
                else:
                    self.logger.critical(str(error), **error.to_dict())
                raise error from exc

            warnings = self._post_check(operation)
            self.logger.info("Guarded operation succeeded.", operation=operation)
            return GuardedResult(operation, snapshot, value, tuple(warnings))
        finally:
            self._rollback_actions.clear()
            if self.on_complete is not None:
                self.on_complete()

    # ------------------------------------------------------------------
    def _post_check(self, operation: str) -> list[str]:
        if self.post_check is None:
            return []
        try:
            warnings = list(self.post_check())
        except Exception as exc:  # noqa: BLE001 - post-checks never fail a completed op
            warnings = [f"post-check could not run: {exc}"]
        for warning in warnings:
            self.logger.warning("Post-operation check.", operation=operation, detail=warning)
        return warnings

    def _rollback(self, snapshot: Snapshot) -> tuple[list[StepOutcome], bool]:
        steps: list[StepOutcome] = []
        succeeded = True

        for action in reversed(self._rollback_actions):
            outcome = _attempt(f"rollback: {action.description}", action.undo)
            steps.append(outcome)
            if not outcome.ok:
                succeeded = False
                self.logger.error(
                    "Rollback step failed.", step=action.description, error=outcome.error
                )

        restore = _attempt(
            "restore files from snapshot", lambda: self.snapshots.restore_files(snapshot)
        )
        steps.append(restore)
        if not restore.ok:
            succeeded = False
            self.logger.critical(
                "Failed to restore files from snapshot.",
                snapshot=snapshot.id,
                path=str(snapshot.path),
                error=restore.error,
            )

        for outcome in self._cleanup():
            steps.append(outcome)
            if not outcome.ok:
                self.logger.warning(
                    "Cleanup step failed.", step=outcome.description, error=outcome.error
                )
        return steps, succeeded

    def _cleanup(self) -> list[StepOutcome]:
        outcomes: list[StepOutcome] = []
        stale: list[str] = []
        for status, label in (
            ("created", None),
            ("restarting", None),
            ("exited", self.project_label),
        ):
            try:
                stale.extend(self.runtime.containers_with_status(status, label=label))
            except DockerError as exc:
                outcomes.append(StepOutcome(f"list {status} containers", False, str(exc)))
        unique = list(dict.fromkeys(stale))
        if unique:
            outcomes.append(
                _attempt(
                    f"remove containers: {', '.join(unique)}",
                    lambda: self.runtime.remove_containers(unique),
                )
            )
        outcomes.append(_attempt("prune dangling images", self.runtime.prune_dangling_images))
        return outcomes


def _attempt(description: str, step: Callable[[], object]) -> StepOutcome:
    try:
        step()
    except Exception as exc:  # noqa: BLE001 - every step outcome is recorded
        return StepOutcome(description, False, str(exc))
    return StepOutcome(description, True)


__all__ = [
    "GuardedOperationError",
    "GuardedResult",
    "RollbackAction",
    "StepOutcome",
    "TransactionManager",
]
