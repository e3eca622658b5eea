"""Snapshot and rollback protection for mutating operations."""
from __future__ import annotations

from .snapshots import Snapshot, SnapshotError, SnapshotStore, sanitize_operation
from .transaction import (
    GuardedOperationError,
    GuardedResult,
    RollbackAction,
    StepOutcome,
    TransactionManager,
)

__all__ = [
    "GuardedOperationError",
    "GuardedResult",
    "RollbackAction",
    "Snapshot",
    "SnapshotError",
    "SnapshotStore",
    "StepOutcome",
    "TransactionManager",
    "sanitize_operation",
]
