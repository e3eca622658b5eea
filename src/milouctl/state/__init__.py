"""Installation state detection."""
from __future__ import annotations

from .classifier import (
    CachedState,
    InstallationSignals,
    InstallationState,
    StateClassifier,
    UnsafeOperationError,
    check_operation_safety,
    classify_signals,
    describe_state,
    is_fresh,
    missing_required_keys,
    recommended_actions,
    setup_mode,
)

__all__ = [
    "CachedState",
    "InstallationSignals",
    "InstallationState",
    "StateClassifier",
    "UnsafeOperationError",
    "check_operation_safety",
    "classify_signals",
    "describe_state",
    "is_fresh",
    "missing_required_keys",
    "recommended_actions",
    "setup_mode",
]
