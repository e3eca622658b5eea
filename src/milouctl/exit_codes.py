"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    # Guarded operation failed but the automatic rollback restored the files.
    ROLLED_BACK = 5
    # Rollback or credential restore failed; manual intervention required.
    UNRECOVERABLE = 6
