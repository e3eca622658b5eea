"""milouctl package bootstrap.

Exposes the version metadata shared by the CLI, snapshot metadata and
packaging machinery.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "4.0.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
