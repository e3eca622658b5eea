"""Structural interfaces for the collaborators injected into the engine.

The concrete providers in this package satisfy these protocols; tests supply
lightweight fakes instead of shelling out to Docker or calling the registry.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from typing import Protocol

from .compose import ServiceState
from .docker import ContainerInfo, VolumeInfo


class ContainerRuntime(Protocol):
    """Container runtime capabilities used by the engine."""

    def list_containers(self) -> list[ContainerInfo]:
        ...

    def list_volumes(self, patterns: Sequence[str]) -> list[VolumeInfo]:
        ...

    def list_networks(self) -> list[str]:
        ...

    def is_reachable(self) -> bool:
        ...

    def pull(self, image: str) -> subprocess.CompletedProcess[str]:
        ...

    def containers_with_status(
        self,
        status: str,
        *,
        label: str | None = None,
    ) -> list[str]:
        ...

    def remove_containers(self, names: Sequence[str]) -> subprocess.CompletedProcess[str]:
        ...

    def prune_dangling_images(self) -> subprocess.CompletedProcess[str]:
        ...


class ComposeStatus(Protocol):
    """Compose-level status and lifecycle primitives."""

    def service_states(self) -> list[ServiceState]:
        ...

    def start(self, service: str) -> subprocess.CompletedProcess[str]:
        ...

    def up(
        self,
        services: Sequence[str] = (),
        *,
        force_recreate: bool = False,
        no_deps: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        ...


class VersionSource(Protocol):
    """Registry lookups for published service versions."""

    def latest_version(self, service: str) -> str:
        ...

    def list_versions(self, service: str) -> list[str]:
        ...


__all__ = ["ComposeStatus", "ContainerRuntime", "VersionSource"]
