"""Provider interfaces for milouctl."""
from __future__ import annotations

from .base import ComposeStatus, ContainerRuntime, VersionSource
from .compose import ComposeProvider, ServiceState
from .docker import ContainerInfo, DockerError, DockerProvider, VolumeInfo
from .registry import RegistryClient, RegistryError

__all__ = [
    "ComposeProvider",
    "ComposeStatus",
    "ContainerInfo",
    "ContainerRuntime",
    "DockerError",
    "DockerProvider",
    "RegistryClient",
    "RegistryError",
    "ServiceState",
    "VersionSource",
    "VolumeInfo",
]
