"""Docker Compose provider for service status and lifecycle commands."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..logging import StructuredLogger
from .docker import DockerError, run_command


@dataclass(slots=True, frozen=True)
class ServiceState:
    """Runtime status of one compose service."""

    service: str
    state: str
    health: str = ""
    container: str = ""

    @property
    def running(self) -> bool:
        """Return ``True`` when the service container is running."""
        return self.state.lower() == "running"

    @property
    def healthy(self) -> bool:
        """Return ``True`` when running and not failing its health check.

        Services without a health check count as healthy once running; services
        with one must report ``healthy``.
        """
        if not self.running:
            return False
        return self.health.lower() in {"", "healthy"}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "state": self.state,
            "health": self.health,
            "container": self.container,
        }


def parse_compose_ps(output: str) -> list[ServiceState]:
    """Parse ``docker compose ps --format json`` output.

    Compose v2.21+ prints one JSON object per line; older releases print a
    single JSON array.
    """
    text = output.strip()
    if not text:
        return []
    entries: list[object]
    if text.startswith("["):
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DockerError(f"Invalid compose status output: {exc}") from exc
        entries = list(loaded) if isinstance(loaded, list) else []
    else:
        entries = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise DockerError(f"Invalid compose status output: {exc}") from exc
    states: list[ServiceState] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        service = str(entry.get("Service") or "").strip()
        if not service:
            continue
        states.append(
            ServiceState(
                service=service,
                state=str(entry.get("State") or "").strip(),
                health=str(entry.get("Health") or "").strip(),
                container=str(entry.get("Name") or "").strip(),
            )
        )
    return states


@dataclass(slots=True)
class ComposeProvider:
    """Drive ``docker compose`` against the installation's compose file."""

    logger: StructuredLogger
    compose_file: Path
    env_file: Path
    docker_bin: str = "docker"
    timeout: float = 120.0

    def service_states(self) -> list[ServiceState]:
        """Return the status of every service defined in the compose project."""
        if not self.compose_file.exists():
            raise DockerError(f"Compose file not found: {self.compose_file}")
        result = self._compose(["ps", "--all", "--format", "json"], error_prefix="compose ps")
        return parse_compose_ps(result.stdout)

    def start(self, service: str) -> subprocess.CompletedProcess[str]:
        """Start *service* (creating its container when needed)."""
        self.logger.info("Starting service.", service=service)
        return self._compose(["up", "-d", service], error_prefix=f"compose up {service}")

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Restart *service*."""
        self.logger.info("Restarting service.", service=service)
        return self._compose(["restart", service], error_prefix=f"compose restart {service}")

    def up(
        self,
        services: Sequence[str] = (),
        *,
        force_recreate: bool = False,
        no_deps: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Bring up *services* (all services when empty) in detached mode."""
        args = ["up", "-d"]
        if force_recreate:
            args.append("--force-recreate")
        if no_deps:
            args.append("--no-deps")
        args.extend(services)
        label = " ".join(services) or "all services"
        return self._compose(args, error_prefix=f"compose up {label}")

    # ------------------------------------------------------------------
    def _compose(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [
            self.docker_bin,
            "compose",
            "--env-file",
            str(self.env_file),
            "-f",
            str(self.compose_file),
            *args,
        ]
        return run_command(command, check=check, error_prefix=error_prefix, timeout=self.timeout)


__all__ = ["ComposeProvider", "ServiceState", "parse_compose_ps"]
