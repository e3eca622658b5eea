"""Docker CLI provider for container, volume and network inspection."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from ..logging import StructuredLogger

_FIELD_SEPARATOR = "\t"


class DockerError(RuntimeError):
    """Raised when Docker commands fail or the runtime is unreachable."""


@dataclass(slots=True, frozen=True)
class ContainerInfo:
    """A container as reported by ``docker ps``."""

    name: str
    image: str
    status: str

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is up."""
        lowered = self.status.lower()
        return lowered.startswith("up") or lowered == "running"

    @property
    def restarting(self) -> bool:
        """Return ``True`` when the container is in a restart loop."""
        return "restart" in self.status.lower()

    @property
    def image_tag(self) -> str | None:
        """Return the tag portion of the image reference, if any."""
        reference = self.image.split("@", 1)[0]
        last_segment = reference.rsplit("/", 1)[-1]
        if ":" not in last_segment:
            return None
        return last_segment.rsplit(":", 1)[1] or None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "image": self.image, "status": self.status}


@dataclass(slots=True, frozen=True)
class VolumeInfo:
    """A named volume and its creation time (``None`` when unparseable)."""

    name: str
    created_at: datetime | None
    raw_created_at: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "raw_created_at": self.raw_created_at,
        }


def parse_docker_timestamp(raw: str) -> datetime | None:
    """Parse the ``CreatedAt`` value Docker prints for volumes."""
    text = raw.strip()
    if not text:
        return None
    # "2024-01-15T10:20:30Z" and "2024-01-15T10:20:30.123456789+01:00" forms.
    text = text.replace("Z", "+00:00")
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        # "2024-01-15 10:20:30 +0000 UTC" as printed by older engines.
        match = re.match(r"^(\d{4}-\d{2}-\d{2}) (\d{2}:\d{2}:\d{2})(?:\.\d+)? ([+-]\d{4})", text)
        if match is None:
            return None
        try:
            parsed = datetime.strptime(
                f"{match.group(1)} {match.group(2)} {match.group(3)}",
                "%Y-%m-%d %H:%M:%S %z",
            )
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class DockerProvider:
    """Thin wrapper around the ``docker`` CLI."""

    logger: StructuredLogger
    docker_bin: str = "docker"
    container_prefix: str = "milou-"
    project_label: str = "milou"
    timeout: float = 120.0

    def list_containers(self) -> list[ContainerInfo]:
        """Return all containers (running or not) carrying the name prefix."""
        result = self._docker(
            [
                "ps",
                "-a",
                "--filter",
                f"name={self.container_prefix}",
                "--format",
                "{{.Names}}\t{{.Image}}\t{{.Status}}",
            ],
            error_prefix="docker ps",
        )
        containers: list[ContainerInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split(_FIELD_SEPARATOR)
            if len(parts) < 3 or not parts[0].startswith(self.container_prefix):
                continue
            containers.append(ContainerInfo(name=parts[0], image=parts[1], status=parts[2]))
        return containers

    def list_volumes(self, patterns: Sequence[str]) -> list[VolumeInfo]:
        """Return volumes whose name matches any of *patterns* with creation times."""
        result = self._docker(
            ["volume", "ls", "--format", "{{.Name}}"],
            error_prefix="docker volume ls",
        )
        matchers = [re.compile(pattern) for pattern in patterns]
        names = [
            line.strip()
            for line in result.stdout.splitlines()
            if line.strip() and any(matcher.search(line) for matcher in matchers)
        ]
        if not names:
            return []
        inspected = self._docker(
            ["volume", "inspect", "--format", "{{.Name}}\t{{.CreatedAt}}", *names],
            error_prefix="docker volume inspect",
            check=False,
        )
        created: dict[str, str] = {}
        for line in inspected.stdout.splitlines():
            name, _, raw = line.partition(_FIELD_SEPARATOR)
            created[name.strip()] = raw.strip()
        return [
            VolumeInfo(
                name=name,
                created_at=parse_docker_timestamp(created.get(name, "")),
                raw_created_at=created.get(name, ""),
            )
            for name in names
        ]

    def list_networks(self) -> list[str]:
        """Return network names associated with the project."""
        result = self._docker(
            ["network", "ls", "--filter", f"name={self.project_label}", "--format", "{{.Name}}"],
            error_prefix="docker network ls",
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_reachable(self) -> bool:
        """Return ``True`` when the Docker daemon answers ``docker info``."""
        try:
            result = self._docker(["info"], error_prefix="docker info", check=False)
        except DockerError:
            return False
        return result.returncode == 0

    def pull(self, image: str) -> subprocess.CompletedProcess[str]:
        """Pull *image* from its registry."""
        self.logger.info("Pulling image.", image=image)
        return self._docker(["pull", image], error_prefix=f"docker pull {image}")

    def containers_with_status(self, status: str, *, label: str | None = None) -> list[str]:
        """Return container names in *status*, scoped by prefix or *label*."""
        args = ["ps", "-a", "--filter", f"status={status}"]
        if label:
            args.extend(["--filter", f"label={label}"])
        else:
            args.extend(["--filter", f"name={self.container_prefix}"])
        args.extend(["--format", "{{.Names}}"])
        result = self._docker(args, error_prefix="docker ps", check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def remove_containers(self, names: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Force-remove the named containers."""
        return self._docker(["rm", "-f", *names], error_prefix="docker rm")

    def prune_dangling_images(self) -> subprocess.CompletedProcess[str]:
        """Remove dangling images."""
        return self._docker(["image", "prune", "-f"], error_prefix="docker image prune")

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.docker_bin, *args],
            check=check,
            error_prefix=error_prefix,
            timeout=self.timeout,
        )


def run_command(
    args: Sequence[str],
    *,
    check: bool,
    error_prefix: str,
    timeout: float | None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and translate process failures into :class:`DockerError`."""
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise DockerError(f"{args[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise DockerError(f"{error_prefix} timed out after {timeout}s") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise DockerError(f"{error_prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = [
    "ContainerInfo",
    "DockerError",
    "DockerProvider",
    "VolumeInfo",
    "parse_docker_timestamp",
    "run_command",
]
