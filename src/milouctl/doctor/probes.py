"""Probe registration entry point for the doctor command."""

from __future__ import annotations

import os
import shutil
import stat
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from ..credentials import CredentialSet
from ..envfile import EnvFileError
from ..state import InstallationState, describe_state, missing_required_keys, recommended_actions
from .engine import run_probe
from .models import (
    DoctorImpact,
    ProbeCategory,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
)

# Probes that run after every successful guarded operation.
POST_OPERATION_PROBES: tuple[str, ...] = (
    "files-env",
    "files-compose",
    "env-daemon",
    "config-core-keys",
)


def collect_probes(context: ProbeContext | None = None) -> Sequence[ProbeDefinition]:
    """Return the set of probes that should run for the current context."""
    probes: list[ProbeDefinition] = []
    probes.extend(_env_probes())
    probes.extend(_file_probes())
    probes.extend(_config_probes())
    probes.extend(_credential_probes())
    probes.extend(_service_probes())
    probes.extend(_state_probes())
    probes.extend(_recovery_probes())
    probes.extend(_disk_probes())
    return tuple(probes)


def post_operation_warnings(context: ProbeContext) -> list[str]:
    """Run the post-operation probes and return a message per non-green result."""
    selected = [probe for probe in collect_probes(context) if probe.id in POST_OPERATION_PROBES]
    warnings: list[str] = []
    for probe in selected:
        result = run_probe(probe, context)
        if result.status is not ProbeStatus.GREEN:
            warnings.append(f"{result.id}: {result.message}")
    return warnings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    probe_id: str,
    category: ProbeCategory,
    handler: Callable[[ProbeContext], ProbeResult],
) -> ProbeDefinition:
    return ProbeDefinition(id=probe_id, category=category, run=handler)


def _command_exists(command: str) -> bool:
    path = Path(command)
    if path.is_absolute() or str(path.parent) not in {"", "."}:
        return path.exists() and os.access(path, os.X_OK)
    return shutil.which(command) is not None


def _file_mode(path: Path) -> int | None:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return None


def _green(
    probe_id: str,
    category: ProbeCategory,
    message: str,
    *,
    data: Mapping[str, Any] | None = None,
) -> ProbeResult:
    return ProbeResult(
        id=probe_id,
        category=category,
        status=ProbeStatus.GREEN,
        impact=DoctorImpact.OK,
        message=message,
        data=data,
    )


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def _env_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("env-docker", "env", _probe_env_docker),
        _make_probe("env-daemon", "env", _probe_env_daemon),
    )


def _probe_env_docker(context: ProbeContext) -> ProbeResult:
    docker_bin = context.config.docker.docker_bin
    if _command_exists(docker_bin):
        return _green("env-docker", "env", f"Binary '{docker_bin}' available.")
    return ProbeResult(
        id="env-docker",
        category="env",
        status=ProbeStatus.RED,
        impact=DoctorImpact.ENVIRONMENT,
        message=f"Required binary '{docker_bin}' not found on PATH.",
        remediation="Install Docker Engine with the compose plugin.",
    )


def _probe_env_daemon(context: ProbeContext) -> ProbeResult:
    if context.runtime.is_reachable():
        return _green("env-daemon", "env", "Docker daemon reachable.")
    return ProbeResult(
        id="env-daemon",
        category="env",
        status=ProbeStatus.RED,
        impact=DoctorImpact.ENVIRONMENT,
        message="Docker daemon is not reachable.",
        remediation="Start the Docker service and check the current user's access to it.",
    )


# ---------------------------------------------------------------------------
# File probes
# ---------------------------------------------------------------------------


def _file_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("files-env", "files", _probe_files_env),
        _make_probe("files-compose", "files", _probe_files_compose),
    )


def _probe_files_env(context: ProbeContext) -> ProbeResult:
    path = context.env.path
    mode = _file_mode(path)
    if mode is None:
        return ProbeResult(
            id="files-env",
            category="files",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Configuration file {path} is missing.",
            remediation="milouctl config regenerate",
        )
    data = {"path": str(path), "mode": f"{mode:03o}"}
    if mode & 0o077:
        return ProbeResult(
            id="files-env",
            category="files",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Configuration file {path} is readable by other users ({mode:03o}).",
            remediation=f"chmod 600 {path}",
            data=data,
            warnings=("files:env-permissions",),
        )
    return _green("files-env", "files", f"Configuration file {path} present.", data=data)


def _probe_files_compose(context: ProbeContext) -> ProbeResult:
    path = context.config.compose_file
    if path.is_file():
        return _green("files-compose", "files", f"Compose file {path} present.")
    return ProbeResult(
        id="files-compose",
        category="files",
        status=ProbeStatus.RED,
        impact=DoctorImpact.VALIDATION,
        message=f"Compose file {path} is missing.",
        remediation="milouctl snapshot restore <id>",
    )


# ---------------------------------------------------------------------------
# Config probes
# ---------------------------------------------------------------------------


def _config_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("config-core-keys", "config", _probe_config_core_keys),
    )


def _probe_config_core_keys(context: ProbeContext) -> ProbeResult:
    try:
        values = context.env.read()
    except EnvFileError as exc:
        return ProbeResult(
            id="config-core-keys",
            category="config",
            status=ProbeStatus.RED,
            impact=DoctorImpact.ENVIRONMENT,
            message=str(exc),
        )
    missing = missing_required_keys(values, context.config.state.core_keys)
    if missing:
        return ProbeResult(
            id="config-core-keys",
            category="config",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=f"Core configuration keys missing: {', '.join(missing)}.",
            data={"missing": missing},
        )
    return _green("config-core-keys", "config", "Core configuration keys present.")


# ---------------------------------------------------------------------------
# Credential probes
# ---------------------------------------------------------------------------


def _credential_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("credentials-continuity", "credentials", _probe_credentials_continuity),
        _make_probe("credentials-strength", "credentials", _probe_credentials_strength),
    )


def _probe_credentials_continuity(context: ProbeContext) -> ProbeResult:
    guard = context.credentials
    backups = guard.list_backups()
    if not backups:
        return ProbeResult(
            id="credentials-continuity",
            category="credentials",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="No credential backups found.",
            warnings=("credentials:no-backup",),
        )
    missing = guard.verify_against_latest()
    if missing:
        return ProbeResult(
            id="credentials-continuity",
            category="credentials",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=(
                "Critical credentials present in the latest backup are missing now: "
                f"{', '.join(missing)}."
            ),
            remediation=f"Compare {context.env.path} with {backups[0]}.",
            data={"missing": missing, "backup": str(backups[0])},
        )
    return _green(
        "credentials-continuity",
        "credentials",
        "Critical credentials match the latest backup.",
        data={"backup": str(backups[0])},
    )


def _probe_credentials_strength(context: ProbeContext) -> ProbeResult:
    current = CredentialSet.from_env(context.env, context.credentials.critical_keys)
    weak = current.weak_keys()
    if weak:
        return ProbeResult(
            id="credentials-strength",
            category="credentials",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Short credentials: {', '.join(weak)}.",
            remediation="milouctl config regenerate --rotate <KEY>",
            warnings=tuple(f"credentials:weak:{key}" for key in weak),
        )
    return _green("credentials-strength", "credentials", "Critical credentials look strong.")


# ---------------------------------------------------------------------------
# Service probes
# ---------------------------------------------------------------------------


def _service_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("services-health", "services", _probe_services_health),
    )


def _probe_services_health(context: ProbeContext) -> ProbeResult:
    report = context.health.check(context.config.services.critical)
    data = report.to_dict()
    if not report.available:
        return ProbeResult(
            id="services-health",
            category="services",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message="Service status unavailable from docker compose.",
            data=data,
        )
    if not report.all_healthy:
        return ProbeResult(
            id="services-health",
            category="services",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"{report.summary()}; unhealthy: {', '.join(report.unhealthy)}.",
            remediation="milouctl start",
            data=data,
        )
    return _green("services-health", "services", report.summary(), data=data)


# ---------------------------------------------------------------------------
# State probes
# ---------------------------------------------------------------------------


def _state_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("state-classification", "state", _probe_state_classification),
    )


def _probe_state_classification(context: ProbeContext) -> ProbeResult:
    state = context.classifier.classify(force_refresh=True)
    message = f"Installation is {state.value}: {describe_state(state)}"
    actions = recommended_actions(state)
    data = {"state": state.value, "recommended": actions}
    if state in {InstallationState.BROKEN, InstallationState.PARTIAL_FAILED}:
        return ProbeResult(
            id="state-classification",
            category="state",
            status=ProbeStatus.RED,
            impact=DoctorImpact.VALIDATION,
            message=message,
            remediation=actions[0] if actions else None,
            data=data,
        )
    if state is InstallationState.UNKNOWN:
        return ProbeResult(
            id="state-classification",
            category="state",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=message,
            data=data,
        )
    return _green("state-classification", "state", message, data=data)


# ---------------------------------------------------------------------------
# Recovery probes
# ---------------------------------------------------------------------------


def _recovery_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("recovery-snapshots", "recovery", _probe_recovery_snapshots),
    )


def _probe_recovery_snapshots(context: ProbeContext) -> ProbeResult:
    store = context.snapshots
    snapshots = store.list_snapshots()
    if not snapshots:
        return ProbeResult(
            id="recovery-snapshots",
            category="recovery",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"No snapshots under {store.root}.",
            warnings=("recovery:no-snapshots",),
        )
    latest = snapshots[-1]
    return _green(
        "recovery-snapshots",
        "recovery",
        f"{len(snapshots)} snapshot(s); latest {latest.id}.",
        data={"count": len(snapshots), "latest": latest.id, "root": str(store.root)},
    )


# ---------------------------------------------------------------------------
# Disk probes
# ---------------------------------------------------------------------------


def _disk_probes() -> Sequence[ProbeDefinition]:
    return (
        _make_probe("disk-usage", "disk", _probe_disk_usage),
    )


def _probe_disk_usage(context: ProbeContext) -> ProbeResult:
    path = context.config.install_dir
    try:
        usage = shutil.disk_usage(path)
    except FileNotFoundError:
        return ProbeResult(
            id="disk-usage",
            category="disk",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message=f"Install directory {path} does not exist; cannot determine disk usage.",
        )

    total = usage.total or 1
    percent_free = (usage.free / total) * 100
    data = {
        "total_bytes": total,
        "free_bytes": usage.free,
        "percent_free": round(percent_free, 2),
        "path": str(path),
    }
    if percent_free < 5:
        return ProbeResult(
            id="disk-usage",
            category="disk",
            status=ProbeStatus.RED,
            impact=DoctorImpact.PROVIDER,
            message="Disk free space below 5%; image pulls will fail.",
            data=data,
        )
    if percent_free < 10:
        return ProbeResult(
            id="disk-usage",
            category="disk",
            status=ProbeStatus.YELLOW,
            impact=DoctorImpact.OK,
            message="Disk free space below 10%.",
            data=data,
            warnings=("disk:low-free",),
        )
    return _green("disk-usage", "disk", "Disk free space within acceptable limits.", data=data)
