"""Configuration loader for milouctl.

Values are merged from several layers, later layers winning:

1. Built-in defaults.
2. ``/etc/milouctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MILOUCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MILOUCTL_STATE__CACHE_TTL=10
    export MILOUCTL_REGISTRY__TOKEN=ghp_xxx

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load milouctl configuration. Install with "
        "`pip install milouctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "MILOUCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_CRITICAL_KEYS: tuple[str, ...] = (
    "POSTGRES_PASSWORD",
    "DB_PASSWORD",
    "JWT_SECRET",
    "SESSION_SECRET",
    "ENCRYPTION_KEY",
    "ADMIN_PASSWORD",
    "REDIS_PASSWORD",
    "RABBITMQ_PASSWORD",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class StateConfig:
    """Tunables for the installation state classifier."""

    cache_ttl: float = 30.0
    volume_data_age_days: float = 1.0
    volume_patterns: tuple[str, ...] = ("milou", "static")
    required_keys: tuple[str, ...] = ("DOMAIN", "ADMIN_EMAIL", "POSTGRES_PASSWORD", "JWT_SECRET")
    core_keys: tuple[str, ...] = ("DOMAIN", "ADMIN_EMAIL", "POSTGRES_USER", "POSTGRES_PASSWORD")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cache_ttl": self.cache_ttl,
            "volume_data_age_days": self.volume_data_age_days,
            "volume_patterns": list(self.volume_patterns),
            "required_keys": list(self.required_keys),
            "core_keys": list(self.core_keys),
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Managed service topology."""

    managed: tuple[str, ...]
    critical: tuple[str, ...]
    dependencies: tuple[str, ...]
    graph: Mapping[str, tuple[str, ...]]
    container_prefix: str = "milou-"
    project_label: str = "milou"
    tag_variable: str = "MILOU_{service}_TAG"

    def tag_key(self, service: str) -> str:
        """Return the env-file key holding the image tag for *service*."""
        return self.tag_variable.format(service=service.upper().replace("-", "_"))

    def dependencies_of(self, service: str) -> tuple[str, ...]:
        """Return the declared prerequisites of *service*."""
        return tuple(self.graph.get(service, ()))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "managed": list(self.managed),
            "critical": list(self.critical),
            "dependencies": list(self.dependencies),
            "graph": {name: list(deps) for name, deps in self.graph.items()},
            "container_prefix": self.container_prefix,
            "project_label": self.project_label,
            "tag_variable": self.tag_variable,
        }


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot store location and retention."""

    root: Path
    retention: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "retention": self.retention}


@dataclass(frozen=True)
class CredentialsConfig:
    """Credential backup location, retention and critical key set."""

    backup_dir: Path
    retention: int = 10
    critical_keys: tuple[str, ...] = DEFAULT_CRITICAL_KEYS

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup_dir": str(self.backup_dir),
            "retention": self.retention,
            "critical_keys": list(self.critical_keys),
        }


@dataclass(frozen=True)
class RegistryConfig:
    """Container registry lookup settings."""

    api_base: str = "https://api.github.com"
    organization: str = "milou-sh"
    repository: str = "milou"
    image_prefix: str = "ghcr.io/milou-sh/milou"
    token: str | None = None
    timeout: float = 10.0
    retries: int = 2
    backoff: float = 1.0

    def image_for(self, service: str, version: str) -> str:
        """Return the full image reference for *service* at *version*."""
        return f"{self.image_prefix}/{service}:{version}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (token redacted)."""
        return {
            "api_base": self.api_base,
            "organization": self.organization,
            "repository": self.repository,
            "image_prefix": self.image_prefix,
            "token": "***" if self.token else None,
            "timeout": self.timeout,
            "retries": self.retries,
            "backoff": self.backoff,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Docker runtime integration values."""

    docker_bin: str = "docker"
    command_timeout: float = 120.0
    settle_delay: float = 5.0
    health_timeout: float = 120.0
    health_interval: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "command_timeout": self.command_timeout,
            "settle_delay": self.settle_delay,
            "health_timeout": self.health_timeout,
            "health_interval": self.health_interval,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for milouctl."""

    config_file: Path
    install_dir: Path
    env_file: Path
    compose_file: Path
    state_dir: Path
    logs_dir: Path
    state: StateConfig
    services: ServicesConfig
    snapshots: SnapshotConfig
    credentials: CredentialsConfig
    registry: RegistryConfig
    docker: DockerConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "env_file": str(self.env_file),
            "compose_file": str(self.compose_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "state": self.state.to_dict(),
            "services": self.services.to_dict(),
            "snapshots": self.snapshots.to_dict(),
            "credentials": self.credentials.to_dict(),
            "registry": self.registry.to_dict(),
            "docker": self.docker.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/milouctl/config.yml",
    "install_dir": "/opt/milou",
    "env_file": None,  # derived from install_dir when absent
    "compose_file": None,  # derived from install_dir when absent
    "state_dir": "/var/lib/milouctl",
    "logs_dir": "/var/log/milouctl",
    "state": {
        "cache_ttl": 30.0,
        "volume_data_age_days": 1.0,
        "volume_patterns": ["milou", "static"],
        "required_keys": ["DOMAIN", "ADMIN_EMAIL", "POSTGRES_PASSWORD", "JWT_SECRET"],
        "core_keys": ["DOMAIN", "ADMIN_EMAIL", "POSTGRES_USER", "POSTGRES_PASSWORD"],
    },
    "services": {
        "managed": ["database", "backend", "frontend", "engine", "nginx"],
        "critical": ["database", "backend", "frontend", "engine", "nginx"],
        "dependencies": ["redis", "rabbitmq"],
        "graph": {
            "backend": ["database", "redis", "rabbitmq"],
            "engine": ["database", "redis", "rabbitmq"],
            "frontend": ["backend"],
            "nginx": ["frontend", "backend"],
        },
        "container_prefix": "milou-",
        "project_label": "milou",
        "tag_variable": "MILOU_{service}_TAG",
    },
    "snapshots": {
        "root": None,  # derived from state_dir when absent
        "retention": 10,
    },
    "credentials": {
        "backup_dir": None,  # derived from state_dir when absent
        "retention": 10,
        "critical_keys": list(DEFAULT_CRITICAL_KEYS),
    },
    "registry": {
        "api_base": "https://api.github.com",
        "organization": "milou-sh",
        "repository": "milou",
        "image_prefix": "ghcr.io/milou-sh/milou",
        "token": None,
        "timeout": 10.0,
        "retries": 2,
        "backoff": 1.0,
    },
    "docker": {
        "docker_bin": "docker",
        "command_timeout": 120.0,
        "settle_delay": 5.0,
        "health_timeout": 120.0,
        "health_interval": 5.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(_value.keys())
    for section, _value in DEFAULTS.items()
    if isinstance(_value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    services = _as_dict(raw.get("services"), "services")
    graph = _as_dict(services.get("graph"), "services.graph")
    for name, deps in graph.items():
        _as_str_tuple(deps, f"services.graph.{name}")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))

    env_value = raw.get("env_file")
    env_file = _to_path(env_value) if env_value else install_dir / ".env"
    compose_value = raw.get("compose_file")
    compose_file = (
        _to_path(compose_value) if compose_value else install_dir / "static" / "docker-compose.yml"
    )

    state_mapping = _as_dict(raw.get("state"), "state")
    defaults_state = StateConfig()
    state = StateConfig(
        cache_ttl=_expect_non_negative_float(
            state_mapping.get("cache_ttl"), "state.cache_ttl", default=defaults_state.cache_ttl
        ),
        volume_data_age_days=_expect_non_negative_float(
            state_mapping.get("volume_data_age_days"),
            "state.volume_data_age_days",
            default=defaults_state.volume_data_age_days,
        ),
        volume_patterns=_as_str_tuple(
            state_mapping.get("volume_patterns", defaults_state.volume_patterns),
            "state.volume_patterns",
        ),
        required_keys=_as_str_tuple(
            state_mapping.get("required_keys", defaults_state.required_keys),
            "state.required_keys",
        ),
        core_keys=_as_str_tuple(
            state_mapping.get("core_keys", defaults_state.core_keys),
            "state.core_keys",
        ),
    )

    services_mapping = _as_dict(raw.get("services"), "services")
    managed = _as_str_tuple(services_mapping.get("managed", ()), "services.managed")
    if not managed:
        raise ConfigError("services.managed must list at least one service.")
    critical_raw = services_mapping.get("critical")
    critical = (
        _as_str_tuple(critical_raw, "services.critical") if critical_raw is not None else managed
    )
    graph_mapping = _as_dict(services_mapping.get("graph"), "services.graph")
    services = ServicesConfig(
        managed=managed,
        critical=critical,
        dependencies=_as_str_tuple(
            services_mapping.get("dependencies", ()), "services.dependencies"
        ),
        graph={
            name: _as_str_tuple(deps, f"services.graph.{name}")
            for name, deps in graph_mapping.items()
        },
        container_prefix=str(services_mapping.get("container_prefix", "milou-")),
        project_label=str(services_mapping.get("project_label", "milou")),
        tag_variable=str(services_mapping.get("tag_variable", "MILOU_{service}_TAG")),
    )
    if "{service}" not in services.tag_variable:
        raise ConfigError("services.tag_variable must contain a '{service}' placeholder.")

    snapshots_mapping = _as_dict(raw.get("snapshots"), "snapshots")
    snapshots_root_value = snapshots_mapping.get("root")
    snapshots = SnapshotConfig(
        root=_to_path(snapshots_root_value) if snapshots_root_value else state_dir / "snapshots",
        retention=_expect_positive_int(
            snapshots_mapping.get("retention"), "snapshots.retention", default=10
        ),
    )

    credentials_mapping = _as_dict(raw.get("credentials"), "credentials")
    backup_dir_value = credentials_mapping.get("backup_dir")
    critical_keys = _as_str_tuple(
        credentials_mapping.get("critical_keys", DEFAULT_CRITICAL_KEYS),
        "credentials.critical_keys",
    )
    if not critical_keys:
        raise ConfigError("credentials.critical_keys must not be empty.")
    credentials = CredentialsConfig(
        backup_dir=_to_path(backup_dir_value) if backup_dir_value else state_dir / "credentials",
        retention=_expect_positive_int(
            credentials_mapping.get("retention"), "credentials.retention", default=10
        ),
        critical_keys=critical_keys,
    )

    registry_mapping = _as_dict(raw.get("registry"), "registry")
    token_value = registry_mapping.get("token")
    registry = RegistryConfig(
        api_base=str(registry_mapping.get("api_base", RegistryConfig.api_base)).rstrip("/"),
        organization=str(registry_mapping.get("organization", RegistryConfig.organization)),
        repository=str(registry_mapping.get("repository", RegistryConfig.repository)),
        image_prefix=str(registry_mapping.get("image_prefix", RegistryConfig.image_prefix)),
        token=str(token_value) if token_value else None,
        timeout=_expect_positive_float(
            registry_mapping.get("timeout"), "registry.timeout", default=10.0
        ),
        retries=_expect_int(registry_mapping.get("retries"), "registry.retries", default=2),
        backoff=_expect_non_negative_float(
            registry_mapping.get("backoff"), "registry.backoff", default=1.0
        ),
    )
    if registry.retries < 0:
        raise ConfigError("registry.retries must be non-negative.")

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        command_timeout=_expect_positive_float(
            docker_mapping.get("command_timeout"), "docker.command_timeout", default=120.0
        ),
        settle_delay=_expect_non_negative_float(
            docker_mapping.get("settle_delay"), "docker.settle_delay", default=5.0
        ),
        health_timeout=_expect_non_negative_float(
            docker_mapping.get("health_timeout"), "docker.health_timeout", default=120.0
        ),
        health_interval=_expect_positive_float(
            docker_mapping.get("health_interval"), "docker.health_interval", default=5.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        env_file=env_file,
        compose_file=compose_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        state=state,
        services=services,
        snapshots=snapshots,
        credentials=credentials,
        registry=registry,
        docker=docker,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # Comma separated values are accepted from environment overrides.
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"Entries of {label} must be non-empty strings. Got {item!r}.")
        items.append(item.strip())
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    parsed = _expect_int(value, label, default=default)
    if parsed <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {parsed}.")
    return parsed


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CredentialsConfig",
    "DEFAULT_CRITICAL_KEYS",
    "DockerConfig",
    "RegistryConfig",
    "ServicesConfig",
    "SnapshotConfig",
    "StateConfig",
    "load_config",
]
