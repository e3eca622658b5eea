"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from milouctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.install_dir == Path("/opt/milou")
    assert config.env_file == Path("/opt/milou/.env")
    assert config.compose_file == Path("/opt/milou/static/docker-compose.yml")
    assert config.snapshots.root == Path("/var/lib/milouctl/snapshots")
    assert config.credentials.backup_dir == Path("/var/lib/milouctl/credentials")
    assert config.services.dependencies == ("redis", "rabbitmq")
    assert config.services.critical == config.services.managed
    assert config.state.cache_ttl == 30.0
    assert "DB_PASSWORD" in config.credentials.critical_keys


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "milouctl.yml"
    cfg.write_text(
        f"install_dir: {tmp_path / 'milou'}\n"
        "state:\n"
        "  cache_ttl: 5\n"
        "services:\n"
        "  managed: [backend, frontend]\n"
        "snapshots:\n"
        "  retention: 3\n"
        "registry:\n"
        "  token: ghp_secret\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.install_dir == tmp_path / "milou"
    assert config.env_file == tmp_path / "milou" / ".env"
    assert config.state.cache_ttl == 5.0
    assert config.services.managed == ("backend", "frontend")
    assert config.services.critical == ("database", "backend", "frontend", "engine", "nginx")
    assert config.snapshots.retention == 3
    assert config.registry.token == "ghp_secret"
    assert config.to_dict()["registry"]["token"] == "***"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "milouctl.yml"
    cfg.write_text("state:\n  cache_ttl: 5\n", encoding="utf-8")
    env = {
        "MILOUCTL_CONFIG_FILE": str(cfg),
        "MILOUCTL_STATE__CACHE_TTL": "12",
        "MILOUCTL_STATE_DIR": str(tmp_path / "state"),
        "MILOUCTL_SERVICES__DEPENDENCIES": "redis",
        "MILOUCTL_DOCKER__SETTLE_DELAY": "0",
        "UNRELATED": "ignored",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.state.cache_ttl == 12.0
    assert config.state_dir == tmp_path / "state"
    assert config.snapshots.root == tmp_path / "state" / "snapshots"
    assert config.services.dependencies == ("redis",)
    assert config.docker.settle_delay == 0.0


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are the last layer."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"MILOUCTL_STATE__CACHE_TTL": "12"},
        overrides={"state": {"cache_ttl": 1}, "snapshots": {"root": str(tmp_path / "snaps")}},
    )

    assert config.state.cache_ttl == 1.0
    assert config.snapshots.root == tmp_path / "snaps"


def test_tag_key_derivation(tmp_path: Path) -> None:
    """Image tag keys are upper-cased with dashes turned into underscores."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert config.services.tag_key("backend") == "MILOU_BACKEND_TAG"
    assert config.services.tag_key("audit-worker") == "MILOU_AUDIT_WORKER_TAG"
    assert config.services.dependencies_of("nginx") == ("frontend", "backend")
    assert config.services.dependencies_of("database") == ()
    assert (
        config.registry.image_for("backend", "1.2.0") == "ghcr.io/milou-sh/milou/backend:1.2.0"
    )


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown: 1\n", "Unknown configuration keys"),
        ("state:\n  bogus: 1\n", "Unknown state configuration keys"),
        ("services:\n  managed: []\n", "services.managed"),
        ("services:\n  tag_variable: MILOU_TAG\n", "placeholder"),
        ("credentials:\n  critical_keys: []\n", "critical_keys"),
        ("snapshots:\n  retention: 0\n", "snapshots.retention"),
        ("docker:\n  health_interval: 0\n", "docker.health_interval"),
        ("- just\n- a list\n", "mapping at the top level"),
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, content: str, message: str) -> None:
    """Invalid values raise ConfigError with a pointed message."""
    cfg = tmp_path / "milouctl.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})
