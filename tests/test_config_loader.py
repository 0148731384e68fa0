"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from dnactl.config import DEFAULT_ENV_PASSTHROUGH, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.template_root == Path("/opt/dna")
    assert config.instance_root == Path("/opt/dna/instances")
    assert config.templates_dir == Path("/etc/dnactl/templates")
    assert config.ports.base == 5000
    assert config.database.direct_port == 15432
    assert config.database.pooled_port == 16432
    assert config.database.pool_params == "pgbouncer=true"
    assert config.infrastructure.engine_container == "postgres"
    assert config.infrastructure.pooler_container == "pgbouncer"
    assert config.firewall.enabled is True
    assert config.env_passthrough == DEFAULT_ENV_PASSTHROUGH


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text(
        "template_root: {root}\n"
        "ports:\n"
        "  base: 6200\n"
        "infrastructure:\n"
        "  runtime_bin: docker\n"
        "  engine_ready_wait: 0\n"
        "firewall:\n"
        "  enabled: false\n"
        "env_passthrough:\n"
        "  - JWT_SECRET\n".format(root=tmp_path / "dna")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.template_root == tmp_path / "dna"
    assert config.instance_root == tmp_path / "dna" / "instances"
    assert config.ports.base == 6200
    assert config.infrastructure.runtime_bin == "docker"
    assert config.infrastructure.engine_ready_wait == 0.0
    assert config.firewall.enabled is False
    assert config.env_passthrough == ("JWT_SECRET",)


def test_explicit_instance_root_wins_over_derived(tmp_path: Path) -> None:
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text(f"instance_root: {tmp_path / 'elsewhere'}\n")

    config = load_config(config_file=cfg, env={})

    assert config.instance_root == tmp_path / "elsewhere"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text("ports:\n  base: 6200\n")
    env = {
        "DNACTL_PORTS__BASE": "6500",
        "DNACTL_FIREWALL__ENABLED": "false",
        "DNACTL_LOCK_TIMEOUT": "45",
        "DNACTL_DATABASE__HOST": "db.internal",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.ports.base == 6500
    assert config.firewall.enabled is False
    assert config.lock_timeout == 45.0
    assert config.database.host == "db.internal"


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    cfg = tmp_path / "custom.yml"
    cfg.write_text("ports:\n  base: 7100\n")

    config = load_config(env={"DNACTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.ports.base == 7100


def test_overrides_apply_last(tmp_path: Path) -> None:
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"DNACTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 3},
    )

    assert config.lock_timeout == 3.0


def test_unknown_top_level_key_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text("bogus: 1\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys: bogus"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text("database:\n  hostname: x\n")

    with pytest.raises(ConfigError, match="Unknown database configuration keys"):
        load_config(config_file=cfg, env={})


def test_base_port_outside_range_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text("ports:\n  base: 4000\n  min: 5000\n  max: 6000\n")

    with pytest.raises(ConfigError, match="ports.base"):
        load_config(config_file=cfg, env={})


def test_non_mapping_file_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "dnactl.yml"
    cfg.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_invalid_lock_timeout_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(config_file=tmp_path / "missing.yml", env={"DNACTL_LOCK_TIMEOUT": "0"})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["instance_root"] == "/opt/dna/instances"
    assert data["ports"] == {"base": 5000, "min": 1024, "max": 65535, "probe_host": "0.0.0.0"}
    assert data["env_passthrough"] == list(DEFAULT_ENV_PASSTHROUGH)
