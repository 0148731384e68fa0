"""Tests for the directory-backed instance registry."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from dnactl.models import Instance
from dnactl.state import CorruptInstanceError, InstanceNotFoundError, InstanceRegistry


def test_empty_and_missing_roots_list_nothing(tmp_path: Path) -> None:
    assert InstanceRegistry(tmp_path / "absent").list() == []
    assert InstanceRegistry(tmp_path).list() == []


def test_list_is_sorted_and_skips_hidden_and_files(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("gamma", 5002)
    make_instance("alpha", 5000)
    (registry.root / ".alpha-rollback-x").mkdir()
    (registry.root / "notes.txt").write_text("ignored", encoding="utf-8")

    assert registry.list() == ["alpha", "gamma"]


def test_round_trip_through_config_json(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    created = make_instance("alpha", 5000)

    loaded = registry.require("alpha")

    assert loaded == created
    payload = json.loads(created.paths.config_file.read_text(encoding="utf-8"))
    assert payload["port"] == 5000
    assert payload["database"]["name"] == "alpha_db"
    assert payload["database"]["url"].endswith("?pgbouncer=true")


def test_absent_and_corrupt_are_distinct(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    instance = make_instance("broken", 5000)
    instance.paths.config_file.write_text("{not json", encoding="utf-8")

    assert registry.get("missing") is None
    assert registry.get("broken") is None
    assert registry.exists("broken") is True
    with pytest.raises(InstanceNotFoundError):
        registry.require("missing")
    with pytest.raises(CorruptInstanceError):
        registry.require("broken")


def test_config_without_port_is_corrupt(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    instance = make_instance("alpha", 5000)
    payload = json.loads(instance.paths.config_file.read_text(encoding="utf-8"))
    del payload["port"]
    instance.paths.config_file.write_text(json.dumps(payload), encoding="utf-8")

    (entry,) = registry.entries()
    assert entry.name == "alpha"
    assert entry.corrupt is True


def test_claimed_ports_skip_corrupt_and_excluded(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    make_instance("alpha", 5000)
    make_instance("beta", 5001)
    broken = make_instance("broken", 5002)
    broken.paths.config_file.unlink()

    assert registry.claimed_ports() == {5000: "alpha", 5001: "beta"}
    assert registry.claimed_ports(exclude="alpha") == {5001: "beta"}


def test_update_port_rewrites_only_port(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    original = make_instance("alpha", 5000)

    updated = registry.update_port("alpha", 5005)

    assert updated.port == 5005
    assert updated.database == original.database
    assert updated.created_at == original.created_at


def test_update_port_on_missing_instance(registry: InstanceRegistry) -> None:
    with pytest.raises(InstanceNotFoundError):
        registry.update_port("ghost", 5000)


def test_database_file_is_private(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    instance = make_instance("alpha", 5000)

    mode = instance.paths.db_config_file.stat().st_mode & 0o777
    assert mode == 0o600
    assert registry.read_database("alpha") == instance.database


def test_camel_case_direct_port_is_accepted(
    registry: InstanceRegistry,
    make_instance: Callable[..., Instance],
) -> None:
    instance = make_instance("alpha", 5000)
    payload = instance.database.to_dict()
    payload["directPort"] = payload.pop("direct_port")
    instance.paths.db_config_file.write_text(json.dumps(payload), encoding="utf-8")

    loaded = registry.read_database("alpha")

    assert loaded is not None
    assert loaded.direct_port == 15432
