"""Tests for the advisory lock manager."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from dnactl.locking import LockManager, LockTimeoutError


def test_instance_lock_writes_metadata(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # The file stays behind but the lock is released.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_held_instance_lock_times_out(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError, match="alpha.lock"):
            with manager.instance_lock("alpha", timeout=0.1):
                pass


def test_different_instances_do_not_contend(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with manager.instance_lock("beta", timeout=0.1) as handle:
            assert handle.path.name == "beta.lock"


def test_mutate_instances_takes_global_then_sorted_instance_locks(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["gamma", "alpha", "alpha"]) as bundle:
        names = [handle.path.name for handle in bundle.handles]
        assert names == ["dnactl.lock", "alpha.lock", "gamma.lock"]
        assert bundle.wait_ms >= 0


def test_global_lock_blocks_second_mutation(tmp_path: Path) -> None:
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["alpha"]):
        with pytest.raises(LockTimeoutError):
            with manager.mutate_instances(["beta"], timeout=0.1):
                pass
