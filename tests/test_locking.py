"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from dbxctl.errors import DbxError, ErrorKind
from dbxctl.locking import LockManager


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "locks", default_timeout=1.0)

    lock_path = tmp_path / "locks" / "shop__dev.lock"
    with manager.instance_lock("shop/dev") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("shop/dev", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "locks", default_timeout=1.0)

    with manager.instance_lock("shop/dev"):
        with pytest.raises(DbxError) as excinfo:
            with manager.instance_lock("shop/dev", timeout=0.1):
                pass

    assert excinfo.value.kind is ErrorKind.LOCK
    assert "shop__dev.lock" in excinfo.value.message


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "locks", default_timeout=1.0)

    with manager.mutate_instances(["shop/prod", "shop/dev"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "dbxctl.lock",
            "shop__dev.lock",
            "shop__prod.lock",
        ]


def test_global_lock_blocks_other_environments(tmp_path: Path) -> None:
    """Mutations of different environments still serialise on the global lock."""
    manager = LockManager(tmp_path / "locks", default_timeout=1.0)

    with manager.mutate_instances(["shop/dev"]):
        with pytest.raises(DbxError):
            with manager.mutate_instances(["shop/prod"], timeout=0.1):
                pass
