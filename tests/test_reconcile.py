"""Tests for local/remote state reconciliation."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeSession, RecordingReporter

from dbxctl.errors import DbxError, ErrorKind
from dbxctl.provision.reconcile import ReconcileAction, Reconciler
from dbxctl.state.schema import InstanceRecord
from dbxctl.state.store import StateStore, local_store, remote_store

RecordFactory = Callable[..., InstanceRecord]


@pytest.fixture
def local(tmp_path: Path) -> StateStore:
    """Return an empty local store."""
    return local_store(tmp_path / ".dbx")


@pytest.fixture
def remote(session: FakeSession) -> StateStore:
    """Return an empty remote store backed by the fake session."""
    return remote_store(session, "/var/lib/dbx/state.json")


def _reconciler(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    running: bool | Exception = True,
) -> Reconciler:
    def is_running(name: str) -> bool:
        if isinstance(running, Exception):
            raise running
        return running

    return Reconciler(local, remote, is_running, reporter)


def test_absent_everywhere(
    local: StateStore, remote: StateStore, reporter: RecordingReporter
) -> None:
    """No record in either copy means nothing to reconcile."""
    result = _reconciler(local, remote, reporter).reconcile("shop/dev")

    assert result.action is ReconcileAction.NONE
    assert result.record is None
    assert result.changed is False


def test_remote_only_is_adopted(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """A record that exists only on the host is copied locally."""
    remote.set("shop/dev", make_record())

    result = _reconciler(local, remote, reporter).reconcile("shop/dev")

    assert result.action is ReconcileAction.ADOPTED_REMOTE
    assert local.get("shop/dev") == make_record()


def test_local_only_with_running_container_restores_remote(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """A local record backed by a running container is written back to the host."""
    local.set("shop/dev", make_record())

    result = _reconciler(local, remote, reporter, running=True).reconcile("shop/dev")

    assert result.action is ReconcileAction.RESTORED_REMOTE
    assert remote.get("shop/dev") == make_record()


def test_local_only_without_container_is_stale(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """A local record whose container is gone is removed with a warning."""
    local.set("shop/dev", make_record())

    result = _reconciler(local, remote, reporter, running=False).reconcile("shop/dev")

    assert result.action is ReconcileAction.REMOVED_STALE_LOCAL
    assert result.record is None
    assert local.get("shop/dev") is None
    assert any("stale" in message for message in reporter.of("warning"))


def test_unreadable_daemon_never_deletes_state(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """A failing running-container check propagates and leaves the local record in place."""
    local.set("shop/dev", make_record())
    error = DbxError(ErrorKind.COMMAND, "Cannot determine whether container is running.")

    with pytest.raises(DbxError):
        _reconciler(local, remote, reporter, running=error).reconcile("shop/dev")

    assert local.get("shop/dev") == make_record()


def test_conflict_prefers_remote(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """Disagreeing identities are resolved in favour of the host copy."""
    local.set("shop/dev", make_record(port=27018))
    remote.set("shop/dev", make_record(port=27020))

    result = _reconciler(local, remote, reporter).reconcile("shop/dev")

    assert result.action is ReconcileAction.RESOLVED_CONFLICT
    assert local.get("shop/dev") == make_record(port=27020)


def test_agreeing_copies_are_left_alone(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """Matching identities need no writes, even if secondary fields differ."""
    local.set("shop/dev", make_record())
    remote.set("shop/dev", make_record(last_backup="2026-02-01T00:00:00+00:00"))

    result = _reconciler(local, remote, reporter).reconcile("shop/dev")

    assert result.action is ReconcileAction.NONE
    assert result.record == make_record()


def test_sync_mirrors_remote_for_project(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """Sync adds, updates and removes local records of one project only."""
    local.set("shop/dev", make_record())
    local.set("shop/old", make_record("old", 27030))
    local.set("other/dev", make_record(port=27040))
    remote.set("shop/dev", make_record(last_backup="2026-02-01T00:00:00+00:00"))
    remote.set("shop/prod", make_record("prod", 27019))

    report = _reconciler(local, remote, reporter).sync("shop")

    assert report.added == ["shop/prod"]
    assert report.updated == ["shop/dev"]
    assert report.removed == ["shop/old"]
    assert local.keys() == ["other/dev", "shop/dev", "shop/prod"]
    assert local.get("shop/dev") == make_record(last_backup="2026-02-01T00:00:00+00:00")


def test_sync_without_changes_does_not_write(
    local: StateStore,
    remote: StateStore,
    reporter: RecordingReporter,
    make_record: RecordFactory,
    tmp_path: Path,
) -> None:
    """An up-to-date local copy is not rewritten."""
    local.set("shop/dev", make_record())
    remote.set("shop/dev", make_record())
    path = tmp_path / ".dbx" / "state.json"
    before = path.stat().st_mtime_ns

    report = _reconciler(local, remote, reporter).sync("shop")

    assert report.changed is False
    assert report.to_dict() == {"added": [], "removed": [], "updated": []}
    assert path.stat().st_mtime_ns == before
