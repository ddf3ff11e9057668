"""Tests for instance teardown."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeSession, RecordingReporter, fail, ok

from dbxctl.errors import DbxError, ErrorKind
from dbxctl.provision import Destroyer
from dbxctl.providers.docker import DockerProvider
from dbxctl.state.schema import InstanceRecord
from dbxctl.state.store import StateStore, local_store, remote_store

RecordFactory = Callable[..., InstanceRecord]
REMOTE_PATH = "/var/lib/dbx/state.json"


@pytest.fixture
def stores(
    tmp_path: Path, session: FakeSession, make_record: RecordFactory
) -> tuple[StateStore, StateStore]:
    """Return (local, remote) stores that both know shop/dev."""
    local = local_store(tmp_path / ".dbx")
    remote = remote_store(session, REMOTE_PATH)
    local.set("shop/dev", make_record())
    remote.set("shop/dev", make_record())
    return local, remote


def _destroyer(
    session: FakeSession,
    stores: tuple[StateStore, StateStore],
    reporter: RecordingReporter,
) -> Destroyer:
    local, remote = stores
    docker = DockerProvider(session)  # type: ignore[arg-type]
    return Destroyer(session, docker, remote, local, reporter)  # type: ignore[arg-type]


def test_destroy_removes_everything(
    session: FakeSession,
    stores: tuple[StateStore, StateStore],
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """Container, volume and both state records are removed."""
    report = _destroyer(session, stores, reporter).destroy("shop/dev", make_record())

    assert report.container_removed is True
    assert report.volume_removed is True
    assert report.remote_state_removed is True
    assert report.local_state_removed is True
    assert report.backups_removed == 0
    assert session.ran(r"^docker rm -f dbx_shop_dev$")
    assert session.ran(r"^docker volume rm dbx_shop_dev$")
    assert session.ran(r"find") == []
    local, remote = stores
    assert local.read() == {}
    assert remote.read() == {}


def test_destroy_tolerates_missing_resources(
    session: FakeSession,
    stores: tuple[StateStore, StateStore],
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """Already-removed containers and volumes produce warnings, not errors."""
    session.on(r"docker rm -f", fail("Error: No such container: dbx_shop_dev"))
    session.on(r"docker volume rm", fail("Error: No such volume: dbx_shop_dev"))

    report = _destroyer(session, stores, reporter).destroy("shop/dev", make_record())

    assert report.container_removed is False
    assert report.volume_removed is False
    assert len(report.warnings) == 2
    assert report.local_state_removed is True


def test_destroy_purges_backups(
    session: FakeSession,
    stores: tuple[StateStore, StateStore],
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """--purge deletes only this environment's archives."""
    session.on(
        r"-print -delete",
        ok("/srv/b/shop_dev-2026-01-01T00-00.dump\n/srv/b/shop_dev-2026-01-02T00-00.dump"),
    )

    report = _destroyer(session, stores, reporter).destroy(
        "shop/dev", make_record(), purge_backups=True, backup_dir="/srv/b"
    )

    assert report.backups_removed == 2
    assert "-name 'shop_dev-*.dump'" in session.ran(r"-delete")[0]


def test_destroy_continues_after_failure_and_raises_first(
    session: FakeSession,
    stores: tuple[StateStore, StateStore],
    reporter: RecordingReporter,
    make_record: RecordFactory,
) -> None:
    """A failing step does not stop later steps; local state is always cleared."""
    session.on(r"docker volume rm", fail("Error: volume is in use - [abc]"))

    with pytest.raises(DbxError) as excinfo:
        _destroyer(session, stores, reporter).destroy("shop/dev", make_record())

    assert excinfo.value.kind is ErrorKind.DESTROY
    assert excinfo.value.step == "volume"
    local, remote = stores
    assert local.read() == {}
    assert remote.read() == {}
