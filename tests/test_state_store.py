"""Tests for the state schema and the local/remote state stores."""
from __future__ import annotations

import json
import stat
from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeSession, fail

from dbxctl.errors import DbxError, ErrorKind
from dbxctl.state.schema import (
    InstanceRecord,
    instance_key,
    parse_collection,
    serialize_collection,
    split_key,
)
from dbxctl.state.store import local_store, remote_store

RecordFactory = Callable[..., InstanceRecord]


def test_serialised_form_uses_camel_case(make_record: RecordFactory) -> None:
    """State files keep the camelCase field names."""
    text = serialize_collection({"shop/dev": make_record(last_backup="2026-01-03T00:00:00+00:00")})
    document = json.loads(text)

    entry = document["instances"]["shop/dev"]
    assert entry["dbName"] == "shop_dev"
    assert entry["rootPassword"] == "RootPassw0rd!RootPassw0rd!"
    assert entry["containerName"] == "dbx_shop_dev"
    assert entry["lastBackup"] == "2026-01-03T00:00:00+00:00"
    assert text.endswith("\n")


def test_parse_round_trip(make_record: RecordFactory) -> None:
    """Serialised collections parse back to equal records."""
    collection = {"shop/dev": make_record(), "shop/prod": make_record("prod", 27019)}

    assert parse_collection(serialize_collection(collection), source="t") == collection


def test_missing_field_is_named(make_record: RecordFactory) -> None:
    """Validation errors name the missing field instead of dropping the record."""
    payload = make_record().to_dict()
    del payload["containerName"]
    text = json.dumps({"instances": {"shop/dev": payload}})

    with pytest.raises(DbxError) as excinfo:
        parse_collection(text, source="state.json")

    assert excinfo.value.kind is ErrorKind.VALIDATION
    assert '"containerName"' in excinfo.value.message
    assert excinfo.value.resource == "state.json"


@pytest.mark.parametrize(
    ("port", "fragment"),
    [("27018", "must be an integer"), (80, "between 1024 and 65535"), (True, "integer")],
)
def test_invalid_port_rejected(make_record: RecordFactory, port: object, fragment: str) -> None:
    """Ports must be integers inside the unprivileged range."""
    payload = make_record().to_dict()
    payload["port"] = port

    with pytest.raises(DbxError) as excinfo:
        parse_collection(json.dumps({"instances": {"shop/dev": payload}}), source="t")

    assert fragment in excinfo.value.message


def test_malformed_documents_rejected() -> None:
    """Invalid JSON, a missing instances map and bad keys are validation errors."""
    for text in ("{not json", "{}", '{"instances": []}', '{"instances": {"nokey": {}}}'):
        with pytest.raises(DbxError) as excinfo:
            parse_collection(text, source="t")
        assert excinfo.value.kind is ErrorKind.VALIDATION


def test_composite_keys() -> None:
    """Keys join and split on a single slash and validate both segments."""
    assert instance_key("shop", "dev") == "shop/dev"
    assert split_key("shop/dev") == ("shop", "dev")
    with pytest.raises(DbxError):
        instance_key("shop", "bad/env")
    with pytest.raises(DbxError):
        split_key("shop/dev/extra")


def test_local_store_missing_file_is_empty(tmp_path: Path) -> None:
    """A missing local state file reads as an empty collection."""
    store = local_store(tmp_path / ".dbx")

    assert store.read() == {}
    assert store.get("shop/dev") is None
    assert store.remove("shop/dev") is False


def test_local_store_writes_private_files(tmp_path: Path, make_record: RecordFactory) -> None:
    """The local state file is written atomically with owner-only permissions."""
    store = local_store(tmp_path / ".dbx")
    store.set("shop/dev", make_record())

    path = tmp_path / ".dbx" / "state.json"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert stat.S_IMODE((tmp_path / ".dbx").stat().st_mode) == 0o700
    assert [entry.name for entry in (tmp_path / ".dbx").iterdir()] == ["state.json"]
    assert store.keys() == ["shop/dev"]


def test_local_store_refuses_corrupt_file(tmp_path: Path) -> None:
    """A corrupt local file is reported and left untouched."""
    directory = tmp_path / ".dbx"
    directory.mkdir()
    (directory / "state.json").write_text("{oops", encoding="utf-8")
    store = local_store(directory)

    with pytest.raises(DbxError):
        store.read()
    assert (directory / "state.json").read_text(encoding="utf-8") == "{oops"


def test_remote_store_round_trip(session: FakeSession, make_record: RecordFactory) -> None:
    """The remote store uploads through a temporary file and renames it."""
    store = remote_store(session, "/var/lib/dbx/state.json")
    assert store.read() == {}

    store.set("shop/dev", make_record())

    assert store.get("shop/dev") == make_record()
    upload = session.ran(r"base64 -d")[0]
    assert "/var/lib/dbx/state.json.tmp." in upload
    assert "chmod 600" in upload
    assert "mv -f" in upload
    assert store.location == "db.example.com:/var/lib/dbx/state.json"


def test_remote_store_prepares_directory_with_sudo(
    session: FakeSession, make_record: RecordFactory
) -> None:
    """An unwritable state directory is created and handed to the SSH user."""
    session.on(r"^test -d", fail())

    remote_store(session, "/var/lib/dbx/state.json").set("shop/dev", make_record())

    prepare = session.ran(r"^sudo mkdir -p /var/lib/dbx")[0]
    assert "chmod 700" in prepare
    assert 'chown "$(id -un)"' in prepare


def test_remote_store_write_failure(session: FakeSession, make_record: RecordFactory) -> None:
    """A failed upload raises REMOTE_STATE and removes the temporary file."""
    session.on(r"base64 -d", fail("No space left on device"))

    with pytest.raises(DbxError) as excinfo:
        remote_store(session, "/var/lib/dbx/state.json").set("shop/dev", make_record())

    assert excinfo.value.kind is ErrorKind.REMOTE_STATE
    assert excinfo.value.host == "db.example.com"
    assert session.ran(r"^rm -f /var/lib/dbx/state.json.tmp.")


def test_local_store_empty_collection_round_trip(tmp_path: Path) -> None:
    """Writing an empty collection leaves a file that reads back as empty."""
    store = local_store(tmp_path / ".dbx")

    store.write({})

    assert (tmp_path / ".dbx" / "state.json").exists()
    assert store.read() == {}


def test_remote_store_empty_collection_round_trip(session: FakeSession) -> None:
    """The remote store accepts and returns an empty collection."""
    store = remote_store(session, "/var/lib/dbx/state.json")

    store.write({})

    assert "/var/lib/dbx/state.json" in session.files
    assert store.read() == {}


def test_local_store_cleans_up_when_rename_fails(
    tmp_path: Path, make_record: RecordFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A failed rename removes the temporary file and keeps the old document."""
    store = local_store(tmp_path / ".dbx")
    store.set("shop/dev", make_record())
    path = tmp_path / ".dbx" / "state.json"
    before = path.read_text(encoding="utf-8")

    def broken_replace(src: object, dst: object) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("dbxctl.state.store.os.replace", broken_replace)
    with pytest.raises(DbxError) as excinfo:
        store.set("shop/prod", make_record("prod", 27019))

    assert excinfo.value.kind is ErrorKind.LOCAL_STATE
    assert [entry.name for entry in (tmp_path / ".dbx").iterdir()] == ["state.json"]
    assert path.read_text(encoding="utf-8") == before


def test_remote_store_sends_document_on_stdin(
    session: FakeSession, make_record: RecordFactory
) -> None:
    """Large documents stay off the command line and arrive through stdin."""
    store = remote_store(session, "/var/lib/dbx/state.json")
    collection = {
        f"shop/env{index}": make_record(f"env{index}", 27017 + index) for index in range(300)
    }

    store.write(collection)

    upload = session.ran(r"base64 -d")[0]
    payload = session.inputs[session.commands.index(upload)]
    assert payload is not None
    assert len(payload) > 65536
    assert len(upload) < 200
    assert "RootPassw0rd" not in upload
    assert store.read() == collection
