"""Tests for the tool-output classification heuristics."""
from __future__ import annotations

import socket
from pathlib import Path

import paramiko
import pytest

from dbxctl.errors import ErrorKind
from dbxctl.remote.classify import (
    ArchiveFailure,
    RemovalFailure,
    classify_container_removal,
    classify_dump_failure,
    classify_logs_failure,
    classify_restore_failure,
    classify_transport_error,
    classify_volume_removal,
    is_docker_permission_denied,
    is_port_in_use,
    is_user_already_exists,
)

KEY = Path("/home/me/.ssh/id_ed25519")


def _transport(exc: BaseException):  # noqa: ANN202 - helper
    return classify_transport_error(
        exc, host="db.example.com", port=22, user="deploy", key_path=KEY
    )


@pytest.mark.parametrize(
    ("exc", "kind", "fragment"),
    [
        (socket.gaierror(-2, "Name or service not known"), ErrorKind.CONNECTION, "resolve"),
        (ConnectionRefusedError(111, "Connection refused"), ErrorKind.CONNECTION, "refused"),
        (socket.timeout("timed out"), ErrorKind.CONNECTION, "timed out"),
        (paramiko.AuthenticationException("bad key"), ErrorKind.AUTHENTICATION, "Authentication"),
        (
            paramiko.SSHException("not a valid RSA private key file"),
            ErrorKind.AUTHENTICATION,
            "Authentication",
        ),
        (
            paramiko.SSHException("Error reading SSH protocol banner"),
            ErrorKind.CONNECTION,
            "failed",
        ),
    ],
)
def test_transport_errors_are_classified(
    exc: BaseException, kind: ErrorKind, fragment: str
) -> None:
    """Transport exceptions map to a kind and an actionable message."""
    error = _transport(exc)

    assert error.kind is kind
    assert fragment in error.message
    assert error.host == "db.example.com"
    assert error.remediation


def test_auth_remediation_names_the_key() -> None:
    """Authentication failures tell the operator which key to check."""
    error = _transport(paramiko.AuthenticationException("denied"))

    assert str(KEY) in (error.remediation or "")
    assert error.resource == str(KEY)


def test_docker_output_markers() -> None:
    """Permission, port and duplicate-user markers are recognised case-insensitively."""
    assert is_docker_permission_denied(
        "Got permission denied while trying to connect to the Docker daemon socket"
    )
    assert not is_docker_permission_denied("No such container: x")
    assert is_port_in_use("Bind for 0.0.0.0:27018 failed: port is already allocated")
    assert is_user_already_exists("MongoServerError: User \"dbx_dev@admin\" already exists")
    assert is_user_already_exists("code 51003")


def test_removal_classification() -> None:
    """docker rm / volume rm failures are bucketed."""
    assert classify_container_removal("Error: No such container: x") is RemovalFailure.NOT_FOUND
    assert classify_container_removal("boom") is RemovalFailure.UNKNOWN
    assert classify_volume_removal("Error: No such volume: v") is RemovalFailure.NOT_FOUND
    assert classify_volume_removal("volume is in use - [abc]") is RemovalFailure.IN_USE


def test_archive_classification() -> None:
    """Dump and restore failures are bucketed by their stderr."""
    assert classify_dump_failure("Error: No such container: x") is ArchiveFailure.CONTAINER_MISSING
    assert classify_dump_failure("write: no space left on device") is ArchiveFailure.DISK_FULL
    assert classify_restore_failure("error reading archive: EOF") is ArchiveFailure.CORRUPT_ARCHIVE
    assert classify_restore_failure("something odd") is ArchiveFailure.UNKNOWN


def test_logs_failure_for_missing_container() -> None:
    """A missing container points the operator at ``dbxctl up``."""
    error = classify_logs_failure(
        "Error: No such container: dbx_shop_dev", container="dbx_shop_dev", host="h"
    )

    assert error.kind is ErrorKind.COMMAND
    assert "dbxctl up" in (error.remediation or "")
