"""Heuristics that turn unstructured tool output into structured failures.

Docker, MongoDB shell tools and paramiko report most failures as free text.
Every substring match dbxctl relies on lives in this module, one function per
command type, so wording changes in an upstream tool only need updating
here. The matches are case-insensitive and deliberately loose.
"""
from __future__ import annotations

import socket
from enum import Enum
from pathlib import Path

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from ..errors import DbxError, ErrorKind


class ArchiveFailure(str, Enum):
    """Why a dump or restore command failed."""

    CONTAINER_MISSING = "container-missing"
    DISK_FULL = "disk-full"
    PERMISSION_DENIED = "permission-denied"
    CORRUPT_ARCHIVE = "corrupt-archive"
    UNKNOWN = "unknown"


class RemovalFailure(str, Enum):
    """Why a ``docker rm`` / ``docker volume rm`` command failed."""

    NOT_FOUND = "not-found"
    IN_USE = "in-use"
    PERMISSION_DENIED = "permission-denied"
    UNKNOWN = "unknown"


# ----------------------------------------------------------------------
# Transport (paramiko) errors
# ----------------------------------------------------------------------
_HOST_NOT_FOUND_MARKERS = (
    "getaddrinfo",
    "name or service not known",
    "nodename nor servname",
    "enotfound",
)
_REFUSED_MARKERS = ("refused", "econnrefused", "unable to connect")
_TIMEOUT_MARKERS = ("timed out", "timeout", "etimedout")
_AUTH_MARKERS = ("authentication", "permission denied", "publickey", "private key", "not a valid")


def classify_transport_error(
    exc: BaseException,
    *,
    host: str,
    port: int,
    user: str,
    key_path: Path,
) -> DbxError:
    """Map a paramiko/socket exception raised while connecting to a DbxError."""
    text = str(exc).lower()

    if isinstance(exc, paramiko.BadHostKeyException):
        return DbxError(
            ErrorKind.AUTHENTICATION,
            f"Host key for {host} does not match the known_hosts entry.",
            host=host,
            detail=str(exc),
            remediation=(
                "If the host was rebuilt, remove the stale entry:\n"
                f"  ssh-keygen -R {host}\n"
                "Otherwise treat this as a possible man-in-the-middle attack."
            ),
        )
    if isinstance(exc, (paramiko.AuthenticationException, paramiko.PasswordRequiredException)):
        return _auth_error(host, port, user, key_path, exc)
    if isinstance(exc, socket.gaierror) or any(
        marker in text for marker in _HOST_NOT_FOUND_MARKERS
    ):
        return DbxError(
            ErrorKind.CONNECTION,
            f"Cannot resolve host {host}.",
            host=host,
            detail=str(exc),
            remediation=(
                "Check vps.host in dbx.yml.\n"
                f"Verify DNS resolution: ping {host}"
            ),
        )
    if isinstance(exc, (NoValidConnectionsError, ConnectionRefusedError)) or any(
        marker in text for marker in _REFUSED_MARKERS
    ):
        return DbxError(
            ErrorKind.CONNECTION,
            f"Connection refused by {host}:{port}.",
            host=host,
            detail=str(exc),
            remediation=(
                f"Verify the SSH daemon is running on {host}.\n"
                f"Check vps.port ({port}) and the firewall rules."
            ),
        )
    if isinstance(exc, (socket.timeout, TimeoutError)) or any(
        marker in text for marker in _TIMEOUT_MARKERS
    ):
        return DbxError(
            ErrorKind.CONNECTION,
            f"Connection to {host}:{port} timed out.",
            host=host,
            detail=str(exc),
            remediation=(
                f"Check network connectivity: ping {host}\n"
                f"Verify the firewall allows port {port}."
            ),
        )
    if isinstance(exc, paramiko.SSHException) and any(marker in text for marker in _AUTH_MARKERS):
        return _auth_error(host, port, user, key_path, exc)
    return DbxError(
        ErrorKind.CONNECTION,
        f"SSH connection to {host}:{port} failed.",
        host=host,
        detail=str(exc) or type(exc).__name__,
        remediation=f"Try connecting manually: ssh -p {port} -i {key_path} {user}@{host}",
    )


def _auth_error(
    host: str,
    port: int,
    user: str,
    key_path: Path,
    exc: BaseException,
) -> DbxError:
    return DbxError(
        ErrorKind.AUTHENTICATION,
        f"Authentication failed for {user}@{host}.",
        host=host,
        resource=str(key_path),
        detail=str(exc) or type(exc).__name__,
        remediation=(
            f"Verify the key is authorised on the host: ssh -p {port} -i {key_path} {user}@{host}\n"
            f"Check the key permissions: chmod 600 {key_path}\n"
            "Encrypted keys are not supported; load an unencrypted key or use a dedicated one."
        ),
    )


# ----------------------------------------------------------------------
# Docker
# ----------------------------------------------------------------------
def is_docker_permission_denied(stderr: str) -> bool:
    """Return True when a non-elevated docker command hit the socket permissions."""
    text = stderr.lower()
    return "permission denied" in text or "cannot connect to the docker daemon" in text


def is_port_in_use(stderr: str) -> bool:
    """Return True when ``docker run`` failed because the host port is taken."""
    text = stderr.lower()
    return "address already in use" in text or "port is already allocated" in text


def is_no_such_container(stderr: str) -> bool:
    """Return True when a docker command referenced a missing container."""
    text = stderr.lower()
    return "no such container" in text or "no such object" in text


def classify_container_removal(stderr: str) -> RemovalFailure:
    """Classify a failed ``docker rm -f``."""
    text = stderr.lower()
    if is_no_such_container(text):
        return RemovalFailure.NOT_FOUND
    if "permission denied" in text:
        return RemovalFailure.PERMISSION_DENIED
    return RemovalFailure.UNKNOWN


def classify_volume_removal(stderr: str) -> RemovalFailure:
    """Classify a failed ``docker volume rm``."""
    text = stderr.lower()
    if "no such volume" in text:
        return RemovalFailure.NOT_FOUND
    if "volume is in use" in text:
        return RemovalFailure.IN_USE
    if "permission denied" in text:
        return RemovalFailure.PERMISSION_DENIED
    return RemovalFailure.UNKNOWN


def classify_logs_failure(stderr: str, *, container: str, host: str) -> DbxError:
    """Translate a failed ``docker logs`` into an operator-facing error."""
    text = stderr.lower()
    if is_no_such_container(text):
        return DbxError(
            ErrorKind.COMMAND,
            f"No container named {container} exists.",
            host=host,
            resource=container,
            remediation="Provision the environment first: dbxctl up <env>",
        )
    if "docker daemon" in text:
        return DbxError(
            ErrorKind.DOCKER_DAEMON,
            "Docker is not reachable on the remote host.",
            host=host,
            detail=stderr,
            remediation="Check that Docker is installed and running: sudo systemctl status docker",
        )
    return DbxError(
        ErrorKind.COMMAND,
        f"Failed to read logs for {container}.",
        host=host,
        resource=container,
        detail=stderr or None,
    )


# ----------------------------------------------------------------------
# MongoDB shell / tools
# ----------------------------------------------------------------------
def is_user_already_exists(output: str) -> bool:
    """Return True when ``db.createUser`` reported a duplicate user (code 51003)."""
    text = output.lower()
    return "51003" in text or "already exists" in text


def is_auth_failure(output: str) -> bool:
    """Return True when a mongo shell command was rejected for bad credentials."""
    return "authentication failed" in output.lower()


def classify_dump_failure(stderr: str) -> ArchiveFailure:
    """Classify a failed ``mongodump``."""
    text = stderr.lower()
    if is_no_such_container(text) or "is not running" in text:
        return ArchiveFailure.CONTAINER_MISSING
    if "no space left" in text:
        return ArchiveFailure.DISK_FULL
    if "permission denied" in text:
        return ArchiveFailure.PERMISSION_DENIED
    return ArchiveFailure.UNKNOWN


def classify_restore_failure(stderr: str) -> ArchiveFailure:
    """Classify a failed ``mongorestore``."""
    text = stderr.lower()
    if is_no_such_container(text) or "is not running" in text:
        return ArchiveFailure.CONTAINER_MISSING
    if "error reading archive" in text or "corrupt" in text or "invalid" in text:
        return ArchiveFailure.CORRUPT_ARCHIVE
    if "no space left" in text:
        return ArchiveFailure.DISK_FULL
    if "permission denied" in text:
        return ArchiveFailure.PERMISSION_DENIED
    return ArchiveFailure.UNKNOWN


__all__ = [
    "ArchiveFailure",
    "RemovalFailure",
    "classify_container_removal",
    "classify_dump_failure",
    "classify_logs_failure",
    "classify_restore_failure",
    "classify_transport_error",
    "classify_volume_removal",
    "is_auth_failure",
    "is_docker_permission_denied",
    "is_no_such_container",
    "is_port_in_use",
    "is_user_already_exists",
]
