"""Atomic, schema-validated state files on the controller and the host.

:class:`StateStore` holds the read/validate/write logic once; a backend
supplies the transport. :class:`LocalStateBackend` writes through the local
filesystem, :class:`RemoteStateBackend` through a :class:`RemoteSession`.
Both write to a sibling temporary file, restrict it to the owner and rename
it over the target, so readers never observe a partial document.
"""
from __future__ import annotations

import base64
import logging
import os
import posixpath
import secrets
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..errors import DbxError, ErrorKind
from ..remote.executor import CommandResult, RemoteSession
from .schema import (
    InstanceRecord,
    StateCollection,
    parse_collection,
    serialize_collection,
    split_key,
)

LOGGER = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
DEFAULT_REMOTE_PATH = "/var/lib/dbx/state.json"
REMOTE_TIMEOUT = 30.0
DIR_MODE = 0o700
FILE_MODE = 0o600


class StateBackend(Protocol):
    """Raw text storage for a state document."""

    @property
    def location(self) -> str:
        """Human readable location used in error messages."""

    def load(self) -> str | None:
        """Return the stored document, or None when it does not exist."""

    def store(self, text: str) -> None:
        """Atomically replace the stored document with *text*."""


def prepare_remote_directory(session: RemoteSession, directory: str) -> CommandResult:
    """Make *directory* exist, private (0700) and owned by the SSH user.

    Returns the result of the last command run; callers raise their own error
    kind when it failed.
    """
    quoted = shlex.quote(directory)
    check = session.run(f"test -d {quoted} -a -w {quoted}", REMOTE_TIMEOUT)
    if check.ok:
        return check
    return session.run(
        f"sudo mkdir -p {quoted} && sudo chmod 700 {quoted}"
        f' && sudo chown "$(id -un)" {quoted}',
        REMOTE_TIMEOUT,
    )


# ----------------------------------------------------------------------
# Local backend
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class LocalStateBackend:
    """State file inside the project's ``.dbx`` directory."""

    directory: Path
    filename: str = STATE_FILENAME

    def __post_init__(self) -> None:
        """Normalise the directory path after initialisation."""
        object.__setattr__(self, "directory", Path(self.directory).expanduser())

    @property
    def path(self) -> Path:
        """Return the state file path."""
        return self.directory / self.filename

    @property
    def location(self) -> str:
        """Return the state file path as text."""
        return str(self.path)

    def load(self) -> str | None:
        """Read the state file if it exists."""
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise _local_error(f"Cannot read local state {self.path}: {exc}", self.path) from exc

    def store(self, text: str) -> None:
        """Write *text* via a temporary file and ``os.replace``."""
        try:
            self.directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            os.chmod(self.directory, DIR_MODE)
        except OSError as exc:
            raise _local_error(
                f"Cannot create state directory {self.directory}: {exc}", self.directory
            ) from exc

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.directory), prefix=f".{self.filename}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise _local_error(f"Cannot write local state {self.path}: {exc}", self.path) from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _local_error(message: str, path: Path) -> DbxError:
    return DbxError(
        ErrorKind.LOCAL_STATE,
        message,
        resource=str(path),
        remediation=f"Check ownership and free space for {path.parent}.",
    )


# ----------------------------------------------------------------------
# Remote backend
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class RemoteStateBackend:
    """State file on the managed host, accessed through shell commands."""

    session: RemoteSession
    path: str = DEFAULT_REMOTE_PATH

    @property
    def location(self) -> str:
        """Return ``host:path``."""
        return f"{self.session.host}:{self.path}"

    @property
    def directory(self) -> str:
        """Return the directory holding the state file."""
        return posixpath.dirname(self.path) or "/"

    def load(self) -> str | None:
        """Read the remote file; a missing file yields None."""
        quoted = shlex.quote(self.path)
        check = self.session.run(f"test -f {quoted}", REMOTE_TIMEOUT)
        if not check.ok:
            if check.exit_code == 1:
                return None
            raise self._error("Cannot check for the remote state file.", check.stderr)
        result = self.session.run(f"cat {quoted}", REMOTE_TIMEOUT)
        if not result.ok:
            raise self._error("Cannot read the remote state file.", result.stderr)
        return result.stdout

    def store(self, text: str) -> None:
        """Stream *text* to a temporary sibling and rename it over the target.

        The document travels on stdin, so its size is not bound by the
        remote command line limit.
        """
        self._ensure_directory()
        tmp = f"{self.path}.tmp.{secrets.token_hex(4)}"
        payload = base64.b64encode(text.encode("utf-8")) + b"\n"
        quoted_tmp = shlex.quote(tmp)
        script = (
            f"base64 -d > {quoted_tmp}"
            f" && chmod 600 {quoted_tmp}"
            f" && mv -f {quoted_tmp} {shlex.quote(self.path)}"
        )
        try:
            result = self.session.run(script, REMOTE_TIMEOUT, stdin=payload)
        except DbxError:
            self._discard(tmp)
            raise
        if not result.ok:
            self._discard(tmp)
            raise self._error("Failed to write the remote state file.", result.stderr)

    def _ensure_directory(self) -> None:
        result = prepare_remote_directory(self.session, self.directory)
        if not result.ok:
            raise self._error(
                f"Cannot prepare the remote state directory {self.directory}.", result.stderr
            )

    def _discard(self, tmp: str) -> None:
        try:
            self.session.run(f"rm -f {shlex.quote(tmp)}", REMOTE_TIMEOUT)
        except DbxError as exc:
            LOGGER.debug("Could not remove temporary state file %s: %s", tmp, exc.message)

    def _error(self, message: str, stderr: str) -> DbxError:
        if "permission denied" in stderr.lower():
            remediation = (
                f"Give the SSH user ownership of {self.directory}:\n"
                f'  sudo chown -R "$(id -un)" {self.directory}'
            )
        else:
            remediation = f"Check {self.directory} on the host (disk space, mount state)."
        return DbxError(
            ErrorKind.REMOTE_STATE,
            message,
            host=self.session.host,
            resource=self.path,
            detail=stderr or None,
            stderr=stderr,
            remediation=remediation,
        )


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class StateStore:
    """Validated access to one state document."""

    backend: StateBackend

    @property
    def location(self) -> str:
        """Return where the backing document lives."""
        return self.backend.location

    def read(self) -> StateCollection:
        """Return the collection; a missing file is an empty collection."""
        text = self.backend.load()
        if text is None:
            return {}
        return parse_collection(text, source=self.location)

    def write(self, collection: StateCollection) -> None:
        """Persist *collection* atomically."""
        self.backend.store(serialize_collection(collection))
        LOGGER.debug("Wrote %s instance(s) to %s", len(collection), self.location)

    def get(self, key: str) -> InstanceRecord | None:
        """Return the record for *key*, if any."""
        return self.read().get(key)

    def set(self, key: str, record: InstanceRecord) -> None:
        """Insert or replace the record for *key*."""
        split_key(key)
        collection = self.read()
        collection[key] = record
        self.write(collection)

    def remove(self, key: str) -> bool:
        """Delete *key*. Returns False when it was not present."""
        collection = self.read()
        if key not in collection:
            return False
        del collection[key]
        self.write(collection)
        return True

    def keys(self) -> list[str]:
        """Return the stored keys, sorted."""
        return sorted(self.read())


def local_store(directory: Path) -> StateStore:
    """Return a :class:`StateStore` for the local ``state.json`` in *directory*."""
    return StateStore(LocalStateBackend(directory))


def remote_store(session: RemoteSession, path: str = DEFAULT_REMOTE_PATH) -> StateStore:
    """Return a :class:`StateStore` for the state file at *path* on the host."""
    return StateStore(RemoteStateBackend(session, path))


__all__ = [
    "DEFAULT_REMOTE_PATH",
    "LocalStateBackend",
    "RemoteStateBackend",
    "StateBackend",
    "StateStore",
    "local_store",
    "prepare_remote_directory",
    "remote_store",
]
