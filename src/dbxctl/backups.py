"""Backup and restore of instance databases on the managed host.

Dumps are taken with ``mongodump --archive`` inside the instance container
and streamed through ``docker exec`` into a file in the backup directory on
the host, so archives survive the container being destroyed. Restores stream
the file back into ``mongorestore --drop``.

Archive names follow ``{project}_{env}-YYYY-MM-DDTHH-MM.dump`` (UTC). When a
name is already taken within the same minute a ``-1`` ... ``-100`` suffix is
appended.
"""
from __future__ import annotations

import logging
import posixpath
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import DbxError, ErrorKind
from .logging import Reporter
from .providers.docker import DockerProvider
from .providers.mongodb import MongoProvider
from .remote.classify import ArchiveFailure, classify_dump_failure, classify_restore_failure
from .remote.executor import CommandResult, RemoteSession
from .state.schema import InstanceRecord, split_key
from .state.store import prepare_remote_directory

LOGGER = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = "/var/lib/dbx/backups"
BACKUP_SUFFIX = ".dump"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M"
MAX_COLLISION_SUFFIX = 100
LIST_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class BackupResult:
    """A freshly written archive."""

    path: str
    size_bytes: int
    timestamp: str

    @property
    def name(self) -> str:
        """Return the archive file name."""
        return posixpath.basename(self.path)


@dataclass(frozen=True, slots=True)
class BackupEntry:
    """An archive found in the backup directory."""

    name: str
    path: str
    size_bytes: int
    modified: datetime

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "path": self.path,
            "size_bytes": self.size_bytes,
            "size": format_size(self.size_bytes),
            "modified": self.modified.isoformat(),
        }


def backup_prefix(key: str) -> str:
    """Return the file name prefix used for backups of *key*."""
    project, env = split_key(key)
    return f"{project}_{env}"


def backup_filename(key: str, when: datetime, attempt: int = 0) -> str:
    """Return the archive name for *key* at *when*; *attempt* > 0 adds a suffix."""
    stem = f"{backup_prefix(key)}-{when.astimezone(UTC).strftime(TIMESTAMP_FORMAT)}"
    if attempt:
        stem = f"{stem}-{attempt}"
    return f"{stem}{BACKUP_SUFFIX}"


def format_size(size_bytes: int) -> str:
    """Return *size_bytes* as a short human readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    value = size_bytes / 1024
    for unit in ("KB", "MB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"


class BackupManager:
    """Create, list, restore and purge archives for one host."""

    def __init__(
        self,
        session: RemoteSession,
        docker: DockerProvider,
        reporter: Reporter,
        *,
        backup_dir: str = DEFAULT_BACKUP_DIR,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.session = session
        self.docker = docker
        self.reporter = reporter
        self.backup_dir = backup_dir.rstrip("/") or "/"
        self._clock = clock
        self._mongo = MongoProvider(docker)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------
    def create(self, key: str, record: InstanceRecord) -> BackupResult:
        """Dump the instance database into a new archive on the host."""
        when = self._clock()
        self._ensure_directory()
        path = self._available_path(key, when)
        self.reporter.step(f"Dumping {record.db_name} to {path}")

        try:
            result = self._mongo.dump(
                record.container_name,
                record.root_password,
                database=record.db_name,
                target=path,
            )
        except DbxError as exc:
            self._discard(path)
            if exc.kind is ErrorKind.TIMEOUT:
                raise DbxError(
                    ErrorKind.BACKUP,
                    "Backup timed out.",
                    host=self.session.host,
                    resource=path,
                    remediation=(
                        "The database may be too large for the archive timeout; "
                        "check the instance load and retry."
                    ),
                ) from exc
            raise
        if not result.ok:
            self._discard(path)
            failure = classify_dump_failure(result.stderr)
            raise self._archive_error(
                ErrorKind.BACKUP, failure, "mongodump failed", result, record, path
            )

        size = self._size(path)
        if size == 0:
            self.reporter.warning(f"Backup {path} is empty.")
        self.reporter.success(f"Backup written: {path} ({format_size(size)})")
        timestamp = when.astimezone(UTC).isoformat()
        return BackupResult(path=path, size_bytes=size, timestamp=timestamp)

    def _available_path(self, key: str, when: datetime) -> str:
        existing = set(self._names())
        for attempt in range(MAX_COLLISION_SUFFIX + 1):
            name = backup_filename(key, when, attempt)
            if name not in existing:
                return posixpath.join(self.backup_dir, name)
        raise DbxError(
            ErrorKind.BACKUP,
            "Too many backup files with the same timestamp.",
            host=self.session.host,
            resource=self.backup_dir,
            remediation="Remove old archives from the backup directory and retry.",
        )

    def _size(self, path: str) -> int:
        result = self.session.run(f"stat -c%s {shlex.quote(path)}", LIST_TIMEOUT)
        if result.ok:
            try:
                return int(result.stdout.strip())
            except ValueError:
                LOGGER.debug("Unexpected stat output for %s: %r", path, result.stdout)
        raise DbxError(
            ErrorKind.BACKUP,
            f"Backup written but its size could not be read: {path}",
            host=self.session.host,
            resource=path,
            detail=result.stderr or result.stdout or None,
            remediation=f"Check the file on the host: ls -l {path}",
        )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def resolve(self, backup_file: str) -> str:
        """Return the absolute host path of *backup_file*."""
        if posixpath.isabs(backup_file):
            return backup_file
        return posixpath.join(self.backup_dir, backup_file)

    def restore(self, record: InstanceRecord, backup_file: str) -> str:
        """Replace the instance database with *backup_file*; returns its path."""
        path = self.resolve(backup_file)
        check = self.session.run(f"test -f {shlex.quote(path)}", LIST_TIMEOUT)
        if not check.ok:
            raise DbxError(
                ErrorKind.RESTORE,
                f"Backup file not found: {path}",
                host=self.session.host,
                resource=path,
                remediation="List the available archives with: dbxctl backups <env>",
            )

        self.reporter.step(f"Restoring {record.db_name} from {path}")
        try:
            result = self._mongo.restore(
                record.container_name,
                record.root_password,
                database=record.db_name,
                source=path,
            )
        except DbxError as exc:
            if exc.kind is ErrorKind.TIMEOUT:
                raise DbxError(
                    ErrorKind.RESTORE,
                    "Restore timed out; the database may be partially restored.",
                    host=self.session.host,
                    resource=path,
                    remediation="Re-run the restore; it drops each collection before loading it.",
                ) from exc
            raise
        if not result.ok:
            failure = classify_restore_failure(result.stderr)
            raise self._archive_error(
                ErrorKind.RESTORE, failure, "mongorestore failed", result, record, path
            )
        self.reporter.success(f"Restored {record.db_name} from {posixpath.basename(path)}")
        return path

    # ------------------------------------------------------------------
    # Listing and purge
    # ------------------------------------------------------------------
    def list_backups(self, key: str) -> list[BackupEntry]:
        """Return the archives of *key*, newest first."""
        pattern = f"{backup_prefix(key)}-*{BACKUP_SUFFIX}"
        result = self.session.run(
            f"find {shlex.quote(self.backup_dir)} -maxdepth 1 -type f "
            f"-name {shlex.quote(pattern)} -printf '%f\\t%s\\t%T@\\n'",
            LIST_TIMEOUT,
        )
        if not result.ok:
            if "no such file" in result.stderr.lower():
                return []
            raise DbxError(
                ErrorKind.BACKUP,
                f"Cannot list backups in {self.backup_dir}.",
                host=self.session.host,
                resource=self.backup_dir,
                detail=result.stderr or None,
            )
        entries: list[BackupEntry] = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) != 3:
                continue
            name, size, mtime = parts
            try:
                entry = BackupEntry(
                    name=name,
                    path=posixpath.join(self.backup_dir, name),
                    size_bytes=int(size),
                    modified=datetime.fromtimestamp(float(mtime), UTC),
                )
            except ValueError:
                LOGGER.debug("Skipping unparseable find output: %r", line)
                continue
            entries.append(entry)
        entries.sort(key=lambda item: (item.modified, item.name), reverse=True)
        return entries

    def purge(self, key: str) -> int:
        """Delete every archive of *key*; returns how many were removed."""
        pattern = f"{backup_prefix(key)}-*{BACKUP_SUFFIX}"
        result = self.session.run(
            f"find {shlex.quote(self.backup_dir)} -maxdepth 1 -type f "
            f"-name {shlex.quote(pattern)} -print -delete",
            LIST_TIMEOUT,
        )
        if not result.ok:
            if "no such file" in result.stderr.lower():
                return 0
            raise DbxError(
                ErrorKind.DESTROY,
                f"Failed to remove backups of {key}.",
                host=self.session.host,
                resource=self.backup_dir,
                detail=result.stderr or None,
                remediation=f"Remove them by hand: rm -f {self.backup_dir}/{pattern}",
            )
        removed = [line for line in result.stdout.splitlines() if line.strip()]
        LOGGER.debug("Purged %s backup(s) of %s", len(removed), key)
        return len(removed)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _names(self) -> list[str]:
        result = self.session.run(f"ls -1 {shlex.quote(self.backup_dir)}", LIST_TIMEOUT)
        return result.stdout.splitlines() if result.ok else []

    def _ensure_directory(self) -> None:
        result = prepare_remote_directory(self.session, self.backup_dir)
        if not result.ok:
            raise DbxError(
                ErrorKind.BACKUP,
                f"Cannot prepare the backup directory {self.backup_dir}.",
                host=self.session.host,
                resource=self.backup_dir,
                detail=result.stderr or None,
                remediation="Make sure the SSH user has passwordless sudo on the host.",
            )

    def _discard(self, path: str) -> None:
        try:
            self.session.run(f"rm -f {shlex.quote(path)}", LIST_TIMEOUT)
        except DbxError as exc:
            LOGGER.debug("Could not remove partial archive %s: %s", path, exc.message)

    def _archive_error(
        self,
        kind: ErrorKind,
        failure: ArchiveFailure,
        message: str,
        result: CommandResult,
        record: InstanceRecord,
        path: str,
    ) -> DbxError:
        container = record.container_name
        remediation = {
            ArchiveFailure.CONTAINER_MISSING: (
                f"Container {container} is not running; start it with: dbxctl up <env>"
            ),
            ArchiveFailure.DISK_FULL: (
                f"The host is out of disk space; check: df -h {self.backup_dir}\n"
                "Remove old archives or grow the disk."
            ),
            ArchiveFailure.PERMISSION_DENIED: (
                f'Give the SSH user ownership: sudo chown -R "$(id -un)" {self.backup_dir}'
            ),
            ArchiveFailure.CORRUPT_ARCHIVE: (
                "The archive is damaged or not a mongodump archive; pick another backup."
            ),
            ArchiveFailure.UNKNOWN: f"Inspect the server logs: docker logs {container}",
        }[failure]
        return DbxError(
            kind,
            f"{message} ({failure.value}).",
            host=self.session.host,
            resource=path,
            detail=result.stderr or result.stdout or None,
            stderr=result.stderr,
            remediation=remediation,
        )


__all__ = [
    "BackupEntry",
    "BackupManager",
    "BackupResult",
    "DEFAULT_BACKUP_DIR",
    "backup_filename",
    "backup_prefix",
    "format_size",
]
