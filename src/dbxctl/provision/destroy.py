"""Tear down an instance and forget it in both state copies.

Every step is attempted even when an earlier one fails, and the local record
is always removed last. The first failure is raised once the local cleanup
has run, so an operator sees what went wrong while the controller no longer
tracks an instance it cannot manage.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from ..backups import DEFAULT_BACKUP_DIR, BackupManager
from ..errors import DbxError
from ..logging import Reporter
from ..providers.docker import DockerProvider
from ..remote.executor import RemoteSession
from ..state.schema import InstanceRecord
from ..state.store import StateStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DestroyReport:
    """What :meth:`Destroyer.destroy` removed."""

    key: str
    container_removed: bool = False
    volume_removed: bool = False
    remote_state_removed: bool = False
    local_state_removed: bool = False
    backups_removed: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[DbxError] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "key": self.key,
            "container_removed": self.container_removed,
            "volume_removed": self.volume_removed,
            "remote_state_removed": self.remote_state_removed,
            "local_state_removed": self.local_state_removed,
            "backups_removed": self.backups_removed,
            "warnings": list(self.warnings),
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(slots=True)
class Destroyer:
    """Remove the container, volume and state records of an instance."""

    session: RemoteSession
    docker: DockerProvider
    remote_store: StateStore
    local_store: StateStore
    reporter: Reporter

    def destroy(
        self,
        key: str,
        record: InstanceRecord,
        *,
        purge_backups: bool = False,
        backup_dir: str = DEFAULT_BACKUP_DIR,
    ) -> DestroyReport:
        """Destroy *key*; raises the first failure after local state is cleared."""
        report = DestroyReport(key=key)

        with self._collect(report, "container", record.container_name):
            report.container_removed = self.docker.remove_container(record.container_name)
            if report.container_removed:
                self.reporter.success(f"Removed container {record.container_name}")
            else:
                self._warn(
                    report, f"Container {record.container_name} not found (already removed)"
                )

        with self._collect(report, "volume", record.volume):
            report.volume_removed = self.docker.remove_volume(record.volume)
            if report.volume_removed:
                self.reporter.success(f"Removed volume {record.volume}")
            else:
                self._warn(report, f"Volume {record.volume} not found (already removed)")

        if purge_backups:
            with self._collect(report, "backups", backup_dir):
                manager = BackupManager(
                    self.session, self.docker, self.reporter, backup_dir=backup_dir
                )
                report.backups_removed = manager.purge(key)
                self.reporter.success(f"Removed {report.backups_removed} backup file(s)")

        with self._collect(report, "remote-state", self.remote_store.location):
            report.remote_state_removed = self.remote_store.remove(key)
            if report.remote_state_removed:
                self.reporter.success("Removed host state record")

        try:
            report.local_state_removed = self.local_store.remove(key)
        except DbxError as exc:
            exc.annotate(host=self.session.host, step="local-state")
            report.errors.append(exc)
        else:
            if report.local_state_removed:
                self.reporter.success("Removed local state record")

        if report.errors:
            raise report.errors[0]
        return report

    def _warn(self, report: DestroyReport, message: str) -> None:
        report.warnings.append(message)
        self.reporter.warning(message)

    @contextmanager
    def _collect(
        self, report: DestroyReport, step: str, resource: str | None
    ) -> Iterator[None]:
        try:
            yield
        except DbxError as exc:
            exc.annotate(host=self.session.host, step=step, resource=resource)
            LOGGER.debug("Destroy step %s failed: %s", step, exc.message)
            report.errors.append(exc)
            self.reporter.warning(f"{step}: {exc.message}")


__all__ = ["DestroyReport", "Destroyer"]
