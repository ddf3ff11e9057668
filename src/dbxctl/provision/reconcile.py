"""Reconcile the local and remote state copies of an instance.

The remote copy is authoritative whenever it exists. A record that only
exists locally is trusted only if its container is actually running on the
host; otherwise it is stale and removed. The running-container check must raise when
Docker cannot be queried, so an unreadable daemon never causes deletion.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ..logging import Reporter
from ..state.schema import InstanceRecord, split_key
from ..state.store import StateStore

LOGGER = logging.getLogger(__name__)

RunningCheck = Callable[[str], bool]


class ReconcileAction(str, Enum):
    """What :meth:`Reconciler.reconcile` did to bring the copies together."""

    NONE = "none"
    ADOPTED_REMOTE = "adopted-remote"
    RESTORED_REMOTE = "restored-remote"
    REMOVED_STALE_LOCAL = "removed-stale-local"
    RESOLVED_CONFLICT = "resolved-conflict"


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of reconciling one key; ``record`` is the surviving record."""

    action: ReconcileAction
    record: InstanceRecord | None

    @property
    def changed(self) -> bool:
        """Return True when either state copy was written."""
        return self.action is not ReconcileAction.NONE


@dataclass(slots=True)
class SyncReport:
    """Keys touched by :meth:`Reconciler.sync`."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when local state was modified."""
        return bool(self.added or self.removed or self.updated)

    def to_dict(self) -> dict[str, list[str]]:
        """Return a JSON-serialisable representation."""
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "updated": list(self.updated),
        }


@dataclass(slots=True)
class Reconciler:
    """Apply the reconciliation policy between two :class:`StateStore` objects.

    *is_running* answers whether a container name is running on the host.
    """

    local: StateStore
    remote: StateStore
    is_running: RunningCheck
    reporter: Reporter

    def reconcile(self, key: str) -> ReconcileResult:
        """Bring the local and remote records for *key* into agreement."""
        split_key(key)
        local_record = self.local.get(key)
        remote_record = self.remote.get(key)

        if remote_record is not None and local_record is None:
            self.reporter.info(f"Found {key} on the host; copying it into local state.")
            self.local.set(key, remote_record)
            return self._result(key, ReconcileAction.ADOPTED_REMOTE, remote_record)

        if local_record is not None and remote_record is None:
            if self.is_running(local_record.container_name):
                self.reporter.info(
                    f"Container {local_record.container_name} is running; "
                    f"restoring the host record for {key}."
                )
                self.remote.set(key, local_record)
                return self._result(key, ReconcileAction.RESTORED_REMOTE, local_record)
            self.reporter.warning(
                f"Container {local_record.container_name} is not running on the host; "
                f"removing stale local state for {key}."
            )
            self.local.remove(key)
            return self._result(key, ReconcileAction.REMOVED_STALE_LOCAL, None)

        if local_record is not None and remote_record is not None:
            if local_record.identity() != remote_record.identity():
                self.reporter.warning(
                    f"Local and host state disagree for {key}; using the host copy."
                )
                self.local.set(key, remote_record)
                return self._result(key, ReconcileAction.RESOLVED_CONFLICT, remote_record)
            return ReconcileResult(ReconcileAction.NONE, local_record)

        return ReconcileResult(ReconcileAction.NONE, None)

    def sync(self, project: str) -> SyncReport:
        """Make local state for *project* mirror the host copy.

        Records present only locally are removed; unlike :meth:`reconcile`,
        no container check is made and the host copy is never written.
        """
        prefix = f"{project}/"
        remote_records = {
            key: record for key, record in self.remote.read().items() if key.startswith(prefix)
        }
        collection = self.local.read()
        report = SyncReport()

        for key in sorted(remote_records):
            record = remote_records[key]
            current = collection.get(key)
            if current is None:
                report.added.append(key)
            elif current != record:
                report.updated.append(key)
            else:
                continue
            collection[key] = record

        for key in sorted(collection):
            if key.startswith(prefix) and key not in remote_records:
                del collection[key]
                report.removed.append(key)

        if report.changed:
            self.local.write(collection)
        LOGGER.debug("Synced %s: %s", project, report)
        return report

    @staticmethod
    def _result(
        key: str, action: ReconcileAction, record: InstanceRecord | None
    ) -> ReconcileResult:
        LOGGER.info("Reconciled %s: %s", key, action.value)
        return ReconcileResult(action, record)


__all__ = [
    "RunningCheck",
    "ReconcileAction",
    "ReconcileResult",
    "Reconciler",
    "SyncReport",
]
