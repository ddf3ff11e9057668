"""Advisory lock files serialising dbxctl invocations.

Mutating commands hold a global lock followed by one lock per
``project/env`` key for their whole duration. Locks are ``fcntl.flock``
advisory locks on files under the lock directory (``.dbx/locks`` by
default); the files are left behind after release and contain the holder's
PID for diagnostics.

The locks only serialise invocations that share the same lock directory, i.e.
the same controller working copy. Two controllers targeting the same remote
host are not coordinated; the reconciliation pass is the recovery mechanism
for that race.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from .errors import DbxError, ErrorKind

GLOBAL_LOCK_NAME = "dbxctl"
POLL_INTERVAL = 0.05


def lock_timeout_error(path: Path, timeout: float) -> DbxError:
    """Return the error raised when *path* cannot be locked within *timeout*."""
    return DbxError(
        ErrorKind.LOCK,
        f"Timed out after {timeout:g}s waiting for lock {path}.",
        resource=str(path),
        remediation=(
            "Another dbxctl command is running against this environment.\n"
            f"Wait for it to finish or inspect the PID recorded in {path}."
        ),
    )


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire advisory lock files under a directory."""

    def __init__(self, lock_dir: Path, default_timeout: float = 30.0) -> None:
        self.lock_dir = Path(lock_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name* (``/`` in keys is flattened)."""
        safe = name.replace("/", "__")
        return self.lock_dir / f"{safe}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for one ``project/env`` key."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock, then per-instance locks in sorted order."""
        with ExitStack() as stack:
            global_path = self.lock_path(GLOBAL_LOCK_NAME)
            handles = [stack.enter_context(self._acquire(global_path, timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self._acquire(self.lock_path(name), timeout)))
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        handle: IO[str] = path.open("a+", encoding="utf-8")
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise lock_timeout_error(path, limit) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(handle, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _write_metadata(handle: IO[str], path: Path) -> None:
    handle.seek(0)
    handle.truncate()
    handle.write(
        json.dumps(
            {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
        )
    )
    handle.flush()


__all__ = ["LockBundle", "LockHandle", "LockManager", "lock_timeout_error"]
