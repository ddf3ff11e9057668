"""Logging primitives for dbxctl.

Two concerns live here:

* :class:`StructuredLogger` appends one JSON record per CLI operation to
  ``<logs_dir>/operations.jsonl`` so operators can audit what each
  invocation changed on the managed host.
* :class:`Reporter` implementations are the operator-facing progress sinks.
  Components receive a reporter explicitly; callers that want silence pass
  :class:`NullReporter` instead of toggling shared console state.

Neither facility is allowed to break a command: write failures disable the
structured logger and are reported once through the standard library logger.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from rich.console import Console
from rich.markup import escape

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


# ----------------------------------------------------------------------
# Reporting sinks
# ----------------------------------------------------------------------
class Reporter(Protocol):
    """Operator-facing progress sink passed to every component."""

    def info(self, message: str) -> None:
        """Report neutral progress information."""

    def step(self, message: str) -> None:
        """Announce the start of a named step."""

    def success(self, message: str) -> None:
        """Report a completed step."""

    def warning(self, message: str) -> None:
        """Report an advisory problem that does not abort the run."""


@dataclass(slots=True)
class ConsoleReporter:
    """Render progress with rich; warnings go to stderr."""

    console: Console = field(default_factory=Console)
    err_console: Console = field(default_factory=lambda: Console(stderr=True))

    def info(self, message: str) -> None:
        """Print *message* unstyled."""
        self.console.print(escape(message))

    def step(self, message: str) -> None:
        """Print *message* as a step header."""
        self.console.print(f"[cyan]>[/cyan] {escape(message)}")

    def success(self, message: str) -> None:
        """Print *message* as a completed step."""
        self.console.print(f"  [green]ok[/green] {escape(message)}")

    def warning(self, message: str) -> None:
        """Print *message* as a warning."""
        LOGGER.debug("warning: %s", message)
        self.err_console.print(f"  [yellow]warning:[/yellow] {escape(message)}")


class NullReporter:
    """Reporter that discards everything (``--quiet``)."""

    def info(self, message: str) -> None:
        """Discard *message*."""

    def step(self, message: str) -> None:
        """Discard *message*."""

    def success(self, message: str) -> None:
        """Discard *message*."""

    def warning(self, message: str) -> None:
        """Discard *message*."""


# ----------------------------------------------------------------------
# Structured operation log
# ----------------------------------------------------------------------
@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single CLI operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    rc: int | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str = "ok", detail: object | None = None) -> None:
        """Record a named sub-step of the operation."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = _json_safe(detail)
        self.steps.append(entry)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            backups=backups,
            context=context,
        )
        self.rc = 0

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )
        self.rc = 0 if rc is None else rc

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=None,
            errors=errors if errors else [message],
            backups=None,
            context=context,
        )
        self.rc = 1 if rc is None else rc

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        duration_ms = int((time.monotonic() - self.started_monotonic) * 1000)
        return {
            "timestamp": self.started_at.isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": list(self.steps),
            "result": self.result,
            "rc": self.rc,
            "duration_ms": duration_ms,
            "lock_wait_ms": self.lock_wait_ms,
        }

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        backups: Sequence[str] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
            "context": _json_safe(context or {}),
        }


class StructuredLogger:
    """Append JSON operation records under a logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning(
                "Structured logging disabled: cannot create %s (%s)", self._logs_dir, exc
            )
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.", changed=0)
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record) + "\n")
        except OSError as exc:
            LOGGER.warning(
                "Structured logging disabled: cannot write %s (%s)",
                self._operations_log_path,
                exc,
            )
            self._enabled = False


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


__all__ = [
    "ConsoleReporter",
    "NullReporter",
    "OperationScope",
    "Reporter",
    "StructuredLogger",
]
