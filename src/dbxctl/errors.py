"""Error taxonomy shared by every dbxctl component.

All failures are raised as a single :class:`DbxError` tagged with an
:class:`ErrorKind`. Callers branch on ``error.kind`` (and, when they only
care about the broad class of failure, on ``error.kind.category``) instead of
catching a hierarchy of exception subclasses. The payload carries the remote
host, the failing provisioning step, the resource involved and a remediation
hint so the CLI can render an actionable message without knowing which
component raised it.
"""
from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from .exit_codes import ExitCode


class ErrorCategory(str, Enum):
    """Broad failure classes used for retry and reporting decisions."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    COMMAND = "command"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    PROVISIONING = "provisioning"


class ErrorKind(str, Enum):
    """Concrete failure kinds raised by dbxctl."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    COMMAND = "command"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    CONFIG = "config"
    LOCK = "lock"
    DOCKER_INSTALL = "docker-install"
    DOCKER_DAEMON = "docker-daemon"
    PORT_ALLOCATION = "port-allocation"
    VOLUME_CREATE = "volume-create"
    IMAGE_PULL = "image-pull"
    CONTAINER_START = "container-start"
    READINESS_TIMEOUT = "readiness-timeout"
    CONTAINER_EXITED = "container-exited"
    USER_CREATE = "user-create"
    LOCAL_STATE = "local-state"
    REMOTE_STATE = "remote-state"
    BACKUP = "backup"
    RESTORE = "restore"
    DESTROY = "destroy"

    @property
    def category(self) -> ErrorCategory:
        """Return the taxonomy bucket this kind belongs to."""
        return _CATEGORIES.get(self, ErrorCategory.PROVISIONING)

    @property
    def retryable(self) -> bool:
        """Only transport-level connection failures are transient."""
        return self is ErrorKind.CONNECTION

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code used when this kind aborts a command."""
        if self in _VALIDATION_KINDS:
            return ExitCode.VALIDATION
        if self in _ENVIRONMENT_KINDS:
            return ExitCode.ENVIRONMENT
        return ExitCode.PROVIDER


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.CONNECTION: ErrorCategory.CONNECTION,
    ErrorKind.AUTHENTICATION: ErrorCategory.AUTHENTICATION,
    ErrorKind.COMMAND: ErrorCategory.COMMAND,
    ErrorKind.BACKUP: ErrorCategory.COMMAND,
    ErrorKind.RESTORE: ErrorCategory.COMMAND,
    ErrorKind.DESTROY: ErrorCategory.COMMAND,
    ErrorKind.TIMEOUT: ErrorCategory.TIMEOUT,
    ErrorKind.LOCK: ErrorCategory.TIMEOUT,
    ErrorKind.VALIDATION: ErrorCategory.VALIDATION,
    ErrorKind.CONFIG: ErrorCategory.VALIDATION,
}

_VALIDATION_KINDS = frozenset(
    {ErrorKind.VALIDATION, ErrorKind.CONFIG, ErrorKind.PORT_ALLOCATION, ErrorKind.LOCK}
)
_ENVIRONMENT_KINDS = frozenset(
    {
        ErrorKind.CONNECTION,
        ErrorKind.AUTHENTICATION,
        ErrorKind.TIMEOUT,
        ErrorKind.LOCAL_STATE,
    }
)


class DbxError(RuntimeError):
    """Tagged failure raised by dbxctl components."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        host: str | None = None,
        step: str | None = None,
        resource: str | None = None,
        remediation: str | None = None,
        detail: str | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.host = host
        self.step = step
        self.resource = resource
        self.remediation = remediation
        self.detail = detail
        self.stderr = stderr

    def __str__(self) -> str:
        return self.render()

    def annotate(
        self,
        *,
        host: str | None = None,
        step: str | None = None,
        resource: str | None = None,
    ) -> DbxError:
        """Fill in context fields that the raising component did not know."""
        if self.host is None:
            self.host = host
        if self.step is None:
            self.step = step
        if self.resource is None:
            self.resource = resource
        return self

    def render(self) -> str:
        """Return a multi-line, operator-facing description of the failure."""
        lines = [self.message]
        if self.step:
            lines.append(f"Step: {self.step}")
        if self.host:
            lines.append(f"Host: {self.host}")
        if self.resource:
            lines.append(f"Resource: {self.resource}")
        if self.detail:
            lines.append(f"Details: {self.detail}")
        if self.remediation:
            lines.append("Remediation:")
            lines.extend(f"  {line}" for line in self.remediation.splitlines())
        return "\n".join(lines)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable payload for structured logs."""
        payload: Mapping[str, object | None] = {
            "kind": self.kind.value,
            "category": self.kind.category.value,
            "message": self.message,
            "host": self.host,
            "step": self.step,
            "resource": self.resource,
            "remediation": self.remediation,
            "detail": self.detail,
            "stderr": self.stderr,
        }
        return {key: value for key, value in payload.items() if value is not None}


__all__ = ["DbxError", "ErrorCategory", "ErrorKind"]
