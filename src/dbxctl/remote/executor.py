"""Remote command execution over SSH.

:class:`RemoteExecutor` opens paramiko sessions to the managed host and
:class:`RemoteSession` runs shell commands on it with a hard deadline. The
executor never interprets exit codes: a non-zero exit is returned in the
:class:`CommandResult` and judged by the caller, because several checks
(``test -f``, ``docker volume inspect``) use the exit code as a boolean.

Only transport failures are raised: ``ErrorKind.CONNECTION`` and
``ErrorKind.AUTHENTICATION`` from :meth:`RemoteExecutor.connect`,
``ErrorKind.TIMEOUT`` and ``ErrorKind.CONNECTION`` from
:meth:`RemoteSession.run`. :func:`run_with_retry` retries connection
failures with a 1s/2s/4s backoff.
"""
from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, TypeVar

import paramiko
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
)

from ..errors import DbxError, ErrorKind
from .classify import classify_transport_error

if TYPE_CHECKING:
    from ..config import VpsConfig

LOGGER = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_COMMAND_TIMEOUT = 120.0
RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0)
POLL_INTERVAL = 0.05
READ_CHUNK = 32768
REDACTED = "***"

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class SshSettings:
    """Connection parameters for one managed host."""

    host: str
    user: str
    port: int = 22
    key_path: Path = Path("~/.ssh/id_rsa")
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT

    @classmethod
    def from_config(cls, vps: VpsConfig) -> SshSettings:
        """Build settings from the ``vps`` config section."""
        return cls(
            host=vps.host,
            user=vps.user,
            port=vps.port,
            key_path=vps.ssh_key_path,
            connect_timeout=vps.connect_timeout,
            command_timeout=vps.command_timeout,
        )


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one remote command."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """Return True when the command exited with status 0."""
        return self.exit_code == 0


class RemoteSession:
    """An authenticated SSH connection owned by a single caller."""

    def __init__(
        self,
        client: paramiko.SSHClient,
        settings: SshSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
        poll: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._settings = settings
        self._clock = clock
        self._poll = poll
        self._closed = False

    @property
    def host(self) -> str:
        """Return the remote host name."""
        return self._settings.host

    @property
    def user(self) -> str:
        """Return the remote login user."""
        return self._settings.user

    @property
    def closed(self) -> bool:
        """Return True once the session has been disconnected."""
        return self._closed

    def __enter__(self) -> RemoteSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying client. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._client.close()
        LOGGER.debug("Disconnected from %s", self.host)

    def run(
        self,
        command: str,
        timeout: float | None = None,
        *,
        redact: Iterable[str] = (),
        stdin: bytes | None = None,
    ) -> CommandResult:
        """Run *command* and wait at most *timeout* seconds for it to finish.

        Values in *redact* are masked in log lines and error messages. Bytes in
        *stdin* are written to the command before its input is closed. When
        the deadline passes the channel is closed locally; the remote process
        may keep running.
        """
        if self._closed:
            raise DbxError(
                ErrorKind.COMMAND,
                "Remote session is already closed.",
                host=self.host,
            )
        secrets = tuple(value for value in redact if value)
        shown = _mask(command, secrets)
        limit = self._settings.command_timeout if timeout is None else timeout
        started = self._clock()

        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise DbxError(
                ErrorKind.CONNECTION,
                f"SSH connection to {self.host} was lost.",
                host=self.host,
                remediation="Re-run the command; dbxctl reconciles state on the next run.",
            )
        try:
            channel = transport.open_session(timeout=limit)
        except (paramiko.SSHException, OSError) as exc:
            raise self._start_failure(shown, exc) from exc

        stdout: list[bytes] = []
        stderr: list[bytes] = []
        try:
            try:
                channel.exec_command(command)
                if stdin is not None:
                    channel.sendall(stdin)
                    channel.shutdown_write()
            except (paramiko.SSHException, OSError) as exc:
                raise self._start_failure(shown, exc) from exc
            while True:
                drained = False
                if channel.recv_ready():
                    stdout.append(channel.recv(READ_CHUNK))
                    drained = True
                if channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(READ_CHUNK))
                    drained = True
                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break
                if self._clock() - started >= limit:
                    raise DbxError(
                        ErrorKind.TIMEOUT,
                        f"Remote command timed out after {limit:g}s.",
                        host=self.host,
                        detail=shown,
                        remediation=(
                            "The command may still be running on the host.\n"
                            "Check the host load, then retry or raise the timeout "
                            "(vps.command_timeout)."
                        ),
                    )
                if not drained:
                    self._poll(POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
            _drain(channel, stdout, stderr)
        except OSError as exc:
            raise DbxError(
                ErrorKind.CONNECTION,
                f"SSH connection to {self.host} dropped while running a command.",
                host=self.host,
                detail=f"{shown}: {exc}",
            ) from exc
        finally:
            channel.close()

        result = CommandResult(
            command=shown,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            exit_code=exit_code,
        )
        LOGGER.debug(
            "[%s] %s -> exit %s in %.2fs",
            self.host,
            shown,
            exit_code,
            self._clock() - started,
        )
        return result

    def _start_failure(self, shown: str, exc: BaseException) -> DbxError:
        return DbxError(
            ErrorKind.CONNECTION,
            f"Failed to start remote command on {self.host}.",
            host=self.host,
            detail=f"{shown}: {exc}",
            remediation="Re-run the command; dbxctl reconciles state on the next run.",
        )

    def stream(
        self,
        command: str,
        on_stdout: Callable[[str], None],
        on_stderr: Callable[[str], None],
    ) -> CommandResult:
        """Run *command* without a deadline, forwarding output as it arrives.

        Used for ``docker logs --follow``; the caller stops it by closing the
        session. The returned result carries the collected stderr only.
        """
        if self._closed:
            raise DbxError(ErrorKind.COMMAND, "Remote session is already closed.", host=self.host)
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise DbxError(
                ErrorKind.CONNECTION,
                f"SSH connection to {self.host} was lost.",
                host=self.host,
            )
        stderr: list[bytes] = []
        try:
            channel = transport.open_session()
            try:
                channel.exec_command(command)
                while True:
                    drained = False
                    if channel.recv_ready():
                        on_stdout(channel.recv(READ_CHUNK).decode("utf-8", errors="replace"))
                        drained = True
                    if channel.recv_stderr_ready():
                        chunk = channel.recv_stderr(READ_CHUNK)
                        stderr.append(chunk)
                        on_stderr(chunk.decode("utf-8", errors="replace"))
                        drained = True
                    if (
                        channel.exit_status_ready()
                        and not channel.recv_ready()
                        and not channel.recv_stderr_ready()
                    ):
                        break
                    if not drained:
                        self._poll(POLL_INTERVAL)
                exit_code = channel.recv_exit_status()
            finally:
                channel.close()
        except (paramiko.SSHException, OSError) as exc:
            raise DbxError(
                ErrorKind.CONNECTION,
                f"SSH connection to {self.host} dropped while streaming output.",
                host=self.host,
                detail=f"{command}: {exc}",
            ) from exc
        return CommandResult(
            command=command, stdout="", stderr=_decode(stderr), exit_code=exit_code
        )


class RemoteExecutor:
    """Open :class:`RemoteSession` objects for one host."""

    def __init__(
        self,
        settings: SshSettings,
        *,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock

    @property
    def host(self) -> str:
        """Return the remote host name."""
        return self.settings.host

    def connect(self) -> RemoteSession:
        """Load the key, open the transport and authenticate."""
        settings = self.settings
        key_path = settings.key_path.expanduser()
        if not key_path.is_file():
            raise DbxError(
                ErrorKind.AUTHENTICATION,
                f"SSH key not found: {key_path}",
                host=settings.host,
                resource=str(key_path),
                remediation=(
                    "Set vps.ssh_key_path in dbx.yml to an existing private key.\n"
                    f"Generate one with: ssh-keygen -t ed25519 -f {key_path}"
                ),
            )
        if not os.access(key_path, os.R_OK):
            raise DbxError(
                ErrorKind.AUTHENTICATION,
                f"SSH key is not readable: {key_path}",
                host=settings.host,
                resource=str(key_path),
                remediation=f"Fix the key permissions: chmod 600 {key_path}",
            )

        client = self._client_factory()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        LOGGER.debug("Connecting to %s@%s:%s", settings.user, settings.host, settings.port)
        try:
            client.connect(
                hostname=settings.host,
                port=settings.port,
                username=settings.user,
                key_filename=str(key_path),
                timeout=settings.connect_timeout,
                banner_timeout=settings.connect_timeout,
                auth_timeout=settings.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise classify_transport_error(
                exc,
                host=settings.host,
                port=settings.port,
                user=settings.user,
                key_path=key_path,
            ) from exc
        return RemoteSession(client, settings, clock=self._clock)

    def execute(
        self,
        session: RemoteSession,
        command: str,
        timeout: float | None = None,
        *,
        redact: Iterable[str] = (),
    ) -> CommandResult:
        """Run *command* on *session* (see :meth:`RemoteSession.run`)."""
        return session.run(command, timeout, redact=redact)

    def disconnect(self, session: RemoteSession) -> None:
        """Close *session*."""
        session.close()

    def connect_with_retry(self, delays: Sequence[float] = RETRY_DELAYS) -> RemoteSession:
        """Connect, retrying connection failures on the backoff schedule."""
        return self.retrying(self.connect, delays)

    def retrying(self, operation: Callable[[], T], delays: Sequence[float] = RETRY_DELAYS) -> T:
        """Run *operation*, retrying only retryable (connection) failures.

        Each delay in *delays* buys one extra attempt; once they are used up
        the last error is raised unchanged.
        """
        retryer = Retrying(
            stop=stop_after_attempt(len(delays) + 1),
            wait=wait_chain(*(wait_fixed(delay) for delay in delays)),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return retryer(operation)

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        LOGGER.info(
            "Connection to %s failed (%s); retry %s in %gs",
            self.host,
            exc.message if isinstance(exc, DbxError) else exc,
            state.attempt_number,
            delay,
        )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DbxError) and exc.kind.retryable


def run_with_retry(
    executor: RemoteExecutor,
    command: str,
    timeout: float | None = None,
    *,
    delays: Sequence[float] = RETRY_DELAYS,
    redact: Iterable[str] = (),
) -> CommandResult:
    """Connect, run *command* and disconnect, retrying connection failures."""
    secrets = tuple(redact)

    def attempt() -> CommandResult:
        session = executor.connect()
        try:
            return executor.execute(session, command, timeout, redact=secrets)
        finally:
            executor.disconnect(session)

    return executor.retrying(attempt, delays)


def _drain(channel: paramiko.Channel, stdout: list[bytes], stderr: list[bytes]) -> None:
    while channel.recv_ready():
        stdout.append(channel.recv(READ_CHUNK))
    while channel.recv_stderr_ready():
        stderr.append(channel.recv_stderr(READ_CHUNK))


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace").strip()


def _mask(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    return text


__all__ = [
    "CommandResult",
    "RETRY_DELAYS",
    "RemoteExecutor",
    "RemoteSession",
    "SshSettings",
    "run_with_retry",
]
