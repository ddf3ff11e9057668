"""Ensure a usable Docker engine on the managed host.

:meth:`DockerRuntimeManager.ensure_ready` is idempotent: on a host that
already runs a recent Docker it only runs three read-only checks. Elevated commands
rely on passwordless ``sudo`` for the SSH user.
"""
from __future__ import annotations

import logging
import re
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version

from ..errors import DbxError, ErrorKind
from ..logging import Reporter
from ..remote.classify import is_docker_permission_denied
from ..remote.executor import RemoteSession

LOGGER = logging.getLogger(__name__)

MIN_DOCKER_VERSION = Version("20.10")
INSTALL_SCRIPT_URL = "https://get.docker.com"
INSTALL_SCRIPT_PATH = "/tmp/get-docker.sh"
DOWNLOAD_TIMEOUT = 60.0
INSTALL_TIMEOUT = 300.0
CHECK_TIMEOUT = 10.0
PERMISSION_CHECK_TIMEOUT = 5.0
SERVICE_TIMEOUT = 30.0
DAEMON_SETTLE_SECONDS = 2.0
VERSION_PATTERN = re.compile(r"Docker version (\d+)\.(\d+)(?:\.(\d+))?")


@dataclass(slots=True)
class DockerVersionInfo:
    """Parsed ``docker --version`` output; ``version`` is None when unparseable."""

    raw: str
    version: str | None


@dataclass(slots=True)
class DockerReadiness:
    """Outcome of :meth:`DockerRuntimeManager.ensure_ready`."""

    version: str
    installed: bool = False
    daemon_started: bool = False
    needs_sudo: bool = False
    group_added: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DockerRuntimeManager:
    """Install, start and grant access to Docker over a remote session."""

    session: RemoteSession
    reporter: Reporter
    sleep: Callable[[float], None] = time.sleep

    def detect_version(self) -> DockerVersionInfo | None:
        """Return the installed Docker version, or None when docker is absent."""
        result = self.session.run("docker --version", CHECK_TIMEOUT)
        if result.ok:
            match = VERSION_PATTERN.search(result.stdout)
            if match:
                major, minor, patch = match.group(1), match.group(2), match.group(3) or "0"
                return DockerVersionInfo(raw=result.stdout, version=f"{major}.{minor}.{patch}")
        which = self.session.run("command -v docker", CHECK_TIMEOUT)
        if which.ok and which.stdout:
            return DockerVersionInfo(raw=result.stdout or result.stderr, version=None)
        return None

    def ensure_ready(self, user: str) -> DockerReadiness:
        """Make sure Docker is installed, running and usable by *user*."""
        readiness = DockerReadiness(version="unknown")

        info = self.detect_version()
        if info is None:
            self.reporter.step("Docker not found; installing it (allow up to 5 minutes)")
            self._install(user)
            readiness.installed = True
            info = self.detect_version()
            if info is None:
                raise DbxError(
                    ErrorKind.DOCKER_INSTALL,
                    "Docker installation reported success but the docker binary is still missing.",
                    host=self.session.host,
                    remediation=(
                        "The host environment looks broken; install Docker manually:\n"
                        "https://docs.docker.com/engine/install/"
                    ),
                )
            self.reporter.success("Docker installed")

        if info.version is None:
            self._warn(readiness, f"Could not parse Docker version from {info.raw!r}; continuing.")
        else:
            readiness.version = info.version
            if _is_below_minimum(info.version):
                self._warn(
                    readiness,
                    f"Docker {info.version} is older than the minimum supported "
                    f"{MIN_DOCKER_VERSION}; continuing.",
                )

        readiness.daemon_started = self._ensure_daemon(user)
        self._ensure_permissions(user, readiness)
        LOGGER.debug("Docker ready on %s: %s", self.session.host, readiness)
        return readiness

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _install(self, user: str) -> None:
        script = shlex.quote(INSTALL_SCRIPT_PATH)
        download = self.session.run(
            f"curl -fsSL {INSTALL_SCRIPT_URL} -o {script}", DOWNLOAD_TIMEOUT
        )
        if not download.ok:
            raise DbxError(
                ErrorKind.DOCKER_INSTALL,
                "Failed to download the Docker installation script.",
                host=self.session.host,
                resource=INSTALL_SCRIPT_URL,
                detail=download.stderr or None,
                remediation=(
                    "Check outbound HTTPS from the host: curl -I https://get.docker.com\n"
                    "Make sure curl is installed."
                ),
            )
        try:
            result = self.session.run(_as_root(user, f"sh {script}"), INSTALL_TIMEOUT)
        finally:
            self._remove_installer()
        if not result.ok:
            raise DbxError(
                ErrorKind.DOCKER_INSTALL,
                f"Docker installation script failed (exit {result.exit_code}).",
                host=self.session.host,
                detail=_tail(result.stderr or result.stdout) or None,
                remediation=(
                    "Make sure the SSH user has passwordless sudo, or install Docker manually:\n"
                    "https://docs.docker.com/engine/install/"
                ),
            )

    def _remove_installer(self) -> None:
        try:
            self.session.run(f"rm -f {shlex.quote(INSTALL_SCRIPT_PATH)}", CHECK_TIMEOUT)
        except DbxError as exc:
            LOGGER.debug("Could not remove %s: %s", INSTALL_SCRIPT_PATH, exc.message)

    def _daemon_responds(self, user: str) -> bool:
        try:
            result = self.session.run("docker ps -q", CHECK_TIMEOUT)
            if result.ok or not is_docker_permission_denied(result.stderr):
                return result.ok
            return self.session.run(_as_root(user, "docker ps -q"), CHECK_TIMEOUT).ok
        except DbxError as exc:
            if exc.kind is ErrorKind.TIMEOUT:
                return False
            raise

    def _ensure_daemon(self, user: str) -> bool:
        if self._daemon_responds(user):
            return False
        self.reporter.step("Docker daemon is not responding; starting it")
        start = self.session.run(_as_root(user, "systemctl start docker"), SERVICE_TIMEOUT)
        self.sleep(DAEMON_SETTLE_SECONDS)
        if self._daemon_responds(user):
            self.reporter.success("Docker daemon started")
            return True
        raise DbxError(
            ErrorKind.DOCKER_DAEMON,
            "Docker daemon did not become responsive after starting it.",
            host=self.session.host,
            resource="docker.service",
            detail=start.stderr or None,
            remediation=(
                "Inspect the service: sudo systemctl status docker\n"
                "Recent daemon logs: sudo journalctl -u docker -n 50"
            ),
        )

    def _ensure_permissions(self, user: str, readiness: DockerReadiness) -> None:
        try:
            check = self.session.run("docker ps -q", PERMISSION_CHECK_TIMEOUT)
        except DbxError as exc:
            if exc.kind is not ErrorKind.TIMEOUT:
                raise
            readiness.needs_sudo = True
            self._warn(readiness, "Unprivileged docker check timed out; using sudo for Docker.")
            return
        if check.ok:
            return

        readiness.needs_sudo = True
        if not is_docker_permission_denied(check.stderr):
            self._warn(
                readiness,
                f"docker ps failed for {user} ({check.stderr or check.exit_code}); using sudo.",
            )
            return

        fix = self.session.run(f"sudo usermod -aG docker {shlex.quote(user)}", SERVICE_TIMEOUT)
        if fix.ok:
            readiness.group_added = True
            self._warn(
                readiness,
                f"Added {user} to the docker group; this takes effect on the next SSH "
                "session. Using sudo for Docker until then.",
            )
        else:
            self._warn(
                readiness,
                f"Could not add {user} to the docker group ({fix.stderr or fix.exit_code}); "
                "using sudo for Docker.",
            )

    def _warn(self, readiness: DockerReadiness, message: str) -> None:
        readiness.warnings.append(message)
        self.reporter.warning(message)


def _is_below_minimum(version: str) -> bool:
    try:
        return Version(version) < MIN_DOCKER_VERSION
    except InvalidVersion:
        return False


def _as_root(user: str, command: str) -> str:
    # root logins often have no sudo binary at all.
    return command if user == "root" else f"sudo {command}"


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.splitlines()[-lines:])


__all__ = [
    "DockerReadiness",
    "DockerRuntimeManager",
    "DockerVersionInfo",
    "MIN_DOCKER_VERSION",
]
