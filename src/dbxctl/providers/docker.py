"""Docker CLI provider driven over a :class:`RemoteSession`.

Commands run as the SSH user. If Docker rejects a call because the user
cannot reach the daemon socket (not yet in the ``docker`` group), the
provider switches to ``sudo docker`` for that call and every later one.
"""
from __future__ import annotations

import logging
import shlex
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ..errors import DbxError, ErrorKind
from ..remote.classify import (
    RemovalFailure,
    classify_container_removal,
    classify_volume_removal,
    is_docker_permission_denied,
    is_no_such_container,
    is_port_in_use,
)
from ..remote.executor import CommandResult, RemoteSession

LOGGER = logging.getLogger(__name__)

CHECK_TIMEOUT = 10.0
PULL_TIMEOUT = 300.0
LOG_TAIL = 50
COMMAND_NOT_FOUND = 127


@dataclass(frozen=True, slots=True)
class ContainerSpec:
    """Parameters for ``docker run``."""

    name: str
    image: str
    host_port: int
    container_port: int
    volume: str
    mount_point: str
    environment: Sequence[tuple[str, str]] = ()
    args: Sequence[str] = ()
    restart_policy: str = "unless-stopped"
    redact: Sequence[str] = ()


@dataclass(slots=True)
class DockerProvider:
    """Manage volumes, images and containers on the remote host."""

    session: RemoteSession
    sudo: bool = False
    docker_bin: str = "docker"

    def command(self, args: str) -> str:
        """Return the full shell command for ``docker <args>``."""
        prefix = f"sudo {self.docker_bin}" if self.sudo else self.docker_bin
        return f"{prefix} {args}"

    def run(
        self,
        args: str,
        *,
        timeout: float | None = None,
        redact: Iterable[str] = (),
    ) -> CommandResult:
        """Run ``docker <args>``, escalating to sudo on socket permission errors."""
        secrets = tuple(redact)
        result = self.session.run(self.command(args), timeout, redact=secrets)
        if not result.ok and not self.sudo and is_docker_permission_denied(result.stderr):
            LOGGER.debug("docker permission denied for %s; retrying with sudo", self.session.user)
            self.sudo = True
            result = self.session.run(self.command(args), timeout, redact=secrets)
        return result

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------
    def volume_exists(self, name: str) -> bool:
        """Return True when a volume called *name* exists."""
        return self.run(f"volume inspect {shlex.quote(name)}", timeout=CHECK_TIMEOUT).ok

    def create_volume(self, name: str) -> bool:
        """Create *name* unless it exists. Returns True when it was created."""
        if self.volume_exists(name):
            return False
        result = self.run(f"volume create {shlex.quote(name)}")
        if not result.ok or not self.volume_exists(name):
            raise DbxError(
                ErrorKind.VOLUME_CREATE,
                f"Failed to create Docker volume {name}.",
                host=self.session.host,
                resource=name,
                detail=result.stderr or None,
                stderr=result.stderr,
                remediation=(
                    "Check free disk space on the host (df -h /var/lib/docker).\n"
                    f"Try creating it manually: docker volume create {name}"
                ),
            )
        return True

    def remove_volume(self, name: str) -> bool:
        """Remove *name*. Returns False when it did not exist."""
        result = self.run(f"volume rm {shlex.quote(name)}")
        if result.ok:
            return True
        failure = classify_volume_removal(result.stderr)
        if failure is RemovalFailure.NOT_FOUND:
            return False
        remediation = {
            RemovalFailure.IN_USE: (
                f"Another container still uses {name}.\n"
                f"Find it with: docker ps -a --filter volume={name}"
            ),
            RemovalFailure.PERMISSION_DENIED: "Add the SSH user to the docker group or use sudo.",
        }.get(failure)
        raise DbxError(
            ErrorKind.DESTROY,
            f"Failed to remove Docker volume {name} ({failure.value}).",
            host=self.session.host,
            resource=name,
            detail=result.stderr or None,
            stderr=result.stderr,
            remediation=remediation,
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def image_present(self, image: str) -> bool:
        """Return True when *image* is already in the host's image store."""
        return self.run(f"image inspect {shlex.quote(image)}", timeout=CHECK_TIMEOUT).ok

    def ensure_image(self, image: str) -> bool:
        """Pull *image* when absent. Returns True when a pull happened."""
        if self.image_present(image):
            return False
        result = self.run(f"pull {shlex.quote(image)}", timeout=PULL_TIMEOUT)
        if not result.ok:
            raise DbxError(
                ErrorKind.IMAGE_PULL,
                f"Failed to pull image {image}.",
                host=self.session.host,
                resource=image,
                detail=result.stderr or None,
                stderr=result.stderr,
                remediation=(
                    "Check that the tag exists (mongodb.version / mongodb.image in dbx.yml)\n"
                    "and that the host can reach the registry."
                ),
            )
        return True

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def run_container(self, spec: ContainerSpec) -> None:
        """Start *spec* detached and verify it is running."""
        parts = [
            "run",
            "-d",
            "--name",
            shlex.quote(spec.name),
            "--restart",
            spec.restart_policy,
            "-p",
            f"{spec.host_port}:{spec.container_port}",
            "-v",
            shlex.quote(f"{spec.volume}:{spec.mount_point}"),
        ]
        for key, value in spec.environment:
            parts.extend(["-e", shlex.quote(f"{key}={value}")])
        parts.append(shlex.quote(spec.image))
        parts.extend(shlex.quote(arg) for arg in spec.args)
        result = self.run(" ".join(parts), redact=spec.redact)

        if not result.ok:
            raise self._start_failure(spec, result)
        if not self.is_running(spec.name):
            raise DbxError(
                ErrorKind.CONTAINER_START,
                f"Container {spec.name} exited right after starting.",
                host=self.session.host,
                resource=spec.name,
                detail=self.logs(spec.name, tail=LOG_TAIL) or None,
                remediation=f"Inspect the logs: docker logs {spec.name}",
            )

    def _start_failure(self, spec: ContainerSpec, result: CommandResult) -> DbxError:
        if is_port_in_use(result.stderr):
            remediation = (
                f"Port {spec.host_port} is used by a process dbxctl does not track.\n"
                f"Find it with: sudo ss -ltnp 'sport = :{spec.host_port}'\n"
                "Then free it, or raise mongodb.base_port in dbx.yml."
            )
            message = f"Port {spec.host_port} is already in use on the host."
        elif "already in use by container" in result.stderr.lower():
            remediation = (
                f"A container named {spec.name} already exists outside dbxctl's state.\n"
                f"Remove it with: docker rm -f {spec.name}"
            )
            message = f"Container name {spec.name} is already taken."
        else:
            remediation = f"Inspect the Docker daemon logs: sudo journalctl -u docker -n {LOG_TAIL}"
            message = f"Failed to start container {spec.name}."
        return DbxError(
            ErrorKind.CONTAINER_START,
            message,
            host=self.session.host,
            resource=spec.name,
            detail=result.stderr or None,
            stderr=result.stderr,
            remediation=remediation,
        )

    def is_running(self, name: str) -> bool:
        """Return True when container *name* exists and is running.

        A missing container or a missing docker binary count as "not
        running"; any other failure raises, so callers never mistake an
        unreadable daemon for a stopped container.
        """
        result = self.run(
            "inspect --format '{{.State.Running}}' " + shlex.quote(name),
            timeout=CHECK_TIMEOUT,
        )
        if result.ok:
            return result.stdout.strip().lower() == "true"
        if is_no_such_container(result.stderr) or result.exit_code == COMMAND_NOT_FOUND:
            return False
        raise DbxError(
            ErrorKind.COMMAND,
            f"Cannot determine whether container {name} is running.",
            host=self.session.host,
            resource=name,
            detail=result.stderr or None,
            stderr=result.stderr,
            remediation="Check the Docker daemon: sudo systemctl status docker",
        )

    def logs(self, name: str, *, tail: int = LOG_TAIL) -> str:
        """Return the last *tail* log lines of *name* (stdout and stderr)."""
        result = self.run(f"logs --tail {int(tail)} {shlex.quote(name)}", timeout=CHECK_TIMEOUT)
        return "\n".join(part for part in (result.stdout, result.stderr) if part)

    def remove_container(self, name: str) -> bool:
        """Force-remove *name*. Returns False when it did not exist."""
        result = self.run(f"rm -f {shlex.quote(name)}")
        if result.ok:
            return True
        failure = classify_container_removal(result.stderr)
        if failure is RemovalFailure.NOT_FOUND:
            return False
        raise DbxError(
            ErrorKind.DESTROY,
            f"Failed to remove container {name} ({failure.value}).",
            host=self.session.host,
            resource=name,
            detail=result.stderr or None,
            stderr=result.stderr,
            remediation=f"Remove it manually: docker rm -f {name}",
        )

    def exec(
        self,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        redact: Iterable[str] = (),
        interactive: bool = False,
        suffix: str = "",
    ) -> CommandResult:
        """Run *argv* inside *container*; *suffix* is appended unquoted (redirections)."""
        flag = "exec -i" if interactive else "exec"
        quoted = " ".join(shlex.quote(arg) for arg in argv)
        args = f"{flag} {shlex.quote(container)} {quoted}"
        if suffix:
            args = f"{args} {suffix}"
        return self.run(args, timeout=timeout, redact=redact)


__all__ = ["ContainerSpec", "DockerProvider"]
