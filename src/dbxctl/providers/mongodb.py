"""MongoDB operations executed inside the instance container."""
from __future__ import annotations

import json
import logging
import re
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass

from tenacity import Retrying, retry_if_result, wait_exponential

from ..errors import DbxError, ErrorKind
from ..remote.classify import is_auth_failure, is_user_already_exists
from ..remote.executor import CommandResult
from .docker import DockerProvider

LOGGER = logging.getLogger(__name__)

ROOT_USER = "root"
CONTAINER_PORT = 27017
DATA_MOUNT = "/data/db"
AUTH_DATABASE = "admin"
PING_TIMEOUT = 10.0
USER_TIMEOUT = 15.0
ARCHIVE_TIMEOUT = 300.0
READY_INITIAL_DELAY = 0.5
READY_BACKOFF = 1.5
READY_MAX_DELAY = 5.0
PING_OK = re.compile(r"ok\s*[:=]\s*1")


@dataclass(slots=True)
class MongoProvider:
    """Drive ``mongosh``, ``mongodump`` and ``mongorestore`` through ``docker exec``."""

    docker: DockerProvider
    shell_bin: str = "mongosh"

    def _shell(
        self,
        container: str,
        root_password: str,
        script: str,
        *,
        timeout: float,
        redact: tuple[str, ...] = (),
    ) -> CommandResult:
        argv = [
            self.shell_bin,
            "--quiet",
            "-u",
            ROOT_USER,
            "-p",
            root_password,
            "--authenticationDatabase",
            AUTH_DATABASE,
            "--eval",
            script,
        ]
        return self.docker.exec(
            container, argv, timeout=timeout, redact=(root_password, *redact)
        )

    def ping(self, container: str, root_password: str) -> bool:
        """Return True when the server answers an authenticated ping."""
        try:
            result = self._shell(
                container,
                root_password,
                "db.adminCommand({ ping: 1 })",
                timeout=PING_TIMEOUT,
            )
        except DbxError as exc:
            if exc.kind is ErrorKind.TIMEOUT:
                return False
            raise
        return result.ok and bool(PING_OK.search(result.stdout))

    def wait_until_ready(
        self,
        container: str,
        root_password: str,
        *,
        timeout: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> float:
        """Poll until the server answers, returning the seconds waited.

        Raises ``CONTAINER_EXITED`` as soon as the container stops and
        ``READINESS_TIMEOUT`` when it keeps running without answering.
        """
        started = clock()
        deadline = started + timeout
        backoff = wait_exponential(
            multiplier=READY_INITIAL_DELAY, exp_base=READY_BACKOFF, max=READY_MAX_DELAY
        )

        def remaining() -> float:
            return deadline - clock()

        def attempt() -> bool:
            if not self.docker.is_running(container):
                raise DbxError(
                    ErrorKind.CONTAINER_EXITED,
                    f"Container {container} stopped while waiting for MongoDB to start.",
                    host=self.docker.session.host,
                    resource=container,
                    detail=self.docker.logs(container) or None,
                    remediation=(
                        f"Inspect the full logs: docker logs {container}\n"
                        "A volume initialised with different root credentials is a common cause."
                    ),
                )
            return self.ping(container, root_password)

        retryer = Retrying(
            stop=lambda state: remaining() <= 0,
            wait=lambda state: max(min(backoff(state), remaining()), 0.0),
            retry=retry_if_result(lambda answered: not answered),
            retry_error_callback=lambda state: False,
            sleep=sleep,
        )
        if not retryer(attempt):
            raise DbxError(
                ErrorKind.READINESS_TIMEOUT,
                f"MongoDB in {container} did not become ready within {timeout:g}s.",
                host=self.docker.session.host,
                resource=container,
                remediation=(
                    f"The container is still running; check: docker logs {container}\n"
                    "On slow hosts raise mongodb.ready_timeout in dbx.yml."
                ),
            )
        waited = clock() - started
        LOGGER.debug(
            "MongoDB in %s ready after %s attempts (%.1fs)",
            container,
            retryer.statistics.get("attempt_number"),
            waited,
        )
        return waited

    def create_user(
        self,
        container: str,
        root_password: str,
        *,
        username: str,
        password: str,
        database: str,
    ) -> bool:
        """Create a ``readWrite`` user scoped to *database*.

        Returns False when the user already exists.
        """
        document = {
            "user": username,
            "pwd": password,
            "roles": [{"role": "readWrite", "db": database}],
        }
        script = (
            "try { "
            f"db.getSiblingDB({json.dumps(AUTH_DATABASE)}).createUser({json.dumps(document)}); "
            'print("User created"); '
            "} catch (e) { "
            'if (e.code === 51003) { print("User already exists"); } else { throw e; } '
            "}"
        )
        try:
            result = self._shell(
                container, root_password, script, timeout=USER_TIMEOUT, redact=(password,)
            )
        except DbxError as exc:
            if exc.kind is ErrorKind.TIMEOUT:
                raise DbxError(
                    ErrorKind.USER_CREATE,
                    f"Timed out creating user {username}.",
                    host=self.docker.session.host,
                    resource=username,
                    remediation=f"Check the server: docker logs {container}",
                ) from exc
            raise
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        if is_user_already_exists(output):
            return False
        if result.ok:
            return True
        remediation = f"Inspect the server logs: docker logs {container}"
        if is_auth_failure(output):
            remediation = (
                "The root password stored in state does not match the volume.\n"
                "The volume was probably initialised by an earlier instance; "
                "destroy it or restore the matching state."
            )
        raise DbxError(
            ErrorKind.USER_CREATE,
            f"Failed to create user {username} on {database}.",
            host=self.docker.session.host,
            resource=username,
            detail=output.replace(password, "***").replace(root_password, "***") or None,
            remediation=remediation,
        )

    # ------------------------------------------------------------------
    # Archive tooling
    # ------------------------------------------------------------------
    def dump(
        self,
        container: str,
        root_password: str,
        *,
        database: str,
        target: str,
    ) -> CommandResult:
        """Stream a ``mongodump`` archive of *database* into host file *target*."""
        argv = [
            "mongodump",
            "-u",
            ROOT_USER,
            "-p",
            root_password,
            "--authenticationDatabase",
            AUTH_DATABASE,
            "--db",
            database,
            "--archive",
        ]
        return self.docker.exec(
            container,
            argv,
            timeout=ARCHIVE_TIMEOUT,
            redact=(root_password,),
            suffix=f"> {shlex.quote(target)}",
        )

    def restore(
        self,
        container: str,
        root_password: str,
        *,
        database: str,
        source: str,
    ) -> CommandResult:
        """Replace *database* with the archive in host file *source*."""
        argv = [
            "mongorestore",
            "-u",
            ROOT_USER,
            "-p",
            root_password,
            "--authenticationDatabase",
            AUTH_DATABASE,
            "--nsInclude",
            f"{database}.*",
            "--drop",
            "--archive",
        ]
        return self.docker.exec(
            container,
            argv,
            timeout=ARCHIVE_TIMEOUT,
            redact=(root_password,),
            interactive=True,
            suffix=f"< {shlex.quote(source)}",
        )


__all__ = ["CONTAINER_PORT", "DATA_MOUNT", "MongoProvider", "ROOT_USER"]
