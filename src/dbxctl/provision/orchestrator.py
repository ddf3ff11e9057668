"""Provision a MongoDB instance for one environment.

:meth:`Provisioner.provision` runs eleven steps in a fixed order over a
single SSH session. Each step is idempotent on its own (an existing volume,
image or user is reused), but the sequence is not transactional: a failure
leaves the completed steps in place and raises a :class:`DbxError` tagged
with the failing step. The next run reconciles state and picks up the
leftovers.

State is committed last, local copy first. When the host copy cannot be
written after the local copy succeeded the run still returns, with
:attr:`ProvisionStatus.PARTIAL`; the instance is usable and the next
reconciliation restores the host record.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from ..config import AppConfig
from ..credentials import InstanceCredentials, generate_credentials
from ..errors import DbxError
from ..logging import Reporter
from ..ports import allocate_port
from ..providers.docker import ContainerSpec, DockerProvider
from ..providers.docker_runtime import DockerRuntimeManager
from ..providers.mongodb import CONTAINER_PORT, DATA_MOUNT, ROOT_USER, MongoProvider
from ..remote.executor import RemoteExecutor
from ..state.schema import InstanceRecord, instance_key
from ..state.store import StateStore, remote_store
from .reconcile import ReconcileAction, Reconciler
from .uri import build_connection_uri

LOGGER = logging.getLogger(__name__)


class ProvisionStep(str, Enum):
    """The provisioning steps, in execution order."""

    LOAD_CONFIG = "load-config"
    RECONCILE = "reconcile"
    DOCKER_READY = "docker-ready"
    ALLOCATE_PORT = "allocate-port"
    CREDENTIALS = "credentials"
    VOLUME = "volume"
    IMAGE = "image"
    CONTAINER = "container"
    READINESS = "readiness"
    APP_USER = "app-user"
    STATE = "state"

    @property
    def number(self) -> int:
        """Return the 1-based position of the step."""
        return list(ProvisionStep).index(self) + 1

    @property
    def label(self) -> str:
        """Return the operator-facing step description."""
        return _STEP_LABELS[self]


_STEP_LABELS = {
    ProvisionStep.LOAD_CONFIG: "Loading configuration",
    ProvisionStep.RECONCILE: "Checking existing state",
    ProvisionStep.DOCKER_READY: "Ensuring Docker is ready on the host",
    ProvisionStep.ALLOCATE_PORT: "Allocating port",
    ProvisionStep.CREDENTIALS: "Generating credentials",
    ProvisionStep.VOLUME: "Creating Docker volume",
    ProvisionStep.IMAGE: "Pulling MongoDB image",
    ProvisionStep.CONTAINER: "Starting MongoDB container",
    ProvisionStep.READINESS: "Waiting for MongoDB to become ready",
    ProvisionStep.APP_USER: "Creating application user",
    ProvisionStep.STATE: "Updating state files",
}


class ProvisionStatus(str, Enum):
    """Overall outcome of :meth:`Provisioner.provision`."""

    CREATED = "created"
    EXISTS = "exists"
    PARTIAL = "partial"


@dataclass(frozen=True, slots=True)
class StepRecord:
    """A completed step and what it did."""

    step: ProvisionStep
    detail: str


@dataclass(slots=True)
class ProvisionResult:
    """Outcome of one provisioning run."""

    status: ProvisionStatus
    key: str
    host: str
    record: InstanceRecord
    uri: str
    masked_uri: str
    elapsed: float = 0.0
    reconcile_action: ReconcileAction = ReconcileAction.NONE
    steps: list[StepRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: DbxError | None = None

    def to_dict(self, *, show_password: bool = False) -> dict[str, object]:
        """Return a JSON-serialisable summary; the password is masked by default."""
        payload: dict[str, object] = {
            "status": self.status.value,
            "key": self.key,
            "host": self.host,
            "port": self.record.port,
            "database": self.record.db_name,
            "username": self.record.username,
            "container": self.record.container_name,
            "volume": self.record.volume,
            "uri": self.uri if show_password else self.masked_uri,
            "elapsed_seconds": round(self.elapsed, 1),
            "reconcile_action": self.reconcile_action.value,
            "steps": [{"step": item.step.value, "detail": item.detail} for item in self.steps],
            "warnings": list(self.warnings),
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


def resource_name(project: str, env: str) -> str:
    """Return the shared volume/container name for an environment."""
    return f"dbx_{project}_{env}"


def app_username(env: str) -> str:
    """Return the application user created for *env*."""
    return f"dbx_{env}"


def database_name(project: str, env: str) -> str:
    """Return the database the application user may write to."""
    return f"{project}_{env}"


class Provisioner:
    """Run the provisioning sequence for the configured project."""

    def __init__(
        self,
        config: AppConfig,
        executor: RemoteExecutor,
        local_store: StateStore,
        reporter: Reporter,
        *,
        remote_state_path: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        credentials_factory: Callable[[], InstanceCredentials] = generate_credentials,
    ) -> None:
        self.config = config
        self.executor = executor
        self.local_store = local_store
        self.reporter = reporter
        self.remote_state_path = remote_state_path or config.state.remote_path
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._credentials_factory = credentials_factory

    @property
    def host(self) -> str:
        """Return the managed host name."""
        return self.config.vps.host

    def provision(self, env: str) -> ProvisionResult:
        """Ensure an instance exists for *env* and return its connection details."""
        started = self._clock()
        project = self.config.project
        key = instance_key(project, env)
        steps: list[StepRecord] = []
        warnings: list[str] = []

        with self._step(ProvisionStep.LOAD_CONFIG):
            steps.append(StepRecord(ProvisionStep.LOAD_CONFIG, f"project {project}"))
            self.reporter.success(f"Configuration loaded for project {project}")

        with self._step(ProvisionStep.RECONCILE):
            session = self.executor.connect_with_retry()

        with session:
            docker = DockerProvider(session)
            remote = remote_store(session, self.remote_state_path)

            with self._step(ProvisionStep.RECONCILE, resource=key, announce=False):
                reconciler = Reconciler(self.local_store, remote, docker.is_running, self.reporter)
                outcome = reconciler.reconcile(key)
            steps.append(StepRecord(ProvisionStep.RECONCILE, outcome.action.value))
            if outcome.record is not None:
                self.reporter.success(f"Instance {key} already exists")
                return self._result(
                    ProvisionStatus.EXISTS,
                    key,
                    outcome.record,
                    started,
                    reconcile_action=outcome.action,
                    steps=steps,
                    warnings=warnings,
                )
            self.reporter.success("No existing instance found")

            with self._step(ProvisionStep.DOCKER_READY):
                runtime = DockerRuntimeManager(session, self.reporter, sleep=self._sleep)
                readiness = runtime.ensure_ready(session.user)
            docker.sudo = docker.sudo or readiness.needs_sudo
            warnings.extend(readiness.warnings)
            steps.append(StepRecord(ProvisionStep.DOCKER_READY, f"docker {readiness.version}"))
            self.reporter.success(f"Docker {readiness.version} ready")

            with self._step(ProvisionStep.ALLOCATE_PORT):
                port = allocate_port(
                    self.local_store.read(),
                    remote.read(),
                    self.config.mongodb.base_port,
                    reporter=self.reporter,
                )
            steps.append(StepRecord(ProvisionStep.ALLOCATE_PORT, str(port)))
            self.reporter.success(f"Allocated port {port}")

            with self._step(ProvisionStep.CREDENTIALS):
                credentials = self._credentials_factory()
            steps.append(StepRecord(ProvisionStep.CREDENTIALS, "generated"))
            self.reporter.success("Generated root and application passwords")

            volume = resource_name(project, env)
            with self._step(ProvisionStep.VOLUME, resource=volume):
                created = docker.create_volume(volume)
            if created:
                steps.append(StepRecord(ProvisionStep.VOLUME, f"created {volume}"))
                self.reporter.success(f"Created volume {volume}")
            else:
                steps.append(StepRecord(ProvisionStep.VOLUME, f"reused {volume}"))
                message = (
                    f"Volume {volume} already exists and is reused; MongoDB keeps the root "
                    "credentials the volume was first initialised with."
                )
                warnings.append(message)
                self.reporter.warning(message)

            image = self.config.mongodb.image_ref
            with self._step(ProvisionStep.IMAGE, resource=image):
                pulled = docker.ensure_image(image)
            action = "pulled" if pulled else "cached"
            steps.append(StepRecord(ProvisionStep.IMAGE, f"{action} {image}"))
            self.reporter.success(f"Pulled {image}" if pulled else f"Image {image} already present")

            container = resource_name(project, env)
            spec = ContainerSpec(
                name=container,
                image=image,
                host_port=port,
                container_port=CONTAINER_PORT,
                volume=volume,
                mount_point=DATA_MOUNT,
                environment=(
                    ("MONGO_INITDB_ROOT_USERNAME", ROOT_USER),
                    ("MONGO_INITDB_ROOT_PASSWORD", credentials.root_password),
                ),
                redact=(credentials.root_password,),
            )
            with self._step(ProvisionStep.CONTAINER, resource=container):
                docker.run_container(spec)
            steps.append(StepRecord(ProvisionStep.CONTAINER, container))
            self.reporter.success(f"Started container {container} on port {port}")

            mongo = MongoProvider(docker)
            with self._step(ProvisionStep.READINESS, resource=container):
                waited = mongo.wait_until_ready(
                    container,
                    credentials.root_password,
                    timeout=self.config.mongodb.ready_timeout,
                    sleep=self._sleep,
                    clock=self._clock,
                )
            steps.append(StepRecord(ProvisionStep.READINESS, f"{waited:.1f}s"))
            self.reporter.success(f"MongoDB ready after {waited:.1f}s")

            username = app_username(env)
            database = database_name(project, env)
            with self._step(ProvisionStep.APP_USER, resource=username):
                user_created = mongo.create_user(
                    container,
                    credentials.root_password,
                    username=username,
                    password=credentials.app_password,
                    database=database,
                )
            steps.append(
                StepRecord(ProvisionStep.APP_USER, "created" if user_created else "exists")
            )
            self.reporter.success(
                f"Created user {username} on {database}"
                if user_created
                else f"User {username} already exists"
            )

            record = InstanceRecord(
                port=port,
                db_name=database,
                username=username,
                password=credentials.app_password,
                root_password=credentials.root_password,
                volume=volume,
                container_name=container,
                created_at=self._now().isoformat(),
            )
            with self._step(ProvisionStep.STATE, resource=self.local_store.location):
                self.local_store.set(key, record)
            self.reporter.success("Local state updated")

            try:
                with self._step(ProvisionStep.STATE, resource=remote.location, announce=False):
                    remote.set(key, record)
            except DbxError as exc:
                LOGGER.debug("Remote state write failed for %s: %s", key, exc.message)
                steps.append(StepRecord(ProvisionStep.STATE, "local only"))
                warnings.append(
                    "The host state copy was not updated; it is restored on the next run."
                )
                self.reporter.warning(f"Remote state update failed: {exc.message}")
                return self._result(
                    ProvisionStatus.PARTIAL,
                    key,
                    record,
                    started,
                    steps=steps,
                    warnings=warnings,
                    error=exc,
                )
            steps.append(StepRecord(ProvisionStep.STATE, "local and remote"))
            self.reporter.success("Remote state updated")

        return self._result(
            ProvisionStatus.CREATED, key, record, started, steps=steps, warnings=warnings
        )

    # ------------------------------------------------------------------
    @contextmanager
    def _step(
        self,
        step: ProvisionStep,
        *,
        resource: str | None = None,
        announce: bool = True,
    ) -> Iterator[None]:
        if announce:
            self.reporter.step(f"Step {step.number}/{len(ProvisionStep)}: {step.label}")
        try:
            yield
        except DbxError as exc:
            exc.annotate(host=self.host, step=step.value, resource=resource)
            raise

    def _result(
        self,
        status: ProvisionStatus,
        key: str,
        record: InstanceRecord,
        started: float,
        *,
        reconcile_action: ReconcileAction = ReconcileAction.NONE,
        steps: list[StepRecord],
        warnings: list[str],
        error: DbxError | None = None,
    ) -> ProvisionResult:
        return ProvisionResult(
            status=status,
            key=key,
            host=self.host,
            record=record,
            uri=build_connection_uri(record, self.host),
            masked_uri=build_connection_uri(record, self.host, masked=True),
            elapsed=self._clock() - started,
            reconcile_action=reconcile_action,
            steps=steps,
            warnings=warnings,
            error=error,
        )


__all__ = [
    "ProvisionResult",
    "ProvisionStatus",
    "ProvisionStep",
    "Provisioner",
    "StepRecord",
    "app_username",
    "database_name",
    "resource_name",
]
