"""Typer-powered command line interface for ``dbxctl``.

Every command runs inside :meth:`StructuredLogger.operation` so its outcome
lands in ``operations.jsonl``. Commands that change the host or the state
files hold the global lock plus the per-environment lock for their whole
duration. Failures are rendered from the :class:`DbxError` payload and exit
with the code attached to its kind.
"""
from __future__ import annotations

import logging
import shlex
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupManager, format_size
from .config import DEFAULT_CONFIG_NAME, AppConfig, load_config, write_config
from .errors import DbxError, ErrorKind
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import ConsoleReporter, NullReporter, OperationScope, Reporter, StructuredLogger
from .provision import (
    Destroyer,
    ProvisionStatus,
    Provisioner,
    ReconcileAction,
    Reconciler,
    build_connection_uri,
    resource_name,
)
from .remote.classify import classify_logs_failure, is_docker_permission_denied
from .remote.executor import CommandResult, RemoteExecutor, SshSettings, run_with_retry
from .providers.docker import DockerProvider
from .state.schema import InstanceRecord, instance_key, is_valid_segment, split_key
from .state.store import StateStore, local_store, remote_store

console = Console()
err_console = Console(stderr=True)

DEFAULT_LOG_TAIL = 100

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help=f"Path to the project config file (defaults to ./{DEFAULT_CONFIG_NAME}).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

ENV_ARGUMENT = typer.Argument(
    None,
    help="Environment name (defaults to default_env from the config).",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the confirmation prompt.",
)

SHOW_PASSWORD_OPTION = typer.Option(
    False,
    "--show-password",
    help="Print the connection URI with the real password.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision and manage MongoDB instances in Docker on a remote host.

        Each project/environment pair gets its own container, volume, port
        and credentials. State is kept both in .dbx/state.json and on the
        host, and reconciled on every run.
        """
    ).strip(),
)


@dataclass(slots=True)
class CliOptions:
    """Global options captured by the root callback."""

    config_file: Path | None = None
    quiet: bool = False
    lock_timeout: float | None = None


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    local: StateStore
    executor: RemoteExecutor
    quiet: bool

    def reporter(self, *, json_output: bool = False) -> Reporter:
        """Return the progress sink; JSON output and ``--quiet`` silence it."""
        if self.quiet or json_output:
            return NullReporter()
        return ConsoleReporter(console=console, err_console=err_console)

    @property
    def project(self) -> str:
        """Return the configured project name."""
        return self.config.project


def _options(ctx: typer.Context) -> CliOptions:
    options = ctx.find_root().obj
    if isinstance(options, CliOptions):
        return options
    return CliOptions()


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    options = _options(ctx)
    overrides: dict[str, object] = {}
    if options.lock_timeout is not None:
        overrides["lock_timeout"] = options.lock_timeout
    try:
        config = load_config(config_file=options.config_file, overrides=overrides)
    except DbxError as exc:
        _fail(exc)
    return RuntimeContext(
        config=config,
        locks=LockManager(config.lock_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        local=local_store(config.state.local_dir),
        executor=RemoteExecutor(SshSettings.from_config(config.vps)),
        quiet=options.quiet,
    )


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the dbxctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress progress output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every remote command (secrets masked) to stderr.",
    ),
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"dbxctl {__version__}")
        raise typer.Exit(code=0)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=err_console, show_path=False)],
        )
        logging.getLogger("paramiko").setLevel(logging.WARNING)

    ctx.obj = CliOptions(config_file=config_file, quiet=quiet, lock_timeout=lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _fail(exc: DbxError) -> NoReturn:
    """Render *exc* and exit without an operation scope (config errors)."""
    err_console.print(f"[red]{escape(str(exc))}[/red]")
    raise typer.Exit(code=int(exc.kind.exit_code))


def _command_error(op: OperationScope, exc: DbxError) -> NoReturn:
    """Emit a structured error and terminate the command."""
    rc = int(exc.kind.exit_code)
    err_console.print(f"[red]{escape(str(exc))}[/red]")
    op.error(exc.message, errors=[str(exc)], rc=rc, context=exc.to_dict())
    raise typer.Exit(code=rc)


def _resolve_key(runtime: RuntimeContext, env: str | None) -> tuple[str, str]:
    name = env or runtime.config.default_env
    return name, instance_key(runtime.project, name)


def _require_record(runtime: RuntimeContext, key: str) -> InstanceRecord:
    record = runtime.local.get(key)
    if record is None:
        _, env = split_key(key)
        raise DbxError(
            ErrorKind.VALIDATION,
            f"No instance found for {key}.",
            resource=runtime.local.location,
            remediation=(
                f"Provision it with: dbxctl up {env}\n"
                "If it exists on the host, refresh local state with: dbxctl sync"
            ),
        )
    return record


def _record_summary(key: str, record: InstanceRecord) -> dict[str, object]:
    _, env = split_key(key)
    return {
        "key": key,
        "env": env,
        "port": record.port,
        "database": record.db_name,
        "username": record.username,
        "container": record.container_name,
        "volume": record.volume,
        "created_at": record.created_at,
        "last_backup": record.last_backup,
    }


# ----------------------------------------------------------------------
# init
# ----------------------------------------------------------------------
@app.command()
def init(
    ctx: typer.Context,
    project: str | None = typer.Option(None, "--project", help="Project name."),
    host: str | None = typer.Option(None, "--host", help="Remote host name or IP."),
    user: str | None = typer.Option(None, "--user", help="SSH user on the host."),
    env: str = typer.Option("dev", "--env", help="Default environment name."),
    ssh_key: str = typer.Option("~/.ssh/id_ed25519", "--ssh-key", help="SSH private key."),
    port: int = typer.Option(22, "--port", help="SSH port."),
    mongo_version: str = typer.Option("7", "--mongo-version", help="MongoDB image tag."),
    base_port: int = typer.Option(27018, "--base-port", help="First port to allocate."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file."),
) -> None:
    """Write a dbx.yml for this project and create the local state directory."""
    options = _options(ctx)
    config_path = (options.config_file or Path(DEFAULT_CONFIG_NAME)).expanduser().resolve()
    if config_path.exists() and not force:
        err_console.print(
            f"[red]{escape(str(config_path))} already exists; use --force to overwrite.[/red]"
        )
        raise typer.Exit(code=int(ExitCode.VALIDATION))

    project = project or typer.prompt("Project name", default=config_path.parent.name)
    host = host or typer.prompt("Remote host name or IP")
    user = user or typer.prompt("SSH user", default="root")
    for label, value in (("project", project), ("environment", env)):
        if not is_valid_segment(value):
            err_console.print(
                f"[red]Invalid {label} name {escape(value)!r}: use letters, digits, "
                "'-' or '_'.[/red]"
            )
            raise typer.Exit(code=int(ExitCode.VALIDATION))
    if not Path(ssh_key).expanduser().is_file():
        err_console.print(
            f"[yellow]warning:[/yellow] SSH key {escape(ssh_key)} does not exist yet."
        )

    values: dict[str, object] = {
        "project": project,
        "default_env": env,
        "vps": {"host": host, "user": user, "port": port, "ssh_key_path": ssh_key},
        "mongodb": {"version": mongo_version, "base_port": base_port},
    }
    write_config(config_path, values)
    try:
        config = load_config(config_file=config_path)
    except DbxError as exc:
        config_path.unlink(missing_ok=True)
        _fail(exc)

    state = local_store(config.state.local_dir)
    if not Path(state.location).exists():
        state.write({})
    logger = StructuredLogger(config.logs_dir)
    with logger.operation(
        "init",
        args={"force": force},
        target={"kind": "config", "path": config_path},
    ) as op:
        console.print(f"[green]Wrote {escape(str(config_path))}[/green]")
        console.print(f"Next: dbxctl up {env}")
        op.success("Initialised project configuration.", changed=1)


# ----------------------------------------------------------------------
# up
# ----------------------------------------------------------------------
@app.command()
def up(
    ctx: typer.Context,
    env: str | None = ENV_ARGUMENT,
    json_output: bool = JSON_OPTION,
    show_password: bool = SHOW_PASSWORD_OPTION,
) -> None:
    """Provision the MongoDB instance for ENV (no-op when it already exists)."""
    runtime = _get_runtime(ctx)
    env_name = env or runtime.config.default_env

    with runtime.logger.operation(
        "up",
        args={"env": env_name, "json": json_output},
        target={"kind": "instance", "project": runtime.project, "env": env_name},
    ) as op:
        try:
            _, key = _resolve_key(runtime, env)
            with runtime.locks.mutate_instances([key]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                provisioner = Provisioner(
                    runtime.config,
                    runtime.executor,
                    runtime.local,
                    runtime.reporter(json_output=json_output),
                )
                result = provisioner.provision(env_name)
        except DbxError as exc:
            _command_error(op, exc)

        for item in result.steps:
            op.add_step(item.step.value, detail=item.detail)
        context = result.to_dict()

        if json_output:
            console.print_json(data=result.to_dict(show_password=show_password))
        else:
            if result.status is ProvisionStatus.EXISTS:
                console.print(f"[green]Instance {escape(key)} already exists.[/green]")
            else:
                console.print(
                    f"[green]Instance {escape(key)} provisioned in {result.elapsed:.1f}s.[/green]"
                )
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            table.add_row("Host", result.host)
            table.add_row("Port", str(result.record.port))
            table.add_row("Database", result.record.db_name)
            table.add_row("Username", result.record.username)
            table.add_row("URI", result.uri if show_password else result.masked_uri)
            console.print(table)
            if not show_password:
                console.print("Use --show-password to print the full connection URI.")

        if result.status is ProvisionStatus.PARTIAL and result.error is not None:
            err_console.print(f"[red]{escape(str(result.error))}[/red]")
            op.warning(
                "Instance provisioned but the host state copy was not updated.",
                warnings=result.warnings,
                errors=[str(result.error)],
                changed=1,
                context=context,
                rc=int(ExitCode.PARTIAL),
            )
            raise typer.Exit(code=int(ExitCode.PARTIAL))

        changed = int(
            result.status is ProvisionStatus.CREATED
            or result.reconcile_action is not ReconcileAction.NONE
        )
        op.success(
            f"Instance {result.status.value}.",
            changed=changed,
            warnings=result.warnings,
            context=context,
        )


# ----------------------------------------------------------------------
# list / url
# ----------------------------------------------------------------------
@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the project's instances recorded in local state."""
    runtime = _get_runtime(ctx)
    prefix = f"{runtime.project}/"

    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "state", "scope": "local"},
    ) as op:
        try:
            collection = runtime.local.read()
        except DbxError as exc:
            _command_error(op, exc)
        entries = [
            _record_summary(key, collection[key])
            for key in sorted(collection)
            if key.startswith(prefix)
        ]

        if json_output:
            console.print_json(data={"host": runtime.config.vps.host, "instances": entries})
            op.success("Reported instances as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Env", style="bold")
        table.add_column("Host")
        table.add_column("Port")
        table.add_column("Database")
        table.add_column("Container")
        table.add_column("Last backup")

        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry["env"]),
                    runtime.config.vps.host,
                    str(entry["port"]),
                    str(entry["database"]),
                    str(entry["container"]),
                    str(entry["last_backup"] or "never"),
                )

        console.print(table)
        op.success("Reported instances.", changed=0)


@app.command()
def url(
    ctx: typer.Context,
    env: str | None = ENV_ARGUMENT,
    show_password: bool = SHOW_PASSWORD_OPTION,
) -> None:
    """Print the connection URI for ENV from local state."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "url",
        args={"env": env, "show_password": show_password},
        target={"kind": "instance", "project": runtime.project},
    ) as op:
        try:
            _, key = _resolve_key(runtime, env)
            record = _require_record(runtime, key)
        except DbxError as exc:
            _command_error(op, exc)
        uri = build_connection_uri(record, runtime.config.vps.host, masked=not show_password)
        console.print(uri, soft_wrap=True, markup=False, highlight=False)
        op.success("Reported connection URI.", changed=0)


# ----------------------------------------------------------------------
# logs
# ----------------------------------------------------------------------
@app.command()
def logs(
    ctx: typer.Context,
    env: str | None = ENV_ARGUMENT,
    tail: int = typer.Option(DEFAULT_LOG_TAIL, "--tail", "-n", min=0, help="Lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep streaming new lines."),
) -> None:
    """Show the MongoDB container logs for ENV."""
    runtime = _get_runtime(ctx)
    env_name = env or runtime.config.default_env

    with runtime.logger.operation(
        "logs",
        args={"env": env_name, "tail": tail, "follow": follow},
        target={"kind": "instance", "project": runtime.project, "env": env_name},
    ) as op:
        try:
            instance_key(runtime.project, env_name)
            container = resource_name(runtime.project, env_name)
            command = f"docker logs --tail {tail} {shlex.quote(container)}"
            if follow:
                try:
                    result = _follow_logs(runtime, f"{command} --follow")
                except KeyboardInterrupt:
                    op.success("Stopped following container logs.", changed=0)
                    raise typer.Exit(code=0) from None
            else:
                result = run_with_retry(runtime.executor, command)
                if not result.ok and is_docker_permission_denied(result.stderr):
                    result = run_with_retry(runtime.executor, f"sudo {command}")
                if result.stdout:
                    console.out(result.stdout, highlight=False)
                if result.stderr and result.ok:
                    err_console.out(result.stderr, highlight=False)
            if not result.ok:
                raise classify_logs_failure(
                    result.stderr, container=container, host=runtime.config.vps.host
                )
        except DbxError as exc:
            _command_error(op, exc)
        op.success("Displayed container logs.", changed=0)


def _follow_logs(runtime: RuntimeContext, command: str) -> CommandResult:
    with runtime.executor.connect_with_retry() as session:
        result = session.stream(command, _write_stdout, _write_stderr)
        if not result.ok and is_docker_permission_denied(result.stderr):
            result = session.stream(f"sudo {command}", _write_stdout, _write_stderr)
    return result


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _write_stderr(text: str) -> None:
    sys.stderr.write(text)
    sys.stderr.flush()


# ----------------------------------------------------------------------
# sync
# ----------------------------------------------------------------------
@app.command()
def sync(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Make local state mirror the host copy (the host copy wins)."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "sync",
        args={"json": json_output},
        target={"kind": "state", "project": runtime.project},
    ) as op:
        try:
            with runtime.locks.mutate_instances([]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                with runtime.executor.connect_with_retry() as session:
                    reconciler = Reconciler(
                        runtime.local,
                        remote_store(session, runtime.config.state.remote_path),
                        DockerProvider(session).is_running,
                        runtime.reporter(json_output=json_output),
                    )
                    report = reconciler.sync(runtime.project)
        except DbxError as exc:
            _command_error(op, exc)

        if json_output:
            console.print_json(data=report.to_dict())
        elif not report.changed:
            console.print("No changes. Local state matches the host.")
        else:
            console.print("Sync summary:")
            for symbol, label, keys in (
                ("+", "Added", report.added),
                ("-", "Removed", report.removed),
                ("~", "Updated", report.updated),
            ):
                envs = ", ".join(split_key(key)[1] for key in keys) or "none"
                console.print(f"  {symbol} {label} envs: {escape(envs)}")
        changed = len(report.added) + len(report.removed) + len(report.updated)
        op.success("Synchronised local state.", changed=changed, context=report.to_dict())


# ----------------------------------------------------------------------
# backup / backups / restore
# ----------------------------------------------------------------------
@app.command()
def backup(
    ctx: typer.Context,
    env: str | None = ENV_ARGUMENT,
) -> None:
    """Dump the ENV database into a new archive on the host."""
    runtime = _get_runtime(ctx)
    env_name = env or runtime.config.default_env

    with runtime.logger.operation(
        "backup",
        args={"env": env_name},
        target={"kind": "instance", "project": runtime.project, "env": env_name},
    ) as op:
        warnings: list[str] = []
        try:
            _, key = _resolve_key(runtime, env)
            with runtime.locks.mutate_instances([key]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                record = _require_record(runtime, key)
                reporter = runtime.reporter()
                with runtime.executor.connect_with_retry() as session:
                    manager = BackupManager(
                        session,
                        DockerProvider(session),
                        reporter,
                        backup_dir=runtime.config.state.backup_dir,
                    )
                    result = manager.create(key, record)
                    op.add_step("backup.create", detail=result.path)

                    runtime.local.set(key, record.with_last_backup(result.timestamp))
                    op.add_step("state.local", detail="last_backup")
                    try:
                        remote = remote_store(session, runtime.config.state.remote_path)
                        remote_record = remote.get(key)
                        if remote_record is not None:
                            remote.set(key, remote_record.with_last_backup(result.timestamp))
                            op.add_step("state.remote", detail="last_backup")
                    except DbxError as exc:
                        message = f"Backup taken but the host state was not updated: {exc.message}"
                        warnings.append(message)
                        reporter.warning(message)
        except DbxError as exc:
            _command_error(op, exc)

        console.print(
            f"[green]Backup created:[/green] {escape(result.path)} "
            f"({format_size(result.size_bytes)})"
        )
        context = {"path": result.path, "size_bytes": result.size_bytes}
        if warnings:
            op.warning(
                "Backup created with warnings.",
                warnings=warnings,
                changed=1,
                backups=[result.path],
                context=context,
            )
        else:
            op.success("Backup created.", changed=1, backups=[result.path], context=context)


@app.command()
def backups(
    ctx: typer.Context,
    env: str | None = ENV_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the archives of ENV on the host."""
    runtime = _get_runtime(ctx)
    env_name = env or runtime.config.default_env

    with runtime.logger.operation(
        "backups",
        args={"env": env_name, "json": json_output},
        target={"kind": "instance", "project": runtime.project, "env": env_name},
    ) as op:
        try:
            _, key = _resolve_key(runtime, env)
            with runtime.executor.connect_with_retry() as session:
                manager = BackupManager(
                    session,
                    DockerProvider(session),
                    runtime.reporter(json_output=json_output),
                    backup_dir=runtime.config.state.backup_dir,
                )
                entries = manager.list_backups(key)
        except DbxError as exc:
            _command_error(op, exc)

        if json_output:
            console.print_json(data={"backups": [entry.to_dict() for entry in entries]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Size")
        table.add_column("Modified")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(
                entry.name,
                format_size(entry.size_bytes),
                entry.modified.strftime("%Y-%m-%d %H:%M UTC"),
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@app.command()
def restore(
    ctx: typer.Context,
    backup_file: str = typer.Argument(..., help="Archive name or absolute path on the host."),
    env: str | None = ENV_ARGUMENT,
    yes: bool = YES_OPTION,
) -> None:
    """Replace the ENV database with the contents of BACKUP_FILE."""
    runtime = _get_runtime(ctx)
    env_name = env or runtime.config.default_env

    with runtime.logger.operation(
        "restore",
        args={"env": env_name, "backup": backup_file, "yes": yes},
        target={"kind": "instance", "project": runtime.project, "env": env_name},
    ) as op:
        try:
            _, key = _resolve_key(runtime, env)
            record = _require_record(runtime, key)
        except DbxError as exc:
            _command_error(op, exc)

        if not yes and not typer.confirm(
            f"Restoring replaces all data in {record.db_name} ({key}). Continue?",
            default=False,
        ):
            console.print("Restore cancelled.")
            op.success("Restore cancelled by operator.", changed=0)
            return

        try:
            with runtime.locks.mutate_instances([key]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                with runtime.executor.connect_with_retry() as session:
                    manager = BackupManager(
                        session,
                        DockerProvider(session),
                        runtime.reporter(),
                        backup_dir=runtime.config.state.backup_dir,
                    )
                    path = manager.restore(record, backup_file)
        except DbxError as exc:
            _command_error(op, exc)

        console.print(f"[green]Restored {escape(record.db_name)} from {escape(path)}.[/green]")
        op.success("Database restored.", changed=1, context={"path": path})


# ----------------------------------------------------------------------
# destroy
# ----------------------------------------------------------------------
@app.command()
def destroy(
    ctx: typer.Context,
    env: str | None = ENV_ARGUMENT,
    purge: bool = typer.Option(False, "--purge", help="Also delete the backup archives."),
    yes: bool = YES_OPTION,
) -> None:
    """Remove the ENV container, volume and state records."""
    runtime = _get_runtime(ctx)
    env_name = env or runtime.config.default_env

    with runtime.logger.operation(
        "destroy",
        args={"env": env_name, "purge": purge, "yes": yes},
        target={"kind": "instance", "project": runtime.project, "env": env_name},
    ) as op:
        try:
            _, key = _resolve_key(runtime, env)
            record = _require_record(runtime, key)
        except DbxError as exc:
            _command_error(op, exc)

        if not yes:
            console.print(f"[yellow]This permanently destroys {escape(key)}:[/yellow]")
            console.print(f"  container {escape(record.container_name)}")
            console.print(f"  volume {escape(record.volume)} (all data is lost)")
            console.print("  backups are deleted" if purge else "  backups are kept")
            answer = typer.prompt(f"Type the environment name '{env_name}' to confirm")
            if answer.strip() != env_name:
                console.print("Destroy cancelled.")
                op.success("Destroy cancelled by operator.", changed=0)
                return

        try:
            with runtime.locks.mutate_instances([key]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                with runtime.executor.connect_with_retry() as session:
                    destroyer = Destroyer(
                        session,
                        DockerProvider(session),
                        remote_store(session, runtime.config.state.remote_path),
                        runtime.local,
                        runtime.reporter(),
                    )
                    report = destroyer.destroy(
                        key,
                        record,
                        purge_backups=purge,
                        backup_dir=runtime.config.state.backup_dir,
                    )
        except DbxError as exc:
            _command_error(op, exc)

        console.print(f"[green]Destroyed {escape(key)}.[/green]")
        op.success(
            "Instance destroyed.",
            changed=1,
            warnings=report.warnings,
            context=report.to_dict(),
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
