"""Port allocation for dbxctl instances.

Ports are allocated sequentially from ``mongodb.base_port``, skipping every
port recorded in either state copy. The allocator is deterministic and never
inspects the host for foreign listeners; a port taken by an untracked process
surfaces later as a container start failure.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from .errors import DbxError, ErrorKind
from .logging import Reporter
from .state.schema import MAX_PORT, MIN_PORT, InstanceRecord

LOGGER = logging.getLogger(__name__)

HIGH_PORT_WARNING = 65500


def used_ports(*collections: Mapping[str, InstanceRecord]) -> set[int]:
    """Return the union of ports recorded in *collections*."""
    ports: set[int] = set()
    for collection in collections:
        ports.update(record.port for record in collection.values())
    return ports


def validate_base_port(base_port: int) -> None:
    """Raise ``PORT_ALLOCATION`` unless *base_port* is a usable TCP port."""
    if base_port < MIN_PORT:
        raise _allocation_error(
            f"Port allocation failed: port {base_port} is below minimum valid port {MIN_PORT}."
        )
    if base_port > MAX_PORT:
        raise _allocation_error(
            f"Port allocation failed: port {base_port} exceeds maximum port {MAX_PORT}."
        )


def next_free_port(base_port: int, taken: Iterable[int]) -> int:
    """Return the lowest port ``>= base_port`` not in *taken*."""
    validate_base_port(base_port)
    occupied = set(taken)
    for port in range(base_port, MAX_PORT + 1):
        if port not in occupied:
            return port
    raise _allocation_error(
        f"No available ports: all ports from {base_port} to {MAX_PORT} are in use."
    )


def allocate_port(
    local: Mapping[str, InstanceRecord],
    remote: Mapping[str, InstanceRecord],
    base_port: int,
    *,
    reporter: Reporter | None = None,
) -> int:
    """Pick the port for a new instance from the union of both state copies."""
    taken = used_ports(local, remote)
    port = next_free_port(base_port, taken)
    LOGGER.debug(
        "Allocated port %s (base %s, in use: %s)",
        port,
        base_port,
        ", ".join(str(item) for item in sorted(taken)) or "none",
    )
    if port >= HIGH_PORT_WARNING and reporter is not None:
        reporter.warning(
            f"Allocated port {port} is near the top of the port range. "
            "Consider destroying unused instances."
        )
    return port


def _allocation_error(message: str) -> DbxError:
    return DbxError(
        ErrorKind.PORT_ALLOCATION,
        message,
        remediation=(
            "Destroy unused instances (dbxctl destroy <env>) or choose another "
            "mongodb.base_port in dbx.yml."
        ),
    )


__all__ = [
    "HIGH_PORT_WARNING",
    "allocate_port",
    "next_free_port",
    "used_ports",
    "validate_base_port",
]
