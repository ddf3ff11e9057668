"""State persistence helpers for dbxctl."""
from __future__ import annotations

from .schema import (
    InstanceRecord,
    StateCollection,
    instance_key,
    parse_collection,
    serialize_collection,
    split_key,
)
from .store import (
    DEFAULT_REMOTE_PATH,
    LocalStateBackend,
    RemoteStateBackend,
    StateStore,
    local_store,
    remote_store,
)

__all__ = [
    "DEFAULT_REMOTE_PATH",
    "InstanceRecord",
    "LocalStateBackend",
    "RemoteStateBackend",
    "StateCollection",
    "StateStore",
    "instance_key",
    "local_store",
    "parse_collection",
    "remote_store",
    "serialize_collection",
    "split_key",
]
