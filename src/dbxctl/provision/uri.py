"""MongoDB connection strings for provisioned instances."""
from __future__ import annotations

from urllib.parse import quote

from ..providers.mongodb import AUTH_DATABASE
from ..state.schema import InstanceRecord

MASK = "***"


def build_connection_uri(record: InstanceRecord, host: str, *, masked: bool = False) -> str:
    """Return the ``mongodb://`` URI for *record* reachable at *host*.

    The password is percent-encoded; with ``masked=True`` it is replaced by
    ``***`` so the URI can be printed or logged.
    """
    password = MASK if masked else quote(record.password, safe="")
    return (
        f"mongodb://{quote(record.username, safe='')}:{password}@{host}:{record.port}"
        f"/{record.db_name}?authSource={AUTH_DATABASE}"
    )


__all__ = ["build_connection_uri"]
