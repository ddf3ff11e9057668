"""Typed schema for dbxctl state files.

Both state copies (local and remote) share this format::

    {
      "instances": {
        "app/dev": {
          "port": 27018,
          "dbName": "app_dev",
          ...
        }
      }
    }

The serialised field names are camelCase so state files written by earlier
releases keep loading. Any deviation from the schema is a hard validation
error naming the offending field; records are never silently dropped.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace

from ..errors import DbxError, ErrorKind

MIN_PORT = 1024
MAX_PORT = 65535
SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

# attribute name -> serialised name
REQUIRED_FIELDS: dict[str, str] = {
    "port": "port",
    "db_name": "dbName",
    "username": "username",
    "password": "password",
    "root_password": "rootPassword",
    "volume": "volume",
    "container_name": "containerName",
    "created_at": "createdAt",
}


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """Provisioned MongoDB instance metadata."""

    port: int
    db_name: str
    username: str
    password: str
    root_password: str
    volume: str
    container_name: str
    created_at: str
    last_backup: str | None = None

    def identity(self) -> tuple[int, str, str]:
        """Return the fields that must agree between the two state copies."""
        return (self.port, self.container_name, self.db_name)

    def with_last_backup(self, timestamp: str) -> InstanceRecord:
        """Return a copy with ``last_backup`` set to *timestamp*."""
        return replace(self, last_backup=timestamp)

    def to_dict(self) -> dict[str, object]:
        """Return the serialised (camelCase) representation."""
        payload: dict[str, object] = {
            wire: getattr(self, attr) for attr, wire in REQUIRED_FIELDS.items()
        }
        if self.last_backup is not None:
            payload["lastBackup"] = self.last_backup
        return payload

    @classmethod
    def from_dict(cls, key: str, data: object, *, source: str = "state") -> InstanceRecord:
        """Validate *data* and build a record, naming the first bad field."""
        if not isinstance(data, Mapping):
            raise _invalid(f'Instance "{key}" must be an object.', source)

        values: dict[str, object] = {}
        for attr, wire in REQUIRED_FIELDS.items():
            if wire not in data:
                raise _invalid(f'Missing required field "{wire}" in instance "{key}".', source)
            values[attr] = data[wire]

        port = values["port"]
        if isinstance(port, bool) or not isinstance(port, int):
            raise _invalid(
                f'Invalid field "port" in instance "{key}": must be an integer.', source
            )
        if not MIN_PORT <= port <= MAX_PORT:
            raise _invalid(
                f'Invalid field "port" in instance "{key}": must be between '
                f"{MIN_PORT} and {MAX_PORT}, got {port}.",
                source,
            )

        text: dict[str, str] = {
            attr: _expect_text(values[attr], wire, key, source)
            for attr, wire in REQUIRED_FIELDS.items()
            if attr != "port"
        }

        last_backup: str | None = None
        if data.get("lastBackup") is not None:
            last_backup = _expect_text(data["lastBackup"], "lastBackup", key, source)

        return cls(
            port=port,
            db_name=text["db_name"],
            username=text["username"],
            password=text["password"],
            root_password=text["root_password"],
            volume=text["volume"],
            container_name=text["container_name"],
            created_at=text["created_at"],
            last_backup=last_backup,
        )


StateCollection = dict[str, InstanceRecord]


# ----------------------------------------------------------------------
# Composite keys
# ----------------------------------------------------------------------
def is_valid_segment(text: str) -> bool:
    """Return True when *text* is a valid project or environment name."""
    return bool(SEGMENT_PATTERN.match(text))


def instance_key(project: str, env: str) -> str:
    """Return the composite ``project/env`` key, validating both segments."""
    for label, value in (("project", project), ("environment", env)):
        if not is_valid_segment(value):
            raise DbxError(
                ErrorKind.VALIDATION,
                f"Invalid {label} name {value!r}: use letters, digits, '-' or '_' "
                "(starting with a letter or digit, at most 64 characters).",
            )
    return f"{project}/{env}"


def split_key(key: str) -> tuple[str, str]:
    """Split a composite key into ``(project, env)``."""
    parts = key.split("/")
    if len(parts) != 2 or not all(is_valid_segment(part) for part in parts):
        raise DbxError(
            ErrorKind.VALIDATION,
            f'Invalid instance key "{key}": expected "project/env".',
        )
    return parts[0], parts[1]


# ----------------------------------------------------------------------
# Documents
# ----------------------------------------------------------------------
def parse_collection(text: str, *, source: str) -> StateCollection:
    """Parse and validate a state document read from *source*."""
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise _invalid(f"State file is not valid JSON: {exc}", source) from exc

    if not isinstance(document, Mapping):
        raise _invalid("State file must contain a JSON object.", source)
    if "instances" not in document:
        raise _invalid('Missing required field "instances".', source)
    instances = document["instances"]
    if not isinstance(instances, Mapping):
        raise _invalid('Invalid field "instances": must be an object.', source)

    collection: StateCollection = {}
    for key, data in instances.items():
        try:
            split_key(key)
        except DbxError as exc:
            raise _invalid(exc.message, source) from exc
        collection[key] = InstanceRecord.from_dict(key, data, source=source)
    return collection


def serialize_collection(collection: Mapping[str, InstanceRecord]) -> str:
    """Return the deterministic, newline-terminated JSON document."""
    document = {
        "instances": {key: collection[key].to_dict() for key in sorted(collection)},
    }
    return json.dumps(document, indent=2, sort_keys=True) + "\n"


def _expect_text(value: object, wire: str, key: str, source: str) -> str:
    if not isinstance(value, str):
        raise _invalid(f'Invalid field "{wire}" in instance "{key}": must be a string.', source)
    if not value.strip():
        raise _invalid(
            f'Invalid field "{wire}" in instance "{key}": must be a non-empty string.', source
        )
    return value


def _invalid(message: str, source: str) -> DbxError:
    return DbxError(
        ErrorKind.VALIDATION,
        message,
        resource=source,
        remediation=(
            f"Repair or remove {source} by hand; dbxctl never rewrites a corrupt state file.\n"
            "If only the local copy is damaged, delete it and run `dbxctl sync`."
        ),
    )


__all__ = [
    "InstanceRecord",
    "MAX_PORT",
    "MIN_PORT",
    "StateCollection",
    "instance_key",
    "is_valid_segment",
    "parse_collection",
    "serialize_collection",
    "split_key",
]
