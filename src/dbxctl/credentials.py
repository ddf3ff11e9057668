"""Password generation for MongoDB accounts."""
from __future__ import annotations

import re
import secrets
from dataclasses import dataclass

# No ambiguous glyphs (0 O 1 l I).
PASSWORD_CHARSET = "abcdefghijkmnopqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ23456789!@#$%^&*"
MIN_PASSWORD_LENGTH = 16
DEFAULT_PASSWORD_LENGTH = 32

_CHARSET_SET = frozenset(PASSWORD_CHARSET)
_REQUIRED_CLASSES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"[0-9]"),
    re.compile(r"[!@#$%^&*]"),
)


@dataclass(frozen=True, slots=True)
class InstanceCredentials:
    """Root and application passwords for a new instance."""

    root_password: str
    app_password: str

    def __repr__(self) -> str:
        return "InstanceCredentials(root_password='***', app_password='***')"


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Return a random password drawn from :data:`PASSWORD_CHARSET`.

    The result always contains a lowercase letter, an uppercase letter, a
    digit and a symbol.
    """
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_PASSWORD_LENGTH} characters")
    while True:
        candidate = "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))
        if validate_password(candidate):
            return candidate


def validate_password(password: str) -> bool:
    """Return True when *password* meets the length, alphabet and class rules."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    if not set(password) <= _CHARSET_SET:
        return False
    return all(pattern.search(password) for pattern in _REQUIRED_CLASSES)


def generate_credentials() -> InstanceCredentials:
    """Generate a fresh root/application password pair."""
    return InstanceCredentials(root_password=generate_password(), app_password=generate_password())


__all__ = [
    "DEFAULT_PASSWORD_LENGTH",
    "InstanceCredentials",
    "MIN_PASSWORD_LENGTH",
    "PASSWORD_CHARSET",
    "generate_credentials",
    "generate_password",
    "validate_password",
]
