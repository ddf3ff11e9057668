"""dbxctl package bootstrap.

Exposes the package version used by the CLI ``--version`` flag and the
packaging metadata.
"""
from __future__ import annotations

import logging

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0"

# Library modules only emit records; the CLI decides where they go.
logging.getLogger(__name__).addHandler(logging.NullHandler())


def get_version() -> str:
    """Return the current package version."""
    return __version__
