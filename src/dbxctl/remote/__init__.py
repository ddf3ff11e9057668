"""SSH transport used to drive the managed host."""
from __future__ import annotations

from .executor import (
    RETRY_DELAYS,
    CommandResult,
    RemoteExecutor,
    RemoteSession,
    SshSettings,
    run_with_retry,
)

__all__ = [
    "CommandResult",
    "RETRY_DELAYS",
    "RemoteExecutor",
    "RemoteSession",
    "SshSettings",
    "run_with_retry",
]
