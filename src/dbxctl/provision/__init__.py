"""Instance lifecycle: provisioning, reconciliation and teardown."""
from __future__ import annotations

from .destroy import DestroyReport, Destroyer
from .orchestrator import (
    ProvisionResult,
    ProvisionStatus,
    ProvisionStep,
    Provisioner,
    app_username,
    database_name,
    resource_name,
)
from .reconcile import ReconcileAction, ReconcileResult, Reconciler, SyncReport
from .uri import build_connection_uri

__all__ = [
    "DestroyReport",
    "Destroyer",
    "ProvisionResult",
    "ProvisionStatus",
    "ProvisionStep",
    "Provisioner",
    "ReconcileAction",
    "ReconcileResult",
    "Reconciler",
    "SyncReport",
    "app_username",
    "build_connection_uri",
    "database_name",
    "resource_name",
]
