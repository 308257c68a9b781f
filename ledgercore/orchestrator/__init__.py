"""
Orchestrator Package

Wires callers to the per-tenant ledger, runner and cache.
"""

from ledgercore.orchestrator.models import (
    MaintenanceReport,
    OrchestratorStatus,
    TenantMaintenance,
)
from ledgercore.orchestrator.scheduler import Scheduler
from ledgercore.orchestrator.orchestrator import Orchestrator, TenantServices

__all__ = [
    "MaintenanceReport",
    "OrchestratorStatus",
    "TenantMaintenance",
    "Scheduler",
    "Orchestrator",
    "TenantServices",
]
