"""
Orchestrator Models

Data models for maintenance passes and orchestrator state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ledgercore.audit.models import VerificationResult


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TenantMaintenance:
    """Outcome of maintenance for one tenant."""

    tenant_id: str
    verification: Optional[VerificationResult] = None
    purged_cache_entries: int = 0
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.error is None and self.verification is not None and self.verification.valid

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "verification": self.verification.to_dict() if self.verification else None,
            "purged_cache_entries": self.purged_cache_entries,
            "error": self.error,
            "healthy": self.healthy,
        }


@dataclass
class MaintenanceReport:
    """Result of one maintenance pass across tenants."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    tenants: list[TenantMaintenance] = field(default_factory=list)

    @property
    def broken_tenants(self) -> list[str]:
        """Tenants whose chain failed verification."""
        return [
            t.tenant_id for t in self.tenants
            if t.verification is not None and not t.verification.valid
        ]

    @property
    def healthy(self) -> bool:
        return all(t.healthy for t in self.tenants)

    def to_dict(self) -> dict:
        return {
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "healthy": self.healthy,
            "broken_tenants": self.broken_tenants,
            "tenants": [t.to_dict() for t in self.tenants],
        }


@dataclass
class OrchestratorStatus:
    """Current status of the orchestrator."""

    # State
    running: bool = False
    paused: bool = False

    # Scheduling
    interval_minutes: float = 15
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    # Tenants with live services
    tenants: list[str] = field(default_factory=list)

    # Statistics
    workflows_registered: int = 0
    runs_started: int = 0
    runs_completed: int = 0
    runs_failed: int = 0
    maintenance_runs: int = 0

    last_maintenance: Optional[MaintenanceReport] = None

    # Uptime
    started_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "running": self.running,
            "paused": self.paused,
            "interval_minutes": self.interval_minutes,
            "next_run_at": _iso(self.next_run_at),
            "last_run_at": _iso(self.last_run_at),
            "tenants": self.tenants,
            "workflows_registered": self.workflows_registered,
            "runs_started": self.runs_started,
            "runs_completed": self.runs_completed,
            "runs_failed": self.runs_failed,
            "maintenance_runs": self.maintenance_runs,
            "last_maintenance": self.last_maintenance.to_dict() if self.last_maintenance else None,
            "started_at": _iso(self.started_at),
        }
