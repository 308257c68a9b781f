"""
Orchestrator

Thin entry point wiring caller requests to the audit ledger, workflow
runner and prediction cache of each tenant.
"""

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Union

from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.models import AuditQuery, AuditRecord, VerificationResult
from ledgercore.audit.store import LedgerStore, create_store
from ledgercore.cache.models import CacheKey
from ledgercore.cache.prediction_cache import PredictionCache
from ledgercore.config import CoreConfig
from ledgercore.orchestrator.models import (
    MaintenanceReport,
    OrchestratorStatus,
    TenantMaintenance,
)
from ledgercore.orchestrator.scheduler import Scheduler
from ledgercore.workflows.models import WorkflowRun
from ledgercore.workflows.registry import WorkflowRegistry
from ledgercore.workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)

Compute = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class TenantServices:
    """Ledger, runner and cache bound to one tenant."""

    tenant_id: str
    ledger: AuditLedger
    runner: WorkflowRunner
    cache: PredictionCache


class Orchestrator:
    """
    Coordinates the per-tenant services over one store and one registry.

    The orchestrator:
    - Lazily builds a ledger/runner/cache triple per tenant
    - Starts workflows and answers run queries
    - Reads predictions through the cache
    - Runs periodic maintenance (chain verification, cache sweep)

    Example:
        >>> orchestrator = Orchestrator(registry=registry)
        >>> run = await orchestrator.start_workflow("payroll-close", tenant_id="acme")
        >>> orchestrator.verify("acme").valid
        True
    """

    def __init__(
            self,
            store: Optional[LedgerStore] = None,
            registry: Optional[WorkflowRegistry] = None,
            config: Optional[CoreConfig] = None,
            clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Shared persistent store (built from config if not provided)
            registry: Shared workflow registry
            config: Core configuration
            clock: Source of the current UTC time for ledgers and caches
        """
        self.config = config or CoreConfig()
        self.store = store or create_store(self.config.store)
        self.registry = registry or WorkflowRegistry()
        self._clock = clock

        if self.config.workflow.definitions_path and not len(self.registry):
            loaded = self.registry.load_yaml(self.config.workflow.definitions_path)
            logger.info(f"Loaded {loaded} workflows from {self.config.workflow.definitions_path}")

        self.scheduler = Scheduler(
            interval_minutes=self.config.orchestrator.maintenance_interval_minutes,
        )

        self._tenants: dict[str, TenantServices] = {}
        self._tenants_lock = threading.Lock()

        # State
        self._running = False
        self._started_at: Optional[datetime] = None
        self._last_maintenance: Optional[MaintenanceReport] = None
        self._maintenance_runs = 0

        logger.info(
            f"Orchestrator initialized. Store: {type(self.store).__name__}, "
            f"workflows: {len(self.registry)}"
        )

    # -------------------------------------------------------------------------
    # Tenants
    # -------------------------------------------------------------------------

    def tenant(self, tenant_id: Optional[str] = None) -> TenantServices:
        """Get (or build) the services of a tenant."""
        tenant_id = tenant_id or self.config.orchestrator.default_tenant_id

        with self._tenants_lock:
            services = self._tenants.get(tenant_id)
            if services is None:
                ledger = AuditLedger(
                    self.store,
                    tenant_id=tenant_id,
                    config=self.config.ledger,
                    clock=self._clock,
                )
                services = TenantServices(
                    tenant_id=tenant_id,
                    ledger=ledger,
                    runner=WorkflowRunner(ledger, self.registry, config=self.config.workflow),
                    cache=PredictionCache(ledger, config=self.config.cache),
                )
                self._tenants[tenant_id] = services
                logger.debug(f"Built services for tenant '{tenant_id}'")

        return services

    def ledger(self, tenant_id: Optional[str] = None) -> AuditLedger:
        return self.tenant(tenant_id).ledger

    def runner(self, tenant_id: Optional[str] = None) -> WorkflowRunner:
        return self.tenant(tenant_id).runner

    def cache(self, tenant_id: Optional[str] = None) -> PredictionCache:
        return self.tenant(tenant_id).cache

    def known_tenants(self) -> List[str]:
        """Tenants with services or with records in the store."""
        with self._tenants_lock:
            live = set(self._tenants)
        return sorted(live | set(self.store.list_tenants()))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self):
        """Start scheduled maintenance."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self.scheduler.start(self.run_maintenance)
        logger.info("Orchestrator started")

    async def stop(self):
        """Stop scheduled maintenance."""
        if not self._running:
            return

        self._running = False
        self.scheduler.stop()
        logger.info("Orchestrator stopped")

    def close(self):
        """Release the store."""
        self.store.close()

    # -------------------------------------------------------------------------
    # Workflows
    # -------------------------------------------------------------------------

    async def start_workflow(
            self,
            workflow_id: str,
            input: Optional[dict] = None,
            actor_id: Optional[str] = None,
            tenant_id: Optional[str] = None,
            wait: bool = True,
    ) -> WorkflowRun:
        """Start a workflow for a tenant."""
        return await self.runner(tenant_id).start(
            workflow_id, input=input, actor_id=actor_id, wait=wait,
        )

    def get_run(self, run_id: str, tenant_id: Optional[str] = None) -> WorkflowRun:
        return self.runner(tenant_id).get(run_id)

    def list_runs(
            self,
            workflow_id: Optional[str] = None,
            limit: int = 10,
            tenant_id: Optional[str] = None,
    ) -> List[WorkflowRun]:
        return self.runner(tenant_id).list_runs(workflow_id=workflow_id, limit=limit)

    def cancel_run(
            self,
            run_id: str,
            tenant_id: Optional[str] = None,
            actor_id: Optional[str] = None,
            reason: str = "",
    ) -> bool:
        return self.runner(tenant_id).cancel(run_id, actor_id=actor_id, reason=reason)

    # -------------------------------------------------------------------------
    # Predictions
    # -------------------------------------------------------------------------

    async def forecast(
            self,
            subject: str,
            horizon: str,
            compute: Compute,
            ttl: Optional[float] = None,
            tenant_id: Optional[str] = None,
            actor_id: Optional[str] = None,
    ) -> Any:
        """
        Read a prediction through the cache.

        On a miss ``compute`` (the external analytical source) is called and
        its result stored for ``ttl`` seconds.

        Args:
            subject: What is predicted, e.g. "sales-forecast"
            horizon: How far ahead, e.g. "90d"
            compute: Callable producing the value (sync or async)
            ttl: Seconds the value stays fresh
            tenant_id: Tenant whose cache to use
            actor_id: Caller identity recorded on population

        Returns:
            The cached or freshly computed value
        """
        cache = self.cache(tenant_id)
        key = CacheKey(subject, horizon)

        value = await asyncio.to_thread(cache.get, key)
        if value is not None:
            return value

        logger.info(f"Cache miss for {key}; computing")
        if inspect.iscoroutinefunction(compute):
            value = await compute()
        else:
            value = await asyncio.to_thread(compute)
            if inspect.isawaitable(value):
                value = await value

        await asyncio.to_thread(cache.put, key, value, ttl=ttl, actor_id=actor_id)
        return value

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def record(
            self,
            action_type: str,
            resource_type: str,
            resource_id: str,
            actor_id: Optional[str] = None,
            payload: Any = None,
            tenant_id: Optional[str] = None,
    ) -> AuditRecord:
        """Append an application event to a tenant's ledger."""
        return self.ledger(tenant_id).append(
            action_type, resource_type, resource_id, actor_id=actor_id, payload=payload,
        )

    def verify(
            self,
            tenant_id: Optional[str] = None,
            from_id: Optional[str] = None,
            to_id: Optional[str] = None,
            full: Optional[bool] = None,
    ) -> VerificationResult:
        return self.ledger(tenant_id).verify(from_id=from_id, to_id=to_id, full=full)

    def list_audit(
            self,
            query: Optional[AuditQuery] = None,
            tenant_id: Optional[str] = None,
    ) -> List[AuditRecord]:
        return self.ledger(tenant_id).list(query)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def run_maintenance(self) -> MaintenanceReport:
        """
        Verify every known tenant's chain and sweep its expired cache entries.

        A broken chain is reported, never repaired.
        """
        report = MaintenanceReport()

        for tenant_id in self.known_tenants():
            services = self.tenant(tenant_id)
            outcome = TenantMaintenance(tenant_id=tenant_id)
            try:
                outcome.verification = await asyncio.to_thread(services.ledger.verify)
                outcome.purged_cache_entries = await asyncio.to_thread(services.cache.purge_expired)
            except Exception as e:
                outcome.error = str(e)
                logger.error(f"Maintenance failed for tenant '{tenant_id}': {e}")
            report.tenants.append(outcome)

        report.completed_at = datetime.now(timezone.utc)
        self._last_maintenance = report
        self._maintenance_runs += 1

        if report.broken_tenants:
            logger.error(f"Audit chain broken for tenants: {', '.join(report.broken_tenants)}")
        else:
            logger.info(f"Maintenance complete for {len(report.tenants)} tenants")

        return report

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> OrchestratorStatus:
        """Get current orchestrator status."""
        with self._tenants_lock:
            services = list(self._tenants.values())

        runner_stats = [s.runner.get_statistics() for s in services]

        return OrchestratorStatus(
            running=self._running,
            paused=self.scheduler.is_paused(),
            interval_minutes=self.scheduler.interval_minutes,
            next_run_at=self.scheduler.next_run_at,
            last_run_at=self.scheduler.last_run_at,
            tenants=sorted(s.tenant_id for s in services),
            workflows_registered=len(self.registry),
            runs_started=sum(s["started"] for s in runner_stats),
            runs_completed=sum(s["completed"] for s in runner_stats),
            runs_failed=sum(s["failed"] for s in runner_stats),
            maintenance_runs=self._maintenance_runs,
            last_maintenance=self._last_maintenance,
            started_at=self._started_at,
        )

    def get_statistics(self) -> dict:
        """Get per-tenant statistics."""
        with self._tenants_lock:
            services = list(self._tenants.values())

        return {
            "store": self.store.get_stats(),
            "tenants": {
                s.tenant_id: {
                    "ledger": s.ledger.get_stats(),
                    "runner": s.runner.get_statistics(),
                    "cache": s.cache.get_stats(),
                }
                for s in services
            },
        }
