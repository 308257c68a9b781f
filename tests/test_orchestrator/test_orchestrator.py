"""Tests for the Orchestrator."""

import asyncio
import json
import threading

import pytest

from ledgercore.audit.models import AuditQuery
from ledgercore.audit.store import MemoryStore
from ledgercore.config import CoreConfig, OrchestratorConfig, StoreConfig
from ledgercore.errors import RunNotFound, UnknownWorkflow
from ledgercore.orchestrator.models import MaintenanceReport, OrchestratorStatus
from ledgercore.orchestrator.orchestrator import Orchestrator
from ledgercore.orchestrator.scheduler import Scheduler
from ledgercore.workflows.models import RunStatus, WorkflowDefinition, WorkflowStep
from ledgercore.workflows.registry import WorkflowRegistry


def collect(input, results):
    return {"rows": input.get("rows", 2)}


def post(input, results):
    return results["collect"]["rows"] + 1


@pytest.fixture
def core_config(ledger_config, workflow_config, cache_config):
    """Core configuration independent of the environment."""
    return CoreConfig(
        store=StoreConfig(backend="memory", sqlite_path="unused.db", sqlite_timeout=5.0),
        ledger=ledger_config,
        workflow=workflow_config,
        cache=cache_config,
        orchestrator=OrchestratorConfig(default_tenant_id="acme", maintenance_interval_minutes=15),
        log_level="INFO",
    )


@pytest.fixture
def orchestrator(memory_store, core_config, clock):
    """Create an orchestrator with one workflow."""
    registry = WorkflowRegistry([
        WorkflowDefinition("ledger-close", steps=[WorkflowStep("collect", collect), WorkflowStep("post", post)]),
    ])
    return Orchestrator(store=memory_store, registry=registry, config=core_config, clock=clock)


def _tamper(store, tenant_id, index):
    row = json.loads(store._records[tenant_id][index])
    row["payload"] = {"amount": 1_000_000}
    store._records[tenant_id][index] = json.dumps(row)


class TestScheduler:
    """Test cases for Scheduler."""

    def test_create_scheduler(self):
        """Test creating a scheduler."""
        scheduler = Scheduler(interval_minutes=15)

        assert scheduler.interval_minutes == 15
        assert not scheduler.is_running()
        assert not scheduler.is_paused()

    def test_set_interval(self):
        """Test setting scheduler interval."""
        scheduler = Scheduler(interval_minutes=15)
        scheduler.set_interval(30)

        assert scheduler.interval_minutes == 30

    def test_pause_resume(self):
        """Test pausing and resuming scheduler."""
        scheduler = Scheduler()

        scheduler.pause()
        assert scheduler.is_paused()

        scheduler.resume()
        assert not scheduler.is_paused()

    def test_get_status(self):
        """Test getting scheduler status."""
        scheduler = Scheduler(interval_minutes=10)
        status = scheduler.get_status()

        assert status["interval_minutes"] == 10
        assert status["running"] is False
        assert status["run_count"] == 0
        assert status["error_count"] == 0

    @pytest.mark.asyncio
    async def test_run_now_without_job(self):
        """Test running before a job is configured."""
        assert await Scheduler().run_now() is False

    @pytest.mark.asyncio
    async def test_start_and_run_now(self):
        """Test manual runs and failure accounting."""
        calls = []

        async def job():
            calls.append(len(calls))
            if len(calls) == 2:
                raise RuntimeError("store offline")

        scheduler = Scheduler(interval_minutes=60)
        scheduler.start(job)
        try:
            assert scheduler.is_running()
            assert scheduler.next_run_at is not None

            assert await scheduler.run_now() is True
            assert await scheduler.run_now() is False
            assert await scheduler.run_now() is True
        finally:
            scheduler.stop()

        status = scheduler.get_status()
        assert status["run_count"] == 3
        assert status["error_count"] == 1
        assert status["last_error"] is None
        assert not scheduler.is_running()

    @pytest.mark.asyncio
    async def test_scheduled_tick(self):
        """Test that the loop invokes the job on its interval."""
        ran = asyncio.Event()

        async def job():
            ran.set()

        scheduler = Scheduler(interval_minutes=0.001)
        scheduler.start(job)
        try:
            await asyncio.wait_for(ran.wait(), timeout=2)
        finally:
            scheduler.stop()

        assert scheduler.run_count >= 1


class TestTenants:
    """Test cases for per-tenant services."""

    def test_services_are_reused(self, orchestrator):
        """Test that a tenant's services are built once."""
        first = orchestrator.tenant("acme")

        assert orchestrator.tenant("acme") is first
        assert first.runner.ledger is first.ledger
        assert first.cache.ledger is first.ledger

    def test_default_tenant(self, orchestrator):
        """Test the configured default tenant."""
        assert orchestrator.ledger().tenant_id == "acme"

    def test_known_tenants(self, orchestrator):
        """Test tenants from live services and from the store."""
        orchestrator.record("invoice.approved", "invoice", "inv_1", tenant_id="globex")
        orchestrator.tenant("initech")

        assert orchestrator.known_tenants() == ["globex", "initech"]

    def test_tenants_do_not_share_chains(self, orchestrator):
        """Test chain isolation between tenants."""
        a = orchestrator.record("invoice.approved", "invoice", "inv_1", tenant_id="acme")
        b = orchestrator.record("invoice.approved", "invoice", "inv_1", tenant_id="globex")

        assert a.sequence == 1
        assert b.sequence == 1
        assert orchestrator.list_audit(tenant_id="globex")[0].id == b.id


class TestWorkflows:
    """Test cases for workflow operations."""

    @pytest.mark.asyncio
    async def test_start_workflow(self, orchestrator):
        """Test running a workflow through the orchestrator."""
        run = await orchestrator.start_workflow("ledger-close", {"rows": 4}, actor_id="u_1")

        assert run.status == RunStatus.COMPLETED
        assert run.outputs["post"] == 5
        assert orchestrator.get_run(run.id).id == run.id
        assert [r.id for r in orchestrator.list_runs()] == [run.id]

    @pytest.mark.asyncio
    async def test_run_is_tenant_scoped(self, orchestrator):
        """Test that another tenant cannot see the run."""
        run = await orchestrator.start_workflow("ledger-close", tenant_id="acme")

        with pytest.raises(RunNotFound):
            orchestrator.get_run(run.id, tenant_id="globex")

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, orchestrator):
        """Test starting an unregistered workflow."""
        with pytest.raises(UnknownWorkflow):
            await orchestrator.start_workflow("missing")

    @pytest.mark.asyncio
    async def test_cancel_finished_run(self, orchestrator):
        """Test that cancelling a finished run reports False."""
        run = await orchestrator.start_workflow("ledger-close")

        assert orchestrator.cancel_run(run.id) is False

    def test_definitions_loaded_from_config(self, memory_store, core_config, tmp_path):
        """Test loading workflows from the configured YAML file."""
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  - id: totals\n"
            "    steps:\n"
            "      - name: collect\n"
            "        handler: test_orchestrator:collect\n"
        )
        core_config.workflow.definitions_path = str(path)

        orchestrator = Orchestrator(store=memory_store, config=core_config)

        assert "totals" in orchestrator.registry


class TestForecast:
    """Test cases for reading predictions through the cache."""

    @pytest.mark.asyncio
    async def test_read_through(self, orchestrator):
        """Test that compute runs once per fresh window."""
        calls = []

        def compute():
            calls.append(1)
            return {"total": 1250.5}

        first = await orchestrator.forecast("sales-forecast", "90d", compute, ttl=60)
        second = await orchestrator.forecast("sales-forecast", "90d", compute, ttl=60)

        assert first == second == {"total": 1250.5}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_recompute_after_expiry(self, orchestrator, clock):
        """Test that an expired entry is recomputed."""
        values = iter([1, 2])

        async def compute():
            return next(values)

        assert await orchestrator.forecast("churn", "30d", compute, ttl=10) == 1
        clock.advance(10)
        assert await orchestrator.forecast("churn", "30d", compute, ttl=10) == 2

        populated = orchestrator.list_audit(AuditQuery(action_type="cache.populated"))
        assert len(populated) == 2

    @pytest.mark.asyncio
    async def test_compute_error_is_not_cached(self, orchestrator):
        """Test that a failing source leaves the cache empty."""
        def compute():
            raise ConnectionError("forecaster unavailable")

        with pytest.raises(ConnectionError):
            await orchestrator.forecast("sales-forecast", "90d", compute)

        assert orchestrator.cache().get("sales-forecast:90d") is None

    @pytest.mark.asyncio
    async def test_cache_io_runs_off_loop(self, core_config, clock):
        """Test that cache reads and writes leave the event loop thread."""
        threads = []

        class TrackingStore(MemoryStore):
            def get_cache_entry(self, tenant_id, key):
                threads.append(threading.get_ident())
                return super().get_cache_entry(tenant_id, key)

            def put_cache_entry(self, entry):
                threads.append(threading.get_ident())
                return super().put_cache_entry(entry)

        orchestrator = Orchestrator(store=TrackingStore(), registry=WorkflowRegistry(), config=core_config, clock=clock)

        assert await orchestrator.forecast("sales-forecast", "90d", lambda: 1) == 1
        assert await orchestrator.forecast("sales-forecast", "90d", lambda: 2) == 1

        assert len(threads) == 3
        assert threading.get_ident() not in threads


class TestMaintenance:
    """Test cases for maintenance passes."""

    @pytest.mark.asyncio
    async def test_healthy(self, orchestrator, clock):
        """Test a pass over intact chains."""
        orchestrator.record("invoice.approved", "invoice", "inv_1")
        orchestrator.cache().put("sales-forecast:90d", 1, ttl=5)
        clock.advance(5)

        report = await orchestrator.run_maintenance()

        assert isinstance(report, MaintenanceReport)
        assert report.healthy
        assert report.tenants[0].verification.records_checked == 2
        assert report.tenants[0].purged_cache_entries == 1

    @pytest.mark.asyncio
    async def test_detects_tampering(self, orchestrator, memory_store):
        """Test that a rewritten record is reported and left in place."""
        for i in range(3):
            orchestrator.record("invoice.approved", "invoice", f"inv_{i}", tenant_id="globex")
        orchestrator.record("invoice.approved", "invoice", "inv_9", tenant_id="acme")
        _tamper(memory_store, "globex", 1)

        report = await orchestrator.run_maintenance()

        assert not report.healthy
        assert report.broken_tenants == ["globex"]
        assert memory_store.count_records("globex") == 3
        assert report.to_dict()["healthy"] is False


class TestStatus:
    """Test cases for status reporting."""

    @pytest.mark.asyncio
    async def test_get_status(self, orchestrator):
        """Test getting orchestrator status."""
        await orchestrator.start_workflow("ledger-close")
        await orchestrator.run_maintenance()

        status = orchestrator.get_status()

        assert isinstance(status, OrchestratorStatus)
        assert status.running is False
        assert status.tenants == ["acme"]
        assert status.workflows_registered == 1
        assert status.runs_started == 1
        assert status.runs_completed == 1
        assert status.maintenance_runs == 1
        assert status.to_dict()["last_maintenance"]["healthy"] is True

    @pytest.mark.asyncio
    async def test_start_stop(self, orchestrator):
        """Test starting and stopping scheduled maintenance."""
        await orchestrator.start()
        try:
            status = orchestrator.get_status()
            assert status.running is True
            assert status.next_run_at is not None
            assert status.started_at is not None
        finally:
            await orchestrator.stop()

        assert orchestrator.get_status().running is False

    def test_get_statistics(self, orchestrator):
        """Test per-tenant statistics."""
        orchestrator.record("invoice.approved", "invoice", "inv_1")

        stats = orchestrator.get_statistics()

        assert stats["store"]["mode"] == "memory"
        assert stats["tenants"]["acme"]["ledger"]["records"] == 1
        assert stats["tenants"]["acme"]["cache"]["hits"] == 0
