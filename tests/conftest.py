"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.store import MemoryStore, SqliteStore
from ledgercore.config import CacheConfig, LedgerConfig, WorkflowConfig


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """A fixed clock starting at 2024-05-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def memory_store():
    """Create an in-memory store."""
    return MemoryStore()


@pytest.fixture
def sqlite_store(tmp_path):
    """Create a SQLite store in a temporary directory."""
    store = SqliteStore(str(tmp_path / "ledger.db"))
    yield store
    store.close()


@pytest.fixture
def ledger_config():
    """Ledger configuration independent of the environment."""
    return LedgerConfig(max_append_retries=5, verify_full=True)


@pytest.fixture
def workflow_config():
    """Unbounded workflow configuration without step records."""
    return WorkflowConfig(
        step_timeout_seconds=None,
        run_timeout_seconds=None,
        audit_steps=False,
        definitions_path=None,
        max_history=100,
    )


@pytest.fixture
def cache_config():
    """Cache configuration with a 15 minute default TTL."""
    return CacheConfig(default_ttl_seconds=900)


@pytest.fixture
def ledger(memory_store, ledger_config):
    """Create a ledger for tenant 'acme' over the memory store."""
    return AuditLedger(memory_store, tenant_id="acme", config=ledger_config)
