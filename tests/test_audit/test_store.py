"""Tests for the ledger stores."""

import pytest

from ledgercore.audit.hashchain import GENESIS_DIGEST
from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.models import AuditRecord
from ledgercore.audit.store import MemoryStore, SqliteStore, create_store
from ledgercore.config import LedgerConfig, StoreConfig
from ledgercore.errors import ConcurrentAppendConflict


def _record(sequence: int, previous: str, tenant_id: str = "acme") -> AuditRecord:
    record = AuditRecord(
        action_type="event",
        resource_type="item",
        resource_id=str(sequence),
        tenant_id=tenant_id,
        sequence=sequence,
        previous_digest=previous,
    )
    return AuditRecord.from_dict({**record.to_dict(), "digest": record.compute_digest()})


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each store backend."""
    if request.param == "memory":
        return MemoryStore()
    return SqliteStore(str(tmp_path / "store.db"))


class TestAuditRows:
    """Test cases for conditional appends and range reads."""

    def test_append_and_tail(self, store):
        """Test that the tail follows appends."""
        first = _record(1, GENESIS_DIGEST)
        store.append_record(first)

        assert store.get_tail("acme").id == first.id
        assert store.count_records("acme") == 1

    def test_empty_tail(self, store):
        """Test the tail of an unknown tenant."""
        assert store.get_tail("acme") is None

    def test_fork_rejected(self, store):
        """Test that a second record on the same predecessor is refused."""
        store.append_record(_record(1, GENESIS_DIGEST))

        with pytest.raises(ConcurrentAppendConflict):
            store.append_record(_record(1, GENESIS_DIGEST))

        assert store.count_records("acme") == 1

    def test_sequence_must_follow_tail(self, store):
        """Test that a record skipping a position is refused."""
        first = _record(1, GENESIS_DIGEST)
        store.append_record(first)

        with pytest.raises(ConcurrentAppendConflict):
            store.append_record(_record(3, first.digest))

    def test_record_round_trip(self, store):
        """Test that stored records keep their hashed fields."""
        ledger = AuditLedger(store, tenant_id="acme", config=LedgerConfig())
        appended = ledger.append("invoice.approved", "invoice", "inv_1", "u_1", {"amount": 12.5, "tags": ["a"]})

        stored = store.get_record("acme", appended.id)

        assert stored == appended
        assert stored.compute_digest() == stored.digest

    def test_list_records_window(self, store):
        """Test reading a sequence window."""
        ledger = AuditLedger(store, tenant_id="acme", config=LedgerConfig())
        for i in range(5):
            ledger.append("event", "item", str(i))

        window = store.list_records("acme", after_sequence=1, until_sequence=3)

        assert [r.sequence for r in window] == [2, 3]

    def test_find_by_digest(self, store):
        """Test digest lookup."""
        record = _record(1, GENESIS_DIGEST)
        store.append_record(record)

        assert store.find_record_by_digest("acme", record.digest).id == record.id
        assert store.find_record_by_digest("other", record.digest) is None

    def test_list_tenants(self, store):
        """Test listing tenants with records."""
        store.append_record(_record(1, GENESIS_DIGEST, tenant_id="globex"))
        store.append_record(_record(1, GENESIS_DIGEST, tenant_id="acme"))

        assert store.list_tenants() == ["acme", "globex"]


class TestRunRows:
    """Test cases for stored workflow runs."""

    def test_save_and_get(self, store):
        """Test saving and replacing a run."""
        run = {"id": "run_1", "tenant_id": "acme", "workflow_id": "wf", "started_at": "2024-05-01T12:00:00", "status": "running"}
        store.save_run(run)
        store.save_run({**run, "status": "completed"})

        assert store.get_run("acme", "run_1")["status"] == "completed"
        assert store.get_run("globex", "run_1") is None

    def test_list_newest_first(self, store):
        """Test run listing order and filters."""
        for i, workflow_id in enumerate(["a", "b", "a"]):
            store.save_run({
                "id": f"run_{i}",
                "tenant_id": "acme",
                "workflow_id": workflow_id,
                "started_at": f"2024-05-01T12:00:0{i}",
            })

        assert [r["id"] for r in store.list_runs("acme")] == ["run_2", "run_1", "run_0"]
        assert [r["id"] for r in store.list_runs("acme", workflow_id="a")] == ["run_2", "run_0"]
        assert len(store.list_runs("acme", limit=1)) == 1


class TestCacheRows:
    """Test cases for stored cache entries."""

    def _entry(self, generated_at: str, expires_at: str, value):
        return {
            "tenant_id": "acme",
            "key": "sales:90d",
            "subject": "sales",
            "horizon": "90d",
            "value": value,
            "generated_at": generated_at,
            "expires_at": expires_at,
        }

    def test_later_generation_wins(self, store):
        """Test that an older entry cannot replace a newer one."""
        newer = self._entry("2024-05-01T12:00:10.000000Z", "2024-05-01T12:10:10.000000Z", "new")
        older = self._entry("2024-05-01T12:00:00.000000Z", "2024-05-01T12:10:00.000000Z", "old")

        assert store.put_cache_entry(newer) is True
        assert store.put_cache_entry(older) is False
        assert store.get_cache_entry("acme", "sales:90d")["value"] == "new"

    def test_overwrite(self, store):
        """Test replacing an entry with a newer one."""
        store.put_cache_entry(self._entry("2024-05-01T12:00:00.000000Z", "2024-05-01T12:10:00.000000Z", 1))
        store.put_cache_entry(self._entry("2024-05-01T12:05:00.000000Z", "2024-05-01T12:15:00.000000Z", 2))

        assert store.get_cache_entry("acme", "sales:90d")["value"] == 2

    def test_delete_expired(self, store):
        """Test sweeping entries at or past expiry."""
        store.put_cache_entry(self._entry("2024-05-01T12:00:00.000000Z", "2024-05-01T12:10:00.000000Z", 1))

        assert store.delete_expired_cache_entries("acme", "2024-05-01T12:09:59.000000Z") == 0
        assert store.delete_expired_cache_entries("acme", "2024-05-01T12:10:00.000000Z") == 1
        assert store.get_cache_entry("acme", "sales:90d") is None


class TestSqliteStore:
    """Test cases specific to SQLite."""

    def test_persists_across_instances(self, tmp_path):
        """Test reopening the same database file."""
        path = str(tmp_path / "ledger.db")
        ledger = AuditLedger(SqliteStore(path), tenant_id="acme", config=LedgerConfig())
        record = ledger.append("a", "r", "1")

        reopened = AuditLedger(SqliteStore(path), tenant_id="acme", config=LedgerConfig())

        assert reopened.head().digest == record.digest
        assert reopened.verify().valid

    def test_stats(self, sqlite_store):
        """Test storage statistics."""
        sqlite_store.append_record(_record(1, GENESIS_DIGEST))

        stats = sqlite_store.get_stats()

        assert stats["mode"] == "sqlite"
        assert stats["records"] == 1


class TestCreateStore:
    """Test cases for backend selection."""

    def test_memory(self):
        """Test building the memory backend."""
        assert isinstance(create_store(StoreConfig(backend="memory")), MemoryStore)

    def test_sqlite(self, tmp_path):
        """Test building the SQLite backend."""
        store = create_store(StoreConfig(backend="sqlite", sqlite_path=str(tmp_path / "x.db"), sqlite_timeout=1.0))

        assert isinstance(store, SqliteStore)

    def test_unknown_backend(self):
        """Test rejecting an unknown backend."""
        with pytest.raises(ValueError):
            create_store(StoreConfig(backend="postgres"))
