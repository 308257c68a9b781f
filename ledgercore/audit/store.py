"""
Ledger Store

Persistent storage for audit records, workflow runs and cache entries.

The ledger relies on one guarantee from every backend: ``append_record``
is a conditional insert that only succeeds while the tenant's tail digest
still equals the record's ``previous_digest``.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from ledgercore.audit.hashchain import GENESIS_DIGEST
from ledgercore.audit.models import AuditRecord
from ledgercore.config import StoreConfig
from ledgercore.errors import ConcurrentAppendConflict, StoreUnavailableError

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """
    Abstract storage backend.

    Audit rows are append-only and ordered by ``sequence`` per tenant.
    Runs and cache entries are plain keyed rows holding dictionaries.
    """

    # Audit records

    @abstractmethod
    def get_tail(self, tenant_id: str) -> Optional[AuditRecord]:
        """Return the most recently appended record of a tenant."""

    @abstractmethod
    def append_record(self, record: AuditRecord) -> None:
        """
        Insert a record if it extends the current tail.

        Raises:
            ConcurrentAppendConflict: the tail is no longer ``record.previous_digest``
            StoreUnavailableError: the backend failed; nothing was written
        """

    @abstractmethod
    def list_records(
            self,
            tenant_id: str,
            after_sequence: int = 0,
            until_sequence: Optional[int] = None,
    ) -> List[AuditRecord]:
        """Return records in insertion order within an optional sequence window."""

    @abstractmethod
    def get_record(self, tenant_id: str, record_id: str) -> Optional[AuditRecord]:
        """Return a record by id."""

    @abstractmethod
    def find_record_by_digest(self, tenant_id: str, digest: str) -> Optional[AuditRecord]:
        """Return the record owning a digest."""

    @abstractmethod
    def count_records(self, tenant_id: str) -> int:
        """Count records of a tenant."""

    @abstractmethod
    def list_tenants(self) -> List[str]:
        """Tenants that own at least one audit record."""

    # Workflow runs

    @abstractmethod
    def save_run(self, run: dict) -> None:
        """Insert or replace a run row (keys: id, tenant_id, workflow_id, started_at)."""

    @abstractmethod
    def get_run(self, tenant_id: str, run_id: str) -> Optional[dict]:
        """Return a run row."""

    @abstractmethod
    def list_runs(self, tenant_id: str, workflow_id: Optional[str] = None, limit: int = 10) -> List[dict]:
        """Return run rows, newest first."""

    # Cache entries

    @abstractmethod
    def put_cache_entry(self, entry: dict) -> bool:
        """
        Write a cache entry unless a later-generated one is already stored.

        Returns:
            True if the entry was written
        """

    @abstractmethod
    def get_cache_entry(self, tenant_id: str, key: str) -> Optional[dict]:
        """Return a cache row regardless of its freshness."""

    @abstractmethod
    def delete_expired_cache_entries(self, tenant_id: str, now: str) -> int:
        """Delete entries whose ``expires_at`` is at or before ``now``."""

    def get_stats(self) -> dict:
        """Get storage statistics."""
        return {"mode": type(self).__name__}

    def close(self):
        """Release backend resources."""


class MemoryStore(LedgerStore):
    """
    In-process store.

    Rows are kept as JSON strings so callers never share mutable state
    with the store.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, List[str]] = {}
        self._runs: dict[tuple, str] = {}
        self._cache: dict[tuple, str] = {}

    def _load(self, tenant_id: str) -> List[AuditRecord]:
        return [AuditRecord.from_dict(json.loads(row)) for row in self._records.get(tenant_id, [])]

    def get_tail(self, tenant_id: str) -> Optional[AuditRecord]:
        with self._lock:
            rows = self._records.get(tenant_id)
            if not rows:
                return None
            return AuditRecord.from_dict(json.loads(rows[-1]))

    def append_record(self, record: AuditRecord) -> None:
        with self._lock:
            rows = self._records.setdefault(record.tenant_id, [])
            if rows:
                tail = json.loads(rows[-1])
                tail_digest, tail_sequence = tail["digest"], tail["sequence"]
            else:
                tail_digest, tail_sequence = GENESIS_DIGEST, 0

            if tail_digest != record.previous_digest or record.sequence != tail_sequence + 1:
                raise ConcurrentAppendConflict(record.tenant_id, record.previous_digest, tail_digest)

            rows.append(record.to_json())

        logger.debug(f"Stored record {record.id} at {record.tenant_id}#{record.sequence}")

    def list_records(
            self,
            tenant_id: str,
            after_sequence: int = 0,
            until_sequence: Optional[int] = None,
    ) -> List[AuditRecord]:
        with self._lock:
            records = self._load(tenant_id)
        return [
            r for r in records
            if r.sequence > after_sequence and (until_sequence is None or r.sequence <= until_sequence)
        ]

    def get_record(self, tenant_id: str, record_id: str) -> Optional[AuditRecord]:
        with self._lock:
            records = self._load(tenant_id)
        return next((r for r in records if r.id == record_id), None)

    def find_record_by_digest(self, tenant_id: str, digest: str) -> Optional[AuditRecord]:
        with self._lock:
            records = self._load(tenant_id)
        return next((r for r in records if r.digest == digest), None)

    def count_records(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._records.get(tenant_id, []))

    def list_tenants(self) -> List[str]:
        with self._lock:
            return sorted(t for t, rows in self._records.items() if rows)

    def save_run(self, run: dict) -> None:
        with self._lock:
            self._runs[(run["tenant_id"], run["id"])] = json.dumps(run, default=str)

    def get_run(self, tenant_id: str, run_id: str) -> Optional[dict]:
        with self._lock:
            row = self._runs.get((tenant_id, run_id))
        return json.loads(row) if row else None

    def list_runs(self, tenant_id: str, workflow_id: Optional[str] = None, limit: int = 10) -> List[dict]:
        with self._lock:
            runs = [json.loads(row) for (tenant, _), row in self._runs.items() if tenant == tenant_id]
        if workflow_id:
            runs = [r for r in runs if r.get("workflow_id") == workflow_id]
        runs.sort(key=lambda r: r.get("started_at") or "", reverse=True)
        return runs[:limit]

    def put_cache_entry(self, entry: dict) -> bool:
        slot = (entry["tenant_id"], entry["key"])
        with self._lock:
            existing = self._cache.get(slot)
            if existing and json.loads(existing)["generated_at"] > entry["generated_at"]:
                return False
            self._cache[slot] = json.dumps(entry, default=str)
        return True

    def get_cache_entry(self, tenant_id: str, key: str) -> Optional[dict]:
        with self._lock:
            row = self._cache.get((tenant_id, key))
        return json.loads(row) if row else None

    def delete_expired_cache_entries(self, tenant_id: str, now: str) -> int:
        with self._lock:
            expired = [
                slot for slot, row in self._cache.items()
                if slot[0] == tenant_id and json.loads(row)["expires_at"] <= now
            ]
            for slot in expired:
                del self._cache[slot]
        return len(expired)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "mode": "memory",
                "tenants": len([t for t, rows in self._records.items() if rows]),
                "records": sum(len(rows) for rows in self._records.values()),
                "runs": len(self._runs),
                "cache_entries": len(self._cache),
            }


class SqliteStore(LedgerStore):
    """
    SQLite-backed store.

    Appends run inside ``BEGIN IMMEDIATE`` transactions, and UNIQUE
    constraints on ``(tenant_id, sequence)`` and ``(tenant_id, previous_digest)``
    reject a fork even when another process writes the same file.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        self._db_path = db_path
        self._timeout = timeout
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @classmethod
    def from_config(cls, store_config: StoreConfig) -> "SqliteStore":
        return cls(store_config.sqlite_path, timeout=store_config.sqlite_timeout)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open {self._db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Read from {self._db_path} failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock, self._read() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self):
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_records (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT NOT NULL,
                    actor_id TEXT,
                    payload TEXT NOT NULL,
                    previous_digest TEXT NOT NULL,
                    digest TEXT NOT NULL,
                    UNIQUE (tenant_id, sequence),
                    UNIQUE (tenant_id, previous_digest)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_audit_records_digest ON audit_records(tenant_id, digest)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    tenant_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    tenant_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    generated_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, key)
                )
                """
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AuditRecord:
        data = dict(row)
        data["payload"] = json.loads(data["payload"])
        return AuditRecord.from_dict(data)

    def get_tail(self, tenant_id: str) -> Optional[AuditRecord]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM audit_records WHERE tenant_id = ? ORDER BY sequence DESC LIMIT 1",
                (tenant_id,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def append_record(self, record: AuditRecord) -> None:
        data = record.to_dict()
        with self._transaction() as conn:
            tail = conn.execute(
                "SELECT digest, sequence FROM audit_records WHERE tenant_id = ? ORDER BY sequence DESC LIMIT 1",
                (record.tenant_id,),
            ).fetchone()
            tail_digest = tail["digest"] if tail else GENESIS_DIGEST
            tail_sequence = tail["sequence"] if tail else 0

            if tail_digest != record.previous_digest or record.sequence != tail_sequence + 1:
                raise ConcurrentAppendConflict(record.tenant_id, record.previous_digest, tail_digest)

            try:
                conn.execute(
                    """
                    INSERT INTO audit_records (
                        id, tenant_id, sequence, timestamp, action_type, resource_type,
                        resource_id, actor_id, payload, previous_digest, digest
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data["id"],
                        data["tenant_id"],
                        data["sequence"],
                        data["timestamp"],
                        data["action_type"],
                        data["resource_type"],
                        data["resource_id"],
                        data["actor_id"],
                        json.dumps(data["payload"], sort_keys=True),
                        data["previous_digest"],
                        data["digest"],
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConcurrentAppendConflict(
                    record.tenant_id, record.previous_digest, tail_digest
                ) from e

        logger.debug(f"Stored record {record.id} at {record.tenant_id}#{record.sequence}")

    def list_records(
            self,
            tenant_id: str,
            after_sequence: int = 0,
            until_sequence: Optional[int] = None,
    ) -> List[AuditRecord]:
        query = "SELECT * FROM audit_records WHERE tenant_id = ? AND sequence > ?"
        params: list = [tenant_id, after_sequence]
        if until_sequence is not None:
            query += " AND sequence <= ?"
            params.append(until_sequence)
        query += " ORDER BY sequence ASC"

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_record(self, tenant_id: str, record_id: str) -> Optional[AuditRecord]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM audit_records WHERE tenant_id = ? AND id = ?",
                (tenant_id, record_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def find_record_by_digest(self, tenant_id: str, digest: str) -> Optional[AuditRecord]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM audit_records WHERE tenant_id = ? AND digest = ? ORDER BY sequence LIMIT 1",
                (tenant_id, digest),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def count_records(self, tenant_id: str) -> int:
        with self._read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM audit_records WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        return int(row["n"])

    def list_tenants(self) -> List[str]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT DISTINCT tenant_id FROM audit_records ORDER BY tenant_id"
            ).fetchall()
        return [row["tenant_id"] for row in rows]

    def save_run(self, run: dict) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO workflow_runs (tenant_id, id, workflow_id, started_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, id) DO UPDATE SET data = excluded.data
                """,
                (
                    run["tenant_id"],
                    run["id"],
                    run["workflow_id"],
                    run["started_at"],
                    json.dumps(run, default=str),
                ),
            )

    def get_run(self, tenant_id: str, run_id: str) -> Optional[dict]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT data FROM workflow_runs WHERE tenant_id = ? AND id = ?",
                (tenant_id, run_id),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def list_runs(self, tenant_id: str, workflow_id: Optional[str] = None, limit: int = 10) -> List[dict]:
        query = "SELECT data FROM workflow_runs WHERE tenant_id = ?"
        params: list = [tenant_id]
        if workflow_id:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def put_cache_entry(self, entry: dict) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO cache_entries (tenant_id, key, generated_at, expires_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, key) DO UPDATE SET
                    generated_at = excluded.generated_at,
                    expires_at = excluded.expires_at,
                    data = excluded.data
                WHERE excluded.generated_at >= cache_entries.generated_at
                """,
                (
                    entry["tenant_id"],
                    entry["key"],
                    entry["generated_at"],
                    entry["expires_at"],
                    json.dumps(entry, default=str),
                ),
            )
            return int(cursor.rowcount or 0) == 1

    def get_cache_entry(self, tenant_id: str, key: str) -> Optional[dict]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT data FROM cache_entries WHERE tenant_id = ? AND key = ?",
                (tenant_id, key),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def delete_expired_cache_entries(self, tenant_id: str, now: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE tenant_id = ? AND expires_at <= ?",
                (tenant_id, now),
            )
            return int(cursor.rowcount or 0)

    def get_stats(self) -> dict:
        with self._read() as conn:
            records = conn.execute("SELECT COUNT(*) AS n FROM audit_records").fetchone()["n"]
            tenants = conn.execute("SELECT COUNT(DISTINCT tenant_id) AS n FROM audit_records").fetchone()["n"]
            runs = conn.execute("SELECT COUNT(*) AS n FROM workflow_runs").fetchone()["n"]
            cache_entries = conn.execute("SELECT COUNT(*) AS n FROM cache_entries").fetchone()["n"]
        return {
            "mode": "sqlite",
            "path": self._db_path,
            "tenants": tenants,
            "records": records,
            "runs": runs,
            "cache_entries": cache_entries,
        }


def create_store(store_config: Optional[StoreConfig] = None) -> LedgerStore:
    """Build the store selected by configuration."""
    store_config = store_config or StoreConfig()

    if store_config.backend == "memory":
        return MemoryStore()
    if store_config.backend == "sqlite":
        logger.info(f"Using SQLite store at {store_config.sqlite_path}")
        return SqliteStore.from_config(store_config)

    raise ValueError(f"Unknown store backend: {store_config.backend}")
