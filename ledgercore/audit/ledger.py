"""
Audit Ledger

Append-only, hash-chained audit ledger for a single tenant.
"""

import json
import logging
import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from ledgercore.audit.hashchain import GENESIS_DIGEST, as_utc, is_digest
from ledgercore.audit.models import AuditQuery, AuditRecord, VerificationResult
from ledgercore.audit.store import LedgerStore, MemoryStore
from ledgercore.config import LedgerConfig
from ledgercore.errors import (
    AppendRetryExhausted,
    ChainIntegrityError,
    ConcurrentAppendConflict,
    RecordNotFound,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLedger:
    """
    Hash-chained audit ledger.

    Appends are serialized twice: an in-process critical section keeps
    callers sharing this instance from reading the same tail, and the
    store's conditional insert catches writers outside it (other ledger
    instances, other processes). A conflict from the store is retried a
    bounded number of times.

    Example:
        >>> ledger = AuditLedger(MemoryStore(), tenant_id="acme")
        >>> record = ledger.append("invoice.approved", "invoice", "inv_42", actor_id="u_7")
        >>> ledger.verify().valid
        True
    """

    def __init__(
            self,
            store: Optional[LedgerStore] = None,
            tenant_id: str = "default",
            config: Optional[LedgerConfig] = None,
            clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the ledger.

        Args:
            store: Persistent store (in-memory if not provided)
            tenant_id: Tenant whose chain this ledger appends to
            config: Ledger configuration
            clock: Source of the current UTC time
        """
        self.store = store or MemoryStore()
        self.tenant_id = tenant_id
        self.config = config or LedgerConfig()
        self._clock = clock or _utcnow
        self._append_lock = threading.Lock()

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def append(
            self,
            action_type: str,
            resource_type: str,
            resource_id: str,
            actor_id: Optional[str] = None,
            payload: Any = None,
    ) -> AuditRecord:
        """
        Append a record chained to the current tail.

        Args:
            action_type: Event classification, e.g. "workflow.started"
            resource_type: Kind of resource the event concerns
            resource_id: Identifier of that resource
            actor_id: Caller identity, None for system events
            payload: JSON-serializable event data

        Returns:
            The persisted record

        Raises:
            AppendRetryExhausted: the tail kept moving past the retry bound
            StoreUnavailableError: the store failed; nothing was written
        """
        # Normalize through JSON so the stored payload is exactly what was hashed
        payload = json.loads(json.dumps({} if payload is None else payload, allow_nan=False))

        attempts = max(1, self.config.max_append_retries)
        last_conflict: Optional[ConcurrentAppendConflict] = None

        for attempt in range(1, attempts + 1):
            with self._append_lock:
                tail = self.store.get_tail(self.tenant_id)
                record = self._build_record(tail, action_type, resource_type, resource_id, actor_id, payload)
                try:
                    self.store.append_record(record)
                except ConcurrentAppendConflict as e:
                    last_conflict = e
                    logger.warning(f"Append conflict on ledger '{self.tenant_id}' (attempt {attempt}/{attempts}): {e}")
                    continue

            logger.info(f"Appended {action_type} {resource_type}/{resource_id} as {self.tenant_id}#{record.sequence}")
            return record

        raise AppendRetryExhausted(self.tenant_id, attempts) from last_conflict

    def _build_record(
            self,
            tail: Optional[AuditRecord],
            action_type: str,
            resource_type: str,
            resource_id: str,
            actor_id: Optional[str],
            payload: Any,
    ) -> AuditRecord:
        now = as_utc(self._clock())
        if tail is not None and tail.timestamp > now:
            now = tail.timestamp

        record = AuditRecord(
            action_type=action_type,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            payload=payload,
            tenant_id=self.tenant_id,
            sequence=tail.sequence + 1 if tail else 1,
            timestamp=now,
            previous_digest=tail.digest if tail else GENESIS_DIGEST,
        )
        return replace(record, digest=record.compute_digest())

    def verify(
            self,
            from_id: Optional[str] = None,
            to_id: Optional[str] = None,
            full: Optional[bool] = None,
    ) -> VerificationResult:
        """
        Walk the chain over a range in insertion order.

        Args:
            from_id: First record to check (chain start if omitted)
            to_id: Last record to check (chain tail if omitted)
            full: Also recompute each digest from its fields

        Returns:
            ``valid`` or the first record where the chain breaks
        """
        full = self.config.verify_full if full is None else full

        after_sequence = 0
        until_sequence = None
        if from_id:
            after_sequence = self.get(from_id).sequence - 1
        if to_id:
            until_sequence = self.get(to_id).sequence
            if until_sequence <= after_sequence:
                raise ValueError(f"Record {to_id} precedes {from_id}")

        records = self.store.list_records(self.tenant_id, after_sequence, until_sequence)

        def broken(record: AuditRecord, reason: str, checked: int) -> VerificationResult:
            logger.error(f"Audit chain '{self.tenant_id}' broken at {record.id}: {reason}")
            return VerificationResult.broken(record.id, reason, checked, full, from_id, to_id)

        if after_sequence == 0:
            expected_previous = GENESIS_DIGEST
        else:
            predecessor = self.store.list_records(self.tenant_id, after_sequence - 1, after_sequence)
            if not predecessor:
                return broken(records[0], "predecessor record is missing", 0)
            expected_previous = predecessor[0].digest

        expected_sequence = after_sequence + 1
        checked = 0

        for record in records:
            if record.previous_digest != expected_previous:
                return broken(record, "previous digest does not match predecessor", checked)
            if record.sequence != expected_sequence:
                return broken(record, f"sequence gap: expected {expected_sequence}, found {record.sequence}", checked)
            if record.digest == GENESIS_DIGEST:
                return broken(record, "record carries the genesis digest", checked)
            if full and record.compute_digest() != record.digest:
                return broken(record, "digest does not match record contents", checked)

            checked += 1
            expected_previous = record.digest
            expected_sequence = record.sequence + 1

        logger.debug(f"Verified {checked} records of ledger '{self.tenant_id}'")
        return VerificationResult.ok(checked, full, from_id, to_id)

    def ensure_intact(
            self,
            from_id: Optional[str] = None,
            to_id: Optional[str] = None,
            full: Optional[bool] = None,
    ) -> VerificationResult:
        """Verify and raise ChainIntegrityError on the first broken link."""
        result = self.verify(from_id=from_id, to_id=to_id, full=full)
        if not result.valid:
            raise ChainIntegrityError(result.broken_at, result.reason)
        return result

    def list(self, query: Optional[AuditQuery] = None) -> List[AuditRecord]:
        """
        Read-only projection of the chain.

        Args:
            query: Filters, paging and ordering

        Returns:
            Matching records
        """
        query = query or AuditQuery()
        records = [r for r in self.store.list_records(self.tenant_id) if query.matches(r)]
        if query.newest_first:
            records.reverse()
        return records[query.offset: query.offset + query.limit]

    def timeline(self, limit: int = 20) -> List[AuditRecord]:
        """Most recent records, newest first."""
        return self.list(AuditQuery(limit=limit, newest_first=True))

    def get(self, record_id: str) -> AuditRecord:
        """Get a record by id."""
        record = self.store.get_record(self.tenant_id, record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def head(self) -> Optional[AuditRecord]:
        """Current chain tail."""
        return self.store.get_tail(self.tenant_id)

    def find_by_digest(self, digest: str) -> Optional[AuditRecord]:
        """
        Look up the record that owns a digest.

        Raises:
            ValueError: ``digest`` is not 64 hex characters
        """
        if not is_digest(digest):
            raise ValueError(f"Not a SHA-256 hex digest: {digest!r}")
        return self.store.find_record_by_digest(self.tenant_id, digest.lower())

    def get_stats(self) -> dict:
        """Get ledger statistics."""
        records = self.store.list_records(self.tenant_id)
        head = records[-1] if records else None

        return {
            "tenant_id": self.tenant_id,
            "records": len(records),
            "by_action_type": dict(Counter(r.action_type for r in records)),
            "head_digest": head.digest if head else GENESIS_DIGEST,
            "head_sequence": head.sequence if head else 0,
            "database": self.store.get_stats(),
        }
