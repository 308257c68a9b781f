"""
Audit Package

Append-only, hash-chained audit ledger with pluggable persistence.
"""

from ledgercore.audit.hashchain import GENESIS_DIGEST, RecordFields, digest
from ledgercore.audit.models import (
    AuditActionType,
    AuditQuery,
    AuditRecord,
    VerificationResult,
)
from ledgercore.audit.store import LedgerStore, MemoryStore, SqliteStore, create_store
from ledgercore.audit.ledger import AuditLedger

__all__ = [
    "GENESIS_DIGEST",
    "RecordFields",
    "digest",
    "AuditActionType",
    "AuditQuery",
    "AuditRecord",
    "VerificationResult",
    "LedgerStore",
    "MemoryStore",
    "SqliteStore",
    "create_store",
    "AuditLedger",
]
