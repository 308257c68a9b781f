"""
Audit Models

Data models for hash-chained audit records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid
import json

from ledgercore.audit import hashchain
from ledgercore.audit.hashchain import GENESIS_DIGEST, RecordFields, as_utc


class AuditActionType(str, Enum):
    """Action types appended by the core itself."""
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_STEP = "workflow.step"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    CACHE_POPULATED = "cache.populated"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class AuditRecord:
    """A single link in a tenant's audit chain."""

    action_type: str
    resource_type: str
    resource_id: str
    actor_id: Optional[str] = None
    payload: Any = field(default_factory=dict)

    id: str = field(default_factory=lambda: f"audit_{uuid.uuid4().hex}")
    tenant_id: str = "default"
    sequence: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    previous_digest: str = GENESIS_DIGEST
    digest: str = ""

    @property
    def fields(self) -> RecordFields:
        """Fields covered by the digest."""
        return RecordFields(
            action_type=self.action_type,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            actor_id=self.actor_id,
            timestamp=self.timestamp,
            payload=self.payload,
        )

    def compute_digest(self) -> str:
        """Recompute the digest from the stored fields."""
        return hashchain.digest(self.previous_digest, self.fields)

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sequence": self.sequence,
            "timestamp": hashchain.format_timestamp(self.timestamp),
            "action_type": self.action_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "previous_digest": self.previous_digest,
            "digest": self.digest,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict) -> "AuditRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            tenant_id=data.get("tenant_id", "default"),
            sequence=int(data.get("sequence", 0)),
            timestamp=parse_timestamp(data["timestamp"]),
            action_type=data.get("action_type", ""),
            resource_type=data.get("resource_type", ""),
            resource_id=data.get("resource_id", ""),
            actor_id=data.get("actor_id"),
            payload=data.get("payload", {}),
            previous_digest=data.get("previous_digest", GENESIS_DIGEST),
            digest=data.get("digest", ""),
        )


@dataclass
class AuditQuery:
    """Query parameters for audit records."""

    action_type: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    limit: int = 100
    offset: int = 0
    newest_first: bool = False

    def matches(self, record: AuditRecord) -> bool:
        """Check whether a record passes every set filter."""
        if self.action_type and record.action_type != self.action_type:
            return False
        if self.resource_type and record.resource_type != self.resource_type:
            return False
        if self.resource_id and record.resource_id != self.resource_id:
            return False
        if self.actor_id and record.actor_id != self.actor_id:
            return False
        if self.start_time and record.timestamp < as_utc(self.start_time):
            return False
        if self.end_time and record.timestamp > as_utc(self.end_time):
            return False
        return True

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "action_type": self.action_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor_id": self.actor_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "limit": self.limit,
            "offset": self.offset,
            "newest_first": self.newest_first,
        }


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of walking a range of the chain."""

    valid: bool
    broken_at: Optional[str] = None
    reason: str = ""
    records_checked: int = 0
    full: bool = True
    from_id: Optional[str] = None
    to_id: Optional[str] = None

    @property
    def status(self) -> str:
        return "valid" if self.valid else "broken"

    @classmethod
    def ok(cls, records_checked: int, full: bool, from_id=None, to_id=None) -> "VerificationResult":
        return cls(
            valid=True,
            records_checked=records_checked,
            full=full,
            from_id=from_id,
            to_id=to_id,
        )

    @classmethod
    def broken(
            cls,
            record_id: str,
            reason: str,
            records_checked: int,
            full: bool,
            from_id=None,
            to_id=None,
    ) -> "VerificationResult":
        return cls(
            valid=False,
            broken_at=record_id,
            reason=reason,
            records_checked=records_checked,
            full=full,
            from_id=from_id,
            to_id=to_id,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "status": self.status,
            "valid": self.valid,
            "broken_at": self.broken_at,
            "reason": self.reason,
            "records_checked": self.records_checked,
            "full": self.full,
            "from_id": self.from_id,
            "to_id": self.to_id,
        }
