"""
Cache Models

Keys and entries of the prediction cache.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from ledgercore.audit.hashchain import format_timestamp
from ledgercore.audit.models import parse_timestamp


@dataclass(frozen=True)
class CacheKey:
    """Composite of subject type and horizon, e.g. sales-forecast x 90d."""

    subject: str
    horizon: str

    def __post_init__(self):
        if not self.subject or not self.horizon:
            raise ValueError("Cache key needs both a subject and a horizon")
        if ":" in self.subject:
            raise ValueError(f"Cache subject may not contain ':': {self.subject!r}")

    def __str__(self) -> str:
        return f"{self.subject}:{self.horizon}"

    @classmethod
    def parse(cls, value: Union["CacheKey", str]) -> "CacheKey":
        """Accept a CacheKey or its ``subject:horizon`` string form."""
        if isinstance(value, CacheKey):
            return value
        subject, separator, horizon = value.partition(":")
        if not separator:
            raise ValueError(f"Cache key must look like 'subject:horizon', got {value!r}")
        return cls(subject, horizon)


@dataclass
class CacheEntry:
    """A cached value and its freshness window."""

    key: CacheKey
    value: Any
    generated_at: datetime
    expires_at: datetime
    tenant_id: str = "default"

    @property
    def ttl_seconds(self) -> float:
        return (self.expires_at - self.generated_at).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        """Expired at or after ``expires_at``."""
        return self.expires_at <= now

    def to_dict(self) -> dict:
        """Convert to the row stored by a LedgerStore."""
        return {
            "tenant_id": self.tenant_id,
            "key": str(self.key),
            "subject": self.key.subject,
            "horizon": self.key.horizon,
            "value": self.value,
            # Fixed-width UTC strings so stores can compare them as text
            "generated_at": format_timestamp(self.generated_at),
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        """Create from a stored row."""
        return cls(
            key=CacheKey(data["subject"], data["horizon"]),
            value=data.get("value"),
            generated_at=parse_timestamp(data["generated_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            tenant_id=data.get("tenant_id", "default"),
        )
