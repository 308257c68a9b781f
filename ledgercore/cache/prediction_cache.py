"""
Prediction Cache

Short-TTL cache for externally computed analytical results.

The cache never computes values. Callers read through it: on a miss they
ask the external source and ``put`` the answer back.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from ledgercore.audit.hashchain import as_utc, format_timestamp
from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.models import AuditActionType
from ledgercore.cache.models import CacheEntry, CacheKey
from ledgercore.config import CacheConfig

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "cache_entry"


class PredictionCache:
    """
    Tenant-scoped TTL cache recording each population in the audit ledger.

    Freshness is decided at read time from the stored ``expires_at``;
    ``purge_expired`` only reclaims space.

    Example:
        >>> cache = PredictionCache(ledger)
        >>> key = CacheKey("sales-forecast", "90d")
        >>> if cache.get(key) is None:
        ...     cache.put(key, forecaster.predict(90), ttl=600)
    """

    def __init__(
            self,
            ledger: AuditLedger,
            config: Optional[CacheConfig] = None,
            clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the cache.

        Args:
            ledger: Audit ledger (its store and tenant are shared)
            config: Cache configuration
            clock: Source of the current UTC time
        """
        self.ledger = ledger
        self.config = config or CacheConfig()
        self._clock = clock or ledger.clock

        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._expired_reads = 0
        self._puts = 0

    @property
    def tenant_id(self) -> str:
        return self.ledger.tenant_id

    @property
    def store(self):
        return self.ledger.store

    def get(self, key: Union[CacheKey, str]) -> Optional[Any]:
        """
        Get a fresh value.

        Returns:
            The value last written for ``key``, or None if absent or expired
        """
        entry = self.get_entry(key)
        return entry.value if entry else None

    def get_entry(self, key: Union[CacheKey, str]) -> Optional[CacheEntry]:
        """Get a fresh entry with its freshness window."""
        key = CacheKey.parse(key)
        row = self.store.get_cache_entry(self.tenant_id, str(key))

        if row is None:
            self._count("_misses")
            return None

        entry = CacheEntry.from_dict(row)

        # Clock read after the fetch so a concurrent put cannot hand back a stale entry
        if entry.is_expired(as_utc(self._clock())):
            logger.debug(f"Cache entry {key} expired at {format_timestamp(entry.expires_at)}")
            self._count("_misses")
            self._count("_expired_reads")
            return None

        self._count("_hits")
        return entry

    def put(
            self,
            key: Union[CacheKey, str],
            value: Any,
            ttl: Optional[float] = None,
            actor_id: Optional[str] = None,
    ) -> CacheEntry:
        """
        Store a value for ``ttl`` seconds, overwriting any existing entry.

        Args:
            key: Cache key
            value: JSON-serializable result to cache
            ttl: Seconds until expiry (configured default if omitted)
            actor_id: Caller identity recorded in the ledger

        Returns:
            The written entry
        """
        key = CacheKey.parse(key)
        ttl = self.config.default_ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")

        # Reject values the store cannot hand back unchanged
        json.dumps(value, allow_nan=False)

        generated_at = as_utc(self._clock())
        entry = CacheEntry(
            key=key,
            value=value,
            generated_at=generated_at,
            expires_at=generated_at + timedelta(seconds=ttl),
            tenant_id=self.tenant_id,
        )

        if not self.store.put_cache_entry(entry.to_dict()):
            # A concurrent put generated later; last write wins
            logger.info(f"Cache put for {key} superseded by a later entry")
            return entry

        self._count("_puts")

        self.ledger.append(
            AuditActionType.CACHE_POPULATED.value,
            RESOURCE_TYPE,
            str(key),
            actor_id=actor_id,
            payload={
                "key": str(key),
                "subject": key.subject,
                "horizon": key.horizon,
                "generated_at": format_timestamp(entry.generated_at),
                "expires_at": format_timestamp(entry.expires_at),
                "ttl_seconds": ttl,
            },
        )

        logger.info(f"Cache populated: {key} (ttl {ttl}s)")
        return entry

    def purge_expired(self) -> int:
        """Delete expired entries. Optional; reads never depend on it."""
        removed = self.store.delete_expired_cache_entries(
            self.tenant_id, format_timestamp(self._clock())
        )
        if removed:
            logger.info(f"Purged {removed} expired cache entries for '{self.tenant_id}'")
        return removed

    def get_stats(self) -> dict:
        """Get cache statistics."""
        with self._stats_lock:
            lookups = self._hits + self._misses
            return {
                "tenant_id": self.tenant_id,
                "hits": self._hits,
                "misses": self._misses,
                "expired_reads": self._expired_reads,
                "puts": self._puts,
                "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
            }

    def _count(self, counter: str):
        with self._stats_lock:
            setattr(self, counter, getattr(self, counter) + 1)
