"""
Cache Package

Short-TTL prediction cache audited through the ledger.
"""

from ledgercore.cache.models import CacheEntry, CacheKey
from ledgercore.cache.prediction_cache import PredictionCache

__all__ = [
    "CacheEntry",
    "CacheKey",
    "PredictionCache",
]
