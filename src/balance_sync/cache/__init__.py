"""Cache layer - Two-tier balance cache, history and sync status."""

from balance_sync.cache.balance_cache import BalanceCache
from balance_sync.cache.models import (
    CacheEntry,
    CacheStats,
    HistoryEntry,
    SyncState,
    SyncStatus,
)

__all__ = [
    "BalanceCache",
    "CacheEntry",
    "CacheStats",
    "HistoryEntry",
    "SyncState",
    "SyncStatus",
]
