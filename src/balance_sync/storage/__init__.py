"""Key/value storage for cached balances."""

from balance_sync.storage.kv import (
    KeyValueStore,
    RedisKeyValueStore,
    StoreError,
    StoreResult,
    StoreUnavailableError,
)

__all__ = [
    "KeyValueStore",
    "RedisKeyValueStore",
    "StoreError",
    "StoreResult",
    "StoreUnavailableError",
]
