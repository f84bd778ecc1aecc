"""Two-tier balance cache on top of a key/value store.

Key layout:
- ``balances:{user}:{address}:{network}``: fast tier, expires after the TTL
- ``balance_sync:cache:{user}:{address}``: fallback tier, last known snapshot
- ``balance_sync:history:{user}:{address}``: bounded list of updates, newest first
- ``balance_sync:status:{user}:{address}``: last sync status record

Addresses are lower-cased before they go into keys. The fallback tier is not
keyed by network, so an entry recorded for another network reads as a miss.

Writes are best-effort: each failed write is logged and nothing is rolled back.
"""

import json
import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from balance_sync.cache.models import (
    CacheEntry,
    CacheStats,
    HistoryEntry,
    SyncState,
    SyncStatus,
)
from balance_sync.explorer.models import BalanceSnapshot, Network, parse_timestamp
from balance_sync.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

# Key prefixes
BALANCES_KEY_PREFIX = "balances"
SYNC_CACHE_KEY_PREFIX = "balance_sync:cache"
SYNC_HISTORY_KEY_PREFIX = "balance_sync:history"
SYNC_STATUS_KEY_PREFIX = "balance_sync:status"
KEY_PREFIXES = (BALANCES_KEY_PREFIX, SYNC_CACHE_KEY_PREFIX, SYNC_HISTORY_KEY_PREFIX, SYNC_STATUS_KEY_PREFIX)

# Default configuration
DEFAULT_BALANCE_TTL_SECONDS = 300
DEFAULT_HISTORY_MAX_ENTRIES = 100
DEFAULT_HISTORY_LIMIT = 50
DELETE_BATCH_SIZE = 500

_GLOB_SPECIAL = str.maketrans({c: f"\\{c}" for c in "*?[]\\"})


def _key_address(address: str) -> str:
    return address.strip().lower()


def _escape_pattern(value: str) -> str:
    return value.translate(_GLOB_SPECIAL)


class BalanceCache:
    """Snapshot cache with a fast tier, a fallback tier, history and status.

    Example:
        ```python
        cache = BalanceCache(store, ttl_seconds=300)
        await cache.put("42", address, Network.TESTNET, snapshot)

        snapshot = await cache.get("42", address, Network.TESTNET)
        entry = await cache.get_fallback("42", address, Network.TESTNET)
        ```
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_BALANCE_TTL_SECONDS,
        fallback_ttl_seconds: int | None = None,
        history_max_entries: int = DEFAULT_HISTORY_MAX_ENTRIES,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Key/value store to persist into.
            ttl_seconds: Default TTL of the fast tier.
            fallback_ttl_seconds: TTL of the fallback tier, None for no expiry.
            history_max_entries: Bound on history entries per user and address.
        """
        self._store = store
        self._ttl = ttl_seconds
        self._fallback_ttl = fallback_ttl_seconds
        self._history_max = history_max_entries

    @property
    def store(self) -> KeyValueStore:
        return self._store

    # Keys

    def fast_key(self, user_id: str, address: str, network: Network | str) -> str:
        return f"{BALANCES_KEY_PREFIX}:{user_id}:{_key_address(address)}:{Network.parse(network).value}"

    def fallback_key(self, user_id: str, address: str) -> str:
        return f"{SYNC_CACHE_KEY_PREFIX}:{user_id}:{_key_address(address)}"

    def history_key(self, user_id: str, address: str) -> str:
        return f"{SYNC_HISTORY_KEY_PREFIX}:{user_id}:{_key_address(address)}"

    def status_key(self, user_id: str, address: str) -> str:
        return f"{SYNC_STATUS_KEY_PREFIX}:{user_id}:{_key_address(address)}"

    # Reads

    async def _read_entry(self, key: str) -> CacheEntry | None:
        raw = await self._store.get(key)
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse cached balances at %s: %s", key, e)
            return None

    async def _store_available(self) -> bool:
        """Whether the store answers, re-probing it if it was marked down."""
        if self._store.is_connected:
            return True
        return await self._store.ping()

    async def get(self, user_id: str, address: str, network: Network | str) -> BalanceSnapshot | None:
        """Get the fast-tier snapshot, or None on miss, expiry or failure."""
        network = Network.parse(network)
        key = self.fast_key(user_id, address, network)
        entry = await self._read_entry(key)
        if entry is None or entry.snapshot.network is not network:
            return None
        logger.debug("Cache hit for %s", key)
        return entry.snapshot

    async def get_fallback(self, user_id: str, address: str, network: Network | str) -> CacheEntry | None:
        """Get the last known snapshot for this user and address on ``network``."""
        network = Network.parse(network)
        key = self.fallback_key(user_id, address)
        entry = await self._read_entry(key)
        if entry is None:
            return None
        if entry.snapshot.network is not network:
            logger.debug(
                "Ignoring fallback entry at %s recorded for %s, requested %s",
                key,
                entry.snapshot.network.value,
                network.value,
            )
            return None
        return entry

    # Writes

    async def _write(self, key: str, payload: str | None, ttl_seconds: int | None, entity: str) -> bool:
        if payload is None:
            return False
        return await self._store.set_with_expiry(key, payload, ttl_seconds, entity=entity)

    @staticmethod
    def _serialize(value: CacheEntry | HistoryEntry | dict[str, Any], entity: str) -> str | None:
        try:
            if isinstance(value, dict):
                return json.dumps(value)
            return value.to_json()
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize %s: %s", entity, e)
            return None

    async def put(
        self,
        user_id: str,
        address: str,
        network: Network | str,
        snapshot: BalanceSnapshot,
        ttl_seconds: int | None = None,
        *,
        source: str | None = None,
    ) -> bool:
        """Write a fresh snapshot through both tiers, history and status.

        Args:
            user_id: Owner of the lookup.
            address: Address the snapshot belongs to.
            network: Network the snapshot belongs to.
            snapshot: Snapshot to store. Request annotations are stripped.
            ttl_seconds: Fast-tier TTL override.
            source: Provenance tag, defaults to the snapshot's source.

        Returns:
            True only if every write succeeded.

        Raises:
            ValueError: If the snapshot was taken on another network.
        """
        network = Network.parse(network)
        if snapshot.network is not network:
            raise ValueError(f"Snapshot for {snapshot.network.value} cannot be cached under {network.value}")

        now = datetime.now(UTC)
        source = source or snapshot.source
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        stored = replace(snapshot, from_cache=False, sync_status=None, sync_error=None, last_cache_update=None)

        entry = CacheEntry(
            user_id=user_id,
            address=_key_address(address),
            network=network,
            snapshot=stored,
            last_updated=now,
            source=source,
            ttl_seconds=ttl,
        )
        key = self.fast_key(user_id, address, network)
        fast_ok = await self._write(key, self._serialize(entry, "balance snapshot"), ttl, "balance snapshot")
        if not fast_ok:
            logger.warning("Failed to cache balances at %s (continuing)", key)

        sync_ok = await self._write_sync_records(user_id, address, stored, timestamp=now, source=source)
        return fast_ok and sync_ok

    async def update_sync_cache(
        self,
        user_id: str,
        address: str,
        snapshot: BalanceSnapshot,
        *,
        timestamp: datetime | None = None,
        source: str = "frontend",
    ) -> bool:
        """Record balances pushed by a client: fallback tier, history and status.

        The fast tier is left alone.

        Returns:
            True only if every write succeeded.
        """
        stored = replace(snapshot, from_cache=False, sync_status=None, sync_error=None, last_cache_update=None)
        return await self._write_sync_records(
            user_id,
            address,
            stored,
            timestamp=timestamp or datetime.now(UTC),
            source=source,
        )

    async def _write_sync_records(
        self,
        user_id: str,
        address: str,
        snapshot: BalanceSnapshot,
        *,
        timestamp: datetime,
        source: str,
    ) -> bool:
        entry = CacheEntry(
            user_id=user_id,
            address=_key_address(address),
            network=snapshot.network,
            snapshot=snapshot,
            last_updated=timestamp,
            source=source,
            ttl_seconds=self._fallback_ttl,
        )
        fallback_ok = await self._write(
            self.fallback_key(user_id, address),
            self._serialize(entry, "fallback snapshot"),
            self._fallback_ttl,
            "fallback snapshot",
        )

        history_key = self.history_key(user_id, address)
        history = HistoryEntry(timestamp=timestamp, source=source, balances=dict(snapshot.balances_table))
        history_payload = self._serialize(history, "history entry")
        history_ok = history_payload is not None and await self._store.push_history(
            history_key, history_payload, entity="history entry"
        )
        if history_ok:
            history_ok = await self._store.trim_history(history_key, self._history_max)

        status_record = {
            "lastSync": timestamp.isoformat(),
            "source": source,
            "status": SyncState.SYNCED.value,
            "balanceCount": len(snapshot.balances_table),
        }
        status_ok = await self._write(
            self.status_key(user_id, address),
            self._serialize(status_record, "sync status"),
            None,
            "sync status",
        )

        for entity, ok in (("fallback snapshot", fallback_ok), ("history", history_ok), ("sync status", status_ok)):
            if not ok:
                logger.warning("Failed to write %s for user %s address %s (continuing)", entity, user_id, address)
        return fallback_ok and history_ok and status_ok

    async def invalidate(self, user_id: str, address: str, network: Network | str) -> bool:
        """Delete the fast-tier entry only. The fallback tier survives."""
        key = self.fast_key(user_id, address, network)
        deleted = await self._store.delete(key)
        if deleted:
            logger.debug("Invalidated %s", key)
        return deleted

    async def clear(self, user_id: str, address: str, network: Network | str) -> bool:
        """Delete every record for this user and address."""
        keys = (
            self.fast_key(user_id, address, network),
            self.fallback_key(user_id, address),
            self.history_key(user_id, address),
            self.status_key(user_id, address),
        )
        cleared = await self._store.delete(*keys)
        if cleared:
            logger.info("Cleared cached balances for user %s address %s", user_id, _key_address(address))
        else:
            logger.warning("Failed to clear cached balances for user %s address %s", user_id, address)
        return cleared

    # History and status

    async def get_history(
        self,
        user_id: str,
        address: str,
        network: Network | str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[HistoryEntry]:
        """Get recorded updates, newest first.

        History is kept per user and address; ``network`` is accepted for
        symmetry with the other lookups. Unparsable entries are skipped.
        """
        Network.parse(network)
        if limit <= 0:
            return []

        key = self.history_key(user_id, address)
        entries: list[HistoryEntry] = []
        for raw in await self._store.range_history(key, 0, limit - 1):
            try:
                entries.append(HistoryEntry.from_json(raw))
            except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unparsable history entry in %s: %s", key, e)
        return entries

    async def get_status(self, user_id: str, address: str, network: Network | str) -> SyncStatus:
        """Get the sync status of this user and address."""
        Network.parse(network)
        address = _key_address(address)

        if not await self._store_available():
            return SyncStatus(user_id=user_id, address=address, status=SyncState.DISCONNECTED)

        record = await self._read_status_record(self.status_key(user_id, address))
        entry = await self._read_entry(self.fallback_key(user_id, address))
        cache_timestamp = entry.last_updated if entry else None

        if record is None:
            return SyncStatus(
                user_id=user_id,
                address=address,
                status=SyncState.UNKNOWN,
                has_cache=entry is not None,
                cache_timestamp=cache_timestamp,
            )

        try:
            state = SyncState(record.get("status"))
        except ValueError:
            state = SyncState.UNKNOWN

        last_sync = None
        if record.get("lastSync"):
            try:
                last_sync = parse_timestamp(str(record["lastSync"]))
            except ValueError:
                logger.warning("Ignoring unparsable lastSync for user %s address %s", user_id, address)

        try:
            balance_count = int(record.get("balanceCount", 0))
        except (TypeError, ValueError):
            balance_count = 0

        return SyncStatus(
            user_id=user_id,
            address=address,
            status=state,
            last_sync=last_sync,
            source=record.get("source"),
            balance_count=balance_count,
            has_cache=entry is not None,
            cache_timestamp=cache_timestamp,
        )

    async def _read_status_record(self, key: str) -> dict[str, Any] | None:
        raw = await self._store.get(key)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse sync status at %s: %s", key, e)
            return None
        return record if isinstance(record, dict) else None

    # Admin

    async def get_user_keys(self, user_id: str) -> list[str]:
        """List every cache key held for a user."""
        user = _escape_pattern(user_id)
        keys: list[str] = []
        for prefix in KEY_PREFIXES:
            keys.extend(await self._store.list_keys_by_pattern(f"{prefix}:{user}:*"))
        return keys

    async def clear_user_data(self, user_id: str) -> int:
        """Delete every cache key held for a user.

        Returns:
            Number of keys deleted.
        """
        keys = await self.get_user_keys(user_id)
        deleted = await self._delete_in_batches(keys)
        logger.info("Cleared %d cache key(s) for user %s", deleted, user_id)
        return deleted

    async def get_cache_stats(self) -> CacheStats:
        """Count keys per namespace."""
        if not await self._store_available():
            return CacheStats(connected=False)

        counts = [
            len(await self._store.list_keys_by_pattern(f"{prefix}:*"))
            for prefix in KEY_PREFIXES
        ]
        return CacheStats(
            connected=self._store.is_connected,
            fast_entries=counts[0],
            fallback_entries=counts[1],
            history_lists=counts[2],
            status_records=counts[3],
        )

    async def clear_all_cache(self) -> int:
        """Delete every key in every cache namespace.

        Returns:
            Number of keys deleted.
        """
        keys: list[str] = []
        for prefix in KEY_PREFIXES:
            keys.extend(await self._store.list_keys_by_pattern(f"{prefix}:*"))
        deleted = await self._delete_in_batches(keys)
        logger.info("Cleared %d balance cache key(s)", deleted)
        return deleted

    async def _delete_in_batches(self, keys: list[str]) -> int:
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            if await self._store.delete(*batch):
                deleted += len(batch)
        return deleted
