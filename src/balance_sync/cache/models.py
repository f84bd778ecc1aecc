"""Records persisted by the balance cache."""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from balance_sync.explorer.models import BalanceSnapshot, Network, parse_timestamp

CACHE_FORMAT_VERSION = "1.0"


class SyncState(str, Enum):
    """Sync state reported for a user's address."""

    SYNCED = "synced"
    UNKNOWN = "unknown"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class CacheEntry:
    """A snapshot stored for one user and address, with provenance."""

    user_id: str
    address: str
    network: Network
    snapshot: BalanceSnapshot
    last_updated: datetime
    source: str
    ttl_seconds: int | None = None
    version: str = CACHE_FORMAT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "address": self.address,
            "network": self.network.value,
            "balances": self.snapshot.to_dict(),
            "lastUpdated": self.last_updated.isoformat(),
            "source": self.source,
            "ttlSeconds": self.ttl_seconds,
            "version": self.version,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """Create a CacheEntry from its stored form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has the wrong shape.
        """
        snapshot = BalanceSnapshot.from_dict(data["balances"])
        network = Network.parse(data["network"]) if data.get("network") else snapshot.network
        ttl = data.get("ttlSeconds")
        return cls(
            user_id=str(data["userId"]),
            address=str(data["address"]),
            network=network,
            snapshot=snapshot,
            last_updated=parse_timestamp(str(data["lastUpdated"])),
            source=str(data.get("source", snapshot.source)),
            ttl_seconds=int(ttl) if ttl is not None else None,
            version=str(data.get("version", CACHE_FORMAT_VERSION)),
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Cache entry is not a JSON object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class HistoryEntry:
    """One recorded balance update."""

    timestamp: datetime
    source: str
    balances: dict[str, str]
    action: str = "update"

    def to_json(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "source": self.source,
                "balances": self.balances,
                "action": self.action,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "HistoryEntry":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("History entry is not a JSON object")
        balances = data.get("balances") or {}
        if not isinstance(balances, dict):
            raise ValueError("History balances are not an object")
        return cls(
            timestamp=parse_timestamp(str(data["timestamp"])),
            source=str(data.get("source", "unknown")),
            balances={str(k): str(v) for k, v in balances.items()},
            action=str(data.get("action", "update")),
        )


@dataclass(frozen=True)
class SyncStatus:
    """Sync state of one user's address, for observability."""

    user_id: str
    address: str
    status: SyncState
    last_sync: datetime | None = None
    source: str | None = None
    balance_count: int = 0
    has_cache: bool = False
    cache_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "address": self.address,
            "status": self.status.value,
            "lastSync": self.last_sync.isoformat() if self.last_sync else None,
            "source": self.source,
            "balanceCount": self.balance_count,
            "hasCache": self.has_cache,
            "cacheTimestamp": self.cache_timestamp.isoformat() if self.cache_timestamp else None,
        }


@dataclass(frozen=True)
class CacheStats:
    """Key counts per cache namespace."""

    connected: bool
    fast_entries: int = 0
    fallback_entries: int = 0
    history_lists: int = 0
    status_records: int = 0

    @property
    def total_keys(self) -> int:
        return self.fast_entries + self.fallback_entries + self.history_lists + self.status_records

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "fastEntries": self.fast_entries,
            "fallbackEntries": self.fallback_entries,
            "historyLists": self.history_lists,
            "statusRecords": self.status_records,
            "totalKeys": self.total_keys,
        }
