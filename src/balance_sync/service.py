"""Service wiring for balance lookups.

``BalanceSyncService`` builds the Redis store, explorer client, balance cache
and lookup orchestrator from settings, owns their lifecycle, and exposes the
operations the API layer calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from redis.asyncio import Redis

from balance_sync.cache.balance_cache import BalanceCache
from balance_sync.cache.models import CacheEntry, CacheStats, HistoryEntry, SyncStatus
from balance_sync.config import Settings, get_settings
from balance_sync.explorer.client import ExplorerClient
from balance_sync.explorer.models import BalanceSnapshot, Network
from balance_sync.lookup import BalanceLookupOrchestrator
from balance_sync.storage.kv import RedisKeyValueStore

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Lifecycle statistics for the service."""

    started_at: datetime | None = None
    store_connected_at_start: bool = False
    last_error: str | None = None


class BalanceSyncService:
    """Owns the balance lookup components and their connections.

    Example:
        ```python
        async with BalanceSyncService() as service:
            snapshot = await service.lookup_balances("42", "0x5528...")
            print(snapshot.balances_table, snapshot.sync_status)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            redis: Redis client to use instead of one built from settings.
                The caller keeps ownership.
            http_client: HTTP client for the explorer. The caller keeps
                ownership.
        """
        self._settings = settings or get_settings()
        self._redis_override = redis
        self._http_client_override = http_client

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        # Components (initialized in start())
        self._store: RedisKeyValueStore | None = None
        self._explorer: ExplorerClient | None = None
        self._cache: BalanceCache | None = None
        self._orchestrator: BalanceLookupOrchestrator | None = None

    async def __aenter__(self) -> BalanceSyncService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def default_network(self) -> Network:
        return Network.parse(self._settings.default_network)

    @property
    def cache(self) -> BalanceCache:
        if self._cache is None:
            raise RuntimeError("Service is not running")
        return self._cache

    @property
    def orchestrator(self) -> BalanceLookupOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("Service is not running")
        return self._orchestrator

    async def start(self) -> None:
        """Build and connect all components.

        An unreachable Redis does not fail startup: lookups then go straight
        to the explorer until the store recovers.

        Raises:
            RuntimeError: If the service is not stopped.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state.value}")

        self._state = ServiceState.STARTING
        logger.info("Starting balance sync service...")

        try:
            await self._initialize_components()
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start balance sync service: %s", e)
            await self._cleanup()
            raise

        self._stats.started_at = datetime.now(UTC)
        self._state = ServiceState.RUNNING
        logger.info("Balance sync service started")

    async def _initialize_components(self) -> None:
        settings = self._settings

        logger.debug("Initializing Redis store...")
        password = settings.redis.password.get_secret_value() if settings.redis.password else None
        self._store = RedisKeyValueStore(
            self._redis_override,
            url=settings.redis.url,
            password=password,
            db=settings.redis.db,
            connect_timeout_seconds=settings.redis.connect_timeout_seconds,
            recovery_interval_seconds=settings.redis.recovery_interval_seconds,
        )
        self._stats.store_connected_at_start = await self._store.connect()
        if not self._stats.store_connected_at_start:
            logger.warning("Starting without Redis; balances will not be cached until it recovers")

        logger.debug("Initializing explorer client...")
        self._explorer = ExplorerClient(
            mainnet_url=settings.explorer.mainnet_url,
            testnet_url=settings.explorer.testnet_url,
            http_client=self._http_client_override,
            timeout_seconds=settings.explorer.timeout_seconds,
            max_retries=settings.explorer.max_retries,
            retry_delay_seconds=settings.explorer.retry_delay_seconds,
            max_requests_per_second=settings.explorer.max_requests_per_second,
        )

        self._cache = BalanceCache(
            self._store,
            ttl_seconds=settings.cache.ttl_seconds,
            fallback_ttl_seconds=settings.cache.fallback_ttl_seconds,
            history_max_entries=settings.cache.history_max_entries,
        )
        self._orchestrator = BalanceLookupOrchestrator(
            self._cache,
            self._explorer,
            lookup_timeout_seconds=settings.cache.lookup_timeout_seconds,
            single_flight=settings.cache.single_flight,
        )

    async def stop(self) -> None:
        """Drain pending cache writes and close connections."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping balance sync service...")
        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Balance sync service stopped")

    async def _cleanup(self) -> None:
        if self._orchestrator is not None:
            await self._orchestrator.aclose()
            self._orchestrator = None
        self._cache = None
        if self._explorer is not None:
            await self._explorer.aclose()
            self._explorer = None
        if self._store is not None:
            await self._store.close()
            self._store = None

    def _network(self, network: Network | str | None) -> Network:
        return self.default_network if network is None else Network.parse(network)

    async def lookup_balances(
        self,
        user_id: str,
        address: str,
        network: Network | str | None = None,
        force_refresh: bool = False,
    ) -> BalanceSnapshot:
        """Look up balances; see ``BalanceLookupOrchestrator.lookup_balances``."""
        return await self.orchestrator.lookup_balances(user_id, address, self._network(network), force_refresh)

    async def get_cached(self, user_id: str, address: str, network: Network | str | None = None) -> CacheEntry | None:
        """Get the last known snapshot without calling the explorer."""
        return await self.cache.get_fallback(user_id, address, self._network(network))

    async def update_cache(
        self,
        user_id: str,
        address: str,
        snapshot: BalanceSnapshot,
        *,
        source: str = "frontend",
    ) -> bool:
        """Record balances pushed by a client."""
        return await self.cache.update_sync_cache(user_id, address, snapshot, source=source)

    async def get_history(
        self,
        user_id: str,
        address: str,
        network: Network | str | None = None,
        limit: int = 50,
    ) -> list[HistoryEntry]:
        return await self.cache.get_history(user_id, address, self._network(network), limit)

    async def get_status(self, user_id: str, address: str, network: Network | str | None = None) -> SyncStatus:
        return await self.cache.get_status(user_id, address, self._network(network))

    async def clear_cache(self, user_id: str, address: str, network: Network | str | None = None) -> bool:
        return await self.cache.clear(user_id, address, self._network(network))

    async def clear_user_data(self, user_id: str) -> int:
        return await self.cache.clear_user_data(user_id)

    async def get_cache_stats(self) -> CacheStats:
        return await self.cache.get_cache_stats()

    async def clear_all_cache(self) -> int:
        return await self.cache.clear_all_cache()

    async def health_check(self) -> dict[str, Any]:
        """Report store and explorer health.

        Returns:
            ``status`` is "ok" when both answer, "degraded" otherwise.
        """
        store_ok = await self._store.ping() if self._store is not None else False
        explorer_ok = await self._explorer.health_check() if self._explorer is not None else False
        return {
            "status": "ok" if store_ok and explorer_ok else "degraded",
            "state": self._state.value,
            "store": store_ok,
            "explorer": explorer_ok,
            "lookups": self._orchestrator.stats.lookups if self._orchestrator else 0,
        }
