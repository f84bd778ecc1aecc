"""Request-time balance lookups with cache-aside and upstream fallback.

Lookup policy:
1. Unless a refresh is forced, a fast-tier hit is returned without calling
   the explorer.
2. On a miss (or a forced refresh) the explorer is called. Fresh data is
   returned immediately and written through in the background.
3. If the explorer fails, the last known snapshot from the fallback tier is
   returned instead. A non-zero balance seen before is never reported as
   zero because the explorer is down. Only when nothing is known does the
   caller get a zero snapshot, annotated with the error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Generic, Protocol, TypeVar

from balance_sync.cache.balance_cache import BalanceCache
from balance_sync.explorer.models import BalanceSnapshot, Network, normalize_address

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOOKUP_TIMEOUT_SECONDS = 30.0


class LookupStatus(str, Enum):
    """How a lookup result was produced."""

    CACHED = "cached"
    SYNCED = "synced"
    CACHE_FALLBACK = "cache_fallback"
    ERROR = "error"


class BalanceSource(Protocol):
    """Upstream that can produce a complete balance snapshot."""

    async def get_complete_balances(self, address: str, network: Network | str) -> BalanceSnapshot: ...


@dataclass
class LookupStats:
    """Counters for lookups served by the orchestrator."""

    lookups: int = 0
    cache_hits: int = 0
    upstream_fetches: int = 0
    upstream_failures: int = 0
    fallbacks: int = 0
    zero_fallbacks: int = 0
    write_failures: int = 0
    last_error: str | None = None


class SingleFlight(Generic[T]):
    """Share one in-flight call among concurrent callers with the same key."""

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Future[T]] = {}

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def do(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` unless a call for ``key`` is already running, then await it.

        A caller that is cancelled stops waiting without cancelling the shared
        call for the others.
        """
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(func())
            self._inflight[key] = future
            future.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(future)

    def _forget(self, key: Hashable, done: asyncio.Future[T]) -> None:
        if self._inflight.get(key) is done:
            del self._inflight[key]
        # Mark the outcome as retrieved when every waiter has gone.
        if not done.cancelled():
            done.exception()


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class BalanceLookupOrchestrator:
    """Serve balance lookups from cache, explorer, or last known state.

    Example:
        ```python
        orchestrator = BalanceLookupOrchestrator(cache, explorer)
        snapshot = await orchestrator.lookup_balances("42", address, Network.TESTNET)
        if snapshot.sync_status == LookupStatus.CACHE_FALLBACK:
            print("explorer down, showing balances from", snapshot.last_cache_update)
        await orchestrator.aclose()
        ```
    """

    def __init__(
        self,
        cache: BalanceCache,
        source: BalanceSource,
        *,
        lookup_timeout_seconds: float = DEFAULT_LOOKUP_TIMEOUT_SECONDS,
        single_flight: bool = True,
        cache_ttl_seconds: int | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            cache: Balance cache.
            source: Upstream balance source, normally an ExplorerClient.
            lookup_timeout_seconds: Overall bound on one upstream fetch.
            single_flight: Collapse concurrent misses for the same key.
            cache_ttl_seconds: Fast-tier TTL override for write-through.
        """
        self._cache = cache
        self._source = source
        self._timeout = lookup_timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._single_flight: SingleFlight[BalanceSnapshot] | None = SingleFlight() if single_flight else None

        self._stats = LookupStats()
        self._pending_writes: set[asyncio.Task[None]] = set()

    @property
    def stats(self) -> LookupStats:
        """Current lookup statistics."""
        return self._stats

    @property
    def pending_writes(self) -> int:
        """Number of write-through tasks not yet finished."""
        return len(self._pending_writes)

    async def lookup_balances(
        self,
        user_id: str,
        address: str,
        network: Network | str = Network.TESTNET,
        force_refresh: bool = False,
    ) -> BalanceSnapshot:
        """Look up the balances of an address for a user.

        Args:
            user_id: User the lookup is made for.
            address: Address to look up.
            network: Network to look up on.
            force_refresh: Skip the fast tier and go to the explorer.

        Returns:
            A snapshot whose ``sync_status`` says how it was produced.
            Upstream failures never raise.

        Raises:
            InvalidAddressError: If the address is malformed.
            ValueError: If the network is unknown.
        """
        network = Network.parse(network)
        address = normalize_address(address)
        self._stats.lookups += 1

        if force_refresh:
            await self._cache.invalidate(user_id, address, network)
            logger.info("Forced refresh of balances for %s on %s", address, network.value)
        else:
            cached = await self._cache.get(user_id, address, network)
            if cached is not None:
                self._stats.cache_hits += 1
                logger.debug("Serving cached balances for %s on %s", address, network.value)
                return replace(cached, from_cache=True, sync_status=LookupStatus.CACHED.value)

        try:
            snapshot = await self._fetch(user_id, address, network)
        except Exception as e:
            return await self._fall_back(user_id, address, network, e)

        self._schedule_write_through(user_id, address, network, snapshot)
        return replace(snapshot, from_cache=False, sync_status=LookupStatus.SYNCED.value)

    async def _fetch(self, user_id: str, address: str, network: Network) -> BalanceSnapshot:
        async def call() -> BalanceSnapshot:
            self._stats.upstream_fetches += 1
            return await asyncio.wait_for(
                self._source.get_complete_balances(address, network),
                timeout=self._timeout,
            )

        if self._single_flight is None:
            return await call()
        return await self._single_flight.do((user_id, address, network.value), call)

    async def _fall_back(
        self,
        user_id: str,
        address: str,
        network: Network,
        error: Exception,
    ) -> BalanceSnapshot:
        message = _describe(error)
        self._stats.upstream_failures += 1
        self._stats.last_error = message
        logger.warning(
            "Explorer lookup failed for %s on %s, trying last known balances: %s",
            address,
            network.value,
            message,
        )

        entry = await self._cache.get_fallback(user_id, address, network)
        if entry is not None and entry.snapshot.balances_table:
            self._stats.fallbacks += 1
            logger.info(
                "Serving last known balances for %s on %s from %s",
                address,
                network.value,
                entry.last_updated.isoformat(),
            )
            return replace(
                entry.snapshot,
                from_cache=True,
                sync_status=LookupStatus.CACHE_FALLBACK.value,
                sync_error=message,
                last_cache_update=entry.last_updated,
            )

        self._stats.zero_fallbacks += 1
        logger.error(
            "No known balances for %s on %s and explorer unavailable: %s",
            address,
            network.value,
            message,
        )
        return replace(
            BalanceSnapshot.zero(address, network, source="none"),
            sync_status=LookupStatus.ERROR.value,
            sync_error=message,
        )

    def _schedule_write_through(
        self,
        user_id: str,
        address: str,
        network: Network,
        snapshot: BalanceSnapshot,
    ) -> None:
        task = asyncio.create_task(
            self._write_through(user_id, address, network, snapshot),
            name=f"balance-write-through:{address}:{network.value}",
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write_through(
        self,
        user_id: str,
        address: str,
        network: Network,
        snapshot: BalanceSnapshot,
    ) -> None:
        try:
            written = await self._cache.put(user_id, address, network, snapshot, self._cache_ttl)
        except Exception as e:
            logger.exception("Unexpected error caching balances for %s: %s", address, e)
            written = False

        if not written:
            self._stats.write_failures += 1
            logger.warning("Balances for %s on %s were not fully cached", address, network.value)

    async def drain(self) -> None:
        """Wait for all pending write-through tasks."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def aclose(self) -> None:
        """Finish pending writes before shutdown."""
        await self.drain()
