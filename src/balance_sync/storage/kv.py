"""Redis-backed key/value store that degrades instead of failing.

Every command runs through a single guarded executor:
- A store that never connected, or lost its connection, answers every
  operation with "not present" (``None``), "write failed" (``False``) or an
  empty list instead of raising.
- While disconnected, the server is re-probed at most once per recovery
  interval so the cache comes back on its own once Redis does.
- Each write logs which logical entity it stored.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from balance_sync.errors import BalanceSyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_REDIS_URL = "redis://localhost:6379"
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_RECOVERY_INTERVAL_SECONDS = 30.0
SCAN_BATCH_SIZE = 500


class StoreError(BalanceSyncError):
    """Base exception for key/value store failures."""


class StoreUnavailableError(StoreError):
    """Raised when the store is not connected or the connection dropped."""


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of a single store command: a value or the error that replaced it."""

    value: T | None = None
    error: StoreError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None) -> "StoreResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: StoreError) -> "StoreResult[T]":
        return cls(error=error)


class KeyValueStore(Protocol):
    """Operations the balance cache needs from a key/value store.

    Implementations must never raise from these methods: failures are
    reported as ``None`` / ``False`` / ``[]``.
    """

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def set_with_expiry(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None,
        *,
        entity: str = "value",
    ) -> bool: ...

    async def delete(self, *keys: str) -> bool: ...

    async def list_keys_by_pattern(self, pattern: str) -> list[str]: ...

    async def push_history(self, key: str, value: str, *, entity: str = "history entry") -> bool: ...

    async def trim_history(self, key: str, max_len: int) -> bool: ...

    async def range_history(self, key: str, start: int, stop: int) -> list[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class RedisKeyValueStore:
    """Key/value store over ``redis.asyncio`` with graceful degradation.

    Example:
        ```python
        store = RedisKeyValueStore(url="redis://localhost:6379", db=0)
        await store.connect()  # False (not an exception) if Redis is down

        await store.set_with_expiry("balances:42:0xabc:testnet", "{...}", 300)
        raw = await store.get("balances:42:0xabc:testnet")

        await store.close()
        ```
    """

    def __init__(
        self,
        redis: Redis | None = None,
        *,
        url: str = DEFAULT_REDIS_URL,
        password: str | None = None,
        db: int = 0,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        recovery_interval_seconds: float = DEFAULT_RECOVERY_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the store.

        Args:
            redis: Existing Redis client to use. When omitted, one is created
                from ``url`` on ``connect()`` and owned by this store.
            url: Redis connection string.
            password: Redis password (takes precedence over the URL).
            db: Logical database index.
            connect_timeout_seconds: Socket connect timeout.
            recovery_interval_seconds: Minimum delay between reconnect probes
                while disconnected.
        """
        self._redis = redis
        self._owns_client = redis is None
        self._url = url
        self._password = password
        self._db = db
        self._connect_timeout = connect_timeout_seconds
        self._recovery_interval = recovery_interval_seconds

        self._is_connected = False
        self._last_probe = 0.0

    @property
    def is_connected(self) -> bool:
        """Whether the last interaction with Redis succeeded."""
        return self._is_connected

    async def connect(self) -> bool:
        """Connect to Redis.

        Returns:
            True if the server answered a PING, False otherwise. Never raises.
        """
        try:
            if self._redis is None:
                self._redis = Redis.from_url(
                    self._url,
                    password=self._password,
                    db=self._db,
                    decode_responses=True,
                    socket_connect_timeout=self._connect_timeout,
                )
            await self._redis.ping()
        except (RedisError, OSError, ValueError) as e:
            self._mark_disconnected()
            logger.warning("Redis unavailable, balance caching degraded: %s", e)
            return False

        self._is_connected = True
        logger.info("Connected to Redis (db=%d)", self._db)
        return True

    def _mark_disconnected(self) -> None:
        self._is_connected = False
        self._last_probe = time.monotonic()

    async def _ensure_connected(self) -> bool:
        """Check the connection flag, re-probing the server when due."""
        if self._is_connected:
            return True
        if self._redis is None:
            return False

        now = time.monotonic()
        if now - self._last_probe < self._recovery_interval:
            return False
        self._last_probe = now

        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            logger.debug("Redis still unavailable: %s", e)
            return False

        self._is_connected = True
        logger.info("Redis connection recovered")
        return True

    async def _execute(
        self,
        op_name: str,
        command: Callable[[Redis], Awaitable[T]],
    ) -> StoreResult[T]:
        """Run one Redis command, converting every failure into a StoreResult."""
        if not await self._ensure_connected() or self._redis is None:
            return StoreResult.failure(StoreUnavailableError(f"{op_name}: store not connected"))

        try:
            value = await command(self._redis)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            self._mark_disconnected()
            logger.warning("Redis %s failed, marking store disconnected: %s", op_name, e)
            return StoreResult.failure(StoreUnavailableError(f"{op_name}: {e}"))
        except RedisError as e:
            logger.warning("Redis %s failed: %s", op_name, e)
            return StoreResult.failure(StoreError(f"{op_name}: {e}"))
        except Exception as e:
            logger.warning("Unexpected error during Redis %s: %s", op_name, e)
            return StoreResult.failure(StoreError(f"{op_name}: {e}"))

        return StoreResult.success(value)

    async def get(self, key: str) -> str | None:
        """Get a value, or None on miss or any failure."""
        result = await self._execute("GET", lambda r: r.get(key))
        if not result.ok or result.value is None:
            return None
        return _decode(result.value)

    async def set_with_expiry(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None,
        *,
        entity: str = "value",
    ) -> bool:
        """Store a value, with a TTL unless ``ttl_seconds`` is None.

        Args:
            key: Redis key.
            value: Serialized value.
            ttl_seconds: Expiry in seconds, or None to keep until deleted.
            entity: Logical entity type, for provenance logging.

        Returns:
            True if the write succeeded.
        """
        if ttl_seconds is not None and ttl_seconds <= 0:
            logger.warning("Refusing to store %s at %s with non-positive TTL %s", entity, key, ttl_seconds)
            return False

        if ttl_seconds is None:
            result = await self._execute("SET", lambda r: r.set(key, value))
        else:
            result = await self._execute("SETEX", lambda r: r.set(key, value, ex=ttl_seconds))

        if result.ok:
            logger.debug("Stored %s at %s (ttl=%s)", entity, key, ttl_seconds)
        return result.ok

    async def delete(self, *keys: str) -> bool:
        """Delete keys. Missing keys are not an error."""
        if not keys:
            return True
        result = await self._execute("DEL", lambda r: r.delete(*keys))
        if result.ok:
            logger.debug("Deleted %d key(s): %s", len(keys), ", ".join(keys))
        return result.ok

    async def list_keys_by_pattern(self, pattern: str) -> list[str]:
        """List keys matching a glob pattern using incremental SCAN."""

        async def scan_all(r: Redis) -> list[str]:
            keys: list[str] = []
            cursor: int = 0
            while True:
                cursor, batch = await r.scan(cursor=cursor, match=pattern, count=SCAN_BATCH_SIZE)
                keys.extend(_decode(k) for k in batch)
                if int(cursor) == 0:
                    return keys

        result = await self._execute("SCAN", scan_all)
        return result.value if result.ok and result.value is not None else []

    async def push_history(self, key: str, value: str, *, entity: str = "history entry") -> bool:
        """Prepend a value to a list."""
        result = await self._execute("LPUSH", lambda r: r.lpush(key, value))
        if result.ok:
            logger.debug("Pushed %s onto %s", entity, key)
        return result.ok

    async def trim_history(self, key: str, max_len: int) -> bool:
        """Keep only the first ``max_len`` entries of a list."""
        if max_len < 1:
            return await self.delete(key)
        result = await self._execute("LTRIM", lambda r: r.ltrim(key, 0, max_len - 1))
        return result.ok

    async def range_history(self, key: str, start: int, stop: int) -> list[str]:
        """Read list entries ``start``..``stop`` (inclusive)."""
        result = await self._execute("LRANGE", lambda r: r.lrange(key, start, stop))
        if not result.ok or result.value is None:
            return []
        return [_decode(v) for v in result.value]

    async def ping(self) -> bool:
        """Check if Redis answers, updating the connection flag.

        Returns:
            True if healthy, False otherwise.
        """
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            self._mark_disconnected()
            logger.warning("Redis ping failed: %s", e)
            return False
        self._is_connected = True
        return True

    async def close(self) -> None:
        """Close the client if this store created it."""
        if self._redis is not None and self._owns_client:
            try:
                await self._redis.aclose()
            except (RedisError, OSError) as e:
                logger.warning("Failed to close Redis connection cleanly: %s", e)
            self._redis = None
        self._is_connected = False
