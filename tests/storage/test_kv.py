"""Tests for the Redis-backed key/value store."""

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from balance_sync.storage.kv import (
    RedisKeyValueStore,
    StoreError,
    StoreResult,
    StoreUnavailableError,
)


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client."""
    redis = AsyncMock()
    redis.ping = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.scan = AsyncMock(return_value=(0, []))
    redis.lpush = AsyncMock(return_value=1)
    redis.ltrim = AsyncMock(return_value=True)
    redis.lrange = AsyncMock(return_value=[])
    return redis


@pytest.fixture
def down_redis(mock_redis: AsyncMock) -> AsyncMock:
    """Mock Redis client whose server refuses connections."""
    mock_redis.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    return mock_redis


class TestStoreResult:
    def test_success(self) -> None:
        result = StoreResult.success("value")
        assert result.ok
        assert result.value == "value"

    def test_failure(self) -> None:
        result: StoreResult[str] = StoreResult.failure(StoreUnavailableError("down"))
        assert not result.ok
        assert result.value is None
        assert isinstance(result.error, StoreError)


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_success(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)

        assert await store.connect() is True
        assert store.is_connected
        mock_redis.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure_does_not_raise(self, down_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(down_redis)

        assert await store.connect() is False
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_connect_builds_client_from_url(self, mock_redis: AsyncMock) -> None:
        with patch("balance_sync.storage.kv.Redis.from_url", return_value=mock_redis) as from_url:
            store = RedisKeyValueStore(url="redis://cache:6379", password="pw", db=2)
            assert await store.connect() is True

        from_url.assert_called_once()
        args, kwargs = from_url.call_args
        assert args == ("redis://cache:6379",)
        assert kwargs["password"] == "pw"
        assert kwargs["db"] == 2
        assert kwargs["decode_responses"] is True


class TestDisconnectedStore:
    @pytest.mark.asyncio
    async def test_operations_degrade_without_raising(self, down_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(down_redis)
        await store.connect()

        assert await store.get("k") is None
        assert await store.set_with_expiry("k", "v", 60) is False
        assert await store.delete("k") is False
        assert await store.list_keys_by_pattern("*") == []
        assert await store.push_history("h", "v") is False
        assert await store.trim_history("h", 100) is False
        assert await store.range_history("h", 0, 10) == []

        down_redis.get.assert_not_called()
        down_redis.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_never_connected_store_degrades(self) -> None:
        store = RedisKeyValueStore()

        assert await store.get("k") is None
        assert await store.set_with_expiry("k", "v", None) is False
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_reconnects_after_recovery_interval(self, mock_redis: AsyncMock) -> None:
        mock_redis.ping = AsyncMock(side_effect=[RedisConnectionError("down"), True])
        mock_redis.get = AsyncMock(return_value="cached")
        store = RedisKeyValueStore(mock_redis, recovery_interval_seconds=0)

        assert await store.connect() is False
        assert await store.get("k") == "cached"
        assert store.is_connected

    @pytest.mark.asyncio
    async def test_connection_error_marks_disconnected(self, mock_redis: AsyncMock) -> None:
        mock_redis.get = AsyncMock(side_effect=RedisConnectionError("reset by peer"))
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.get("k") is None
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_command_error_keeps_connection(self, mock_redis: AsyncMock) -> None:
        mock_redis.lpush = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.push_history("k", "v") is False
        assert store.is_connected

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, mock_redis: AsyncMock) -> None:
        mock_redis.get = AsyncMock(side_effect=RuntimeError("event loop is closed"))
        mock_redis.set = AsyncMock(side_effect=UnicodeEncodeError("utf-8", "x", 0, 1, "bad"))
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.get("k") is None
        assert await store.set_with_expiry("k", "v", 60) is False
        assert store.is_connected


class TestCommands:
    @pytest.mark.asyncio
    async def test_get_decodes_bytes(self, mock_redis: AsyncMock) -> None:
        mock_redis.get = AsyncMock(return_value=b'{"a": 1}')
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.get("k") == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_set_with_ttl(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.set_with_expiry("k", "v", 300, entity="balance snapshot") is True
        mock_redis.set.assert_awaited_once_with("k", "v", ex=300)

    @pytest.mark.asyncio
    async def test_set_without_ttl(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.set_with_expiry("k", "v", None) is True
        mock_redis.set.assert_awaited_once_with("k", "v")

    @pytest.mark.asyncio
    async def test_set_rejects_non_positive_ttl(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.set_with_expiry("k", "v", 0) is False
        mock_redis.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_many(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.delete("a", "b") is True
        mock_redis.delete.assert_awaited_once_with("a", "b")
        assert await store.delete() is True

    @pytest.mark.asyncio
    async def test_list_keys_follows_scan_cursor(self, mock_redis: AsyncMock) -> None:
        mock_redis.scan = AsyncMock(side_effect=[(17, ["balances:1:a:testnet"]), (0, [b"balances:1:b:mainnet"])])
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        keys = await store.list_keys_by_pattern("balances:*")

        assert keys == ["balances:1:a:testnet", "balances:1:b:mainnet"]
        assert mock_redis.scan.await_count == 2
        assert mock_redis.scan.await_args_list[1].kwargs["cursor"] == 17

    @pytest.mark.asyncio
    async def test_history_commands(self, mock_redis: AsyncMock) -> None:
        mock_redis.lrange = AsyncMock(return_value=["newest", "older"])
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        assert await store.push_history("h", "entry") is True
        assert await store.trim_history("h", 100) is True
        assert await store.range_history("h", 0, 49) == ["newest", "older"]

        mock_redis.lpush.assert_awaited_once_with("h", "entry")
        mock_redis.ltrim.assert_awaited_once_with("h", 0, 99)
        mock_redis.lrange.assert_awaited_once_with("h", 0, 49)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_ping_updates_connection_flag(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)

        assert await store.ping() is True
        assert store.is_connected

        mock_redis.ping = AsyncMock(side_effect=OSError("network unreachable"))
        assert await store.ping() is False
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_close_owned_client(self, mock_redis: AsyncMock) -> None:
        with patch("balance_sync.storage.kv.Redis.from_url", return_value=mock_redis):
            store = RedisKeyValueStore()
            await store.connect()

        await store.close()

        mock_redis.aclose.assert_awaited_once()
        assert not store.is_connected

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self, mock_redis: AsyncMock) -> None:
        store = RedisKeyValueStore(mock_redis)
        await store.connect()

        await store.close()

        mock_redis.aclose.assert_not_called()
