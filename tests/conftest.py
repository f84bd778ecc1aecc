"""Pytest configuration and fixtures."""

from collections.abc import Callable
from datetime import UTC, datetime
from fnmatch import fnmatchcase

import pytest

from balance_sync.explorer.models import BalanceSnapshot, NativeBalance, Network, TokenBalance

SAMPLE_ADDRESS = "0x5528c4d0a1b2c3d4e5f60718293a4b5c6d7e8f90"
CBRL_CONTRACT = "0x1c5f9bd7e8a4b3c2d1e0f9a8b7c6d5e4f3a2b1c0"


class InMemoryKeyValueStore:
    """KeyValueStore double with manual expiry and switchable failures."""

    def __init__(self) -> None:
        self.is_connected = True
        self.fail_writes = False
        self.now = 0.0
        self.values: dict[str, tuple[str, float | None]] = {}
        self.lists: dict[str, list[str]] = {}
        self.writes: list[tuple[str, str]] = []

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _live_value(self, key: str) -> str | None:
        item = self.values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.now >= expires_at:
            del self.values[key]
            return None
        return value

    def keys(self) -> list[str]:
        live = [k for k in list(self.values) if self._live_value(k) is not None]
        return live + list(self.lists)

    async def connect(self) -> bool:
        return self.is_connected

    async def get(self, key: str) -> str | None:
        if not self.is_connected:
            return None
        return self._live_value(key)

    async def set_with_expiry(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None,
        *,
        entity: str = "value",
    ) -> bool:
        if not self.is_connected or self.fail_writes:
            return False
        expires_at = self.now + ttl_seconds if ttl_seconds is not None else None
        self.values[key] = (value, expires_at)
        self.writes.append((entity, key))
        return True

    async def delete(self, *keys: str) -> bool:
        if not self.is_connected:
            return False
        for key in keys:
            self.values.pop(key, None)
            self.lists.pop(key, None)
        return True

    async def list_keys_by_pattern(self, pattern: str) -> list[str]:
        if not self.is_connected:
            return []
        return [k for k in self.keys() if fnmatchcase(k, pattern)]

    async def push_history(self, key: str, value: str, *, entity: str = "history entry") -> bool:
        if not self.is_connected or self.fail_writes:
            return False
        self.lists.setdefault(key, []).insert(0, value)
        self.writes.append((entity, key))
        return True

    async def trim_history(self, key: str, max_len: int) -> bool:
        if not self.is_connected or self.fail_writes:
            return False
        if key in self.lists:
            self.lists[key] = self.lists[key][:max_len]
        return True

    async def range_history(self, key: str, start: int, stop: int) -> list[str]:
        if not self.is_connected:
            return []
        return self.lists.get(key, [])[start : stop + 1]

    async def ping(self) -> bool:
        return self.is_connected

    async def close(self) -> None:
        self.is_connected = False


@pytest.fixture
def memory_store() -> InMemoryKeyValueStore:
    """In-memory key/value store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def sample_address() -> str:
    """Sample wallet address for testing."""
    return SAMPLE_ADDRESS


@pytest.fixture
def cbrl_token() -> TokenBalance:
    """cBRL holding of 101390 tokens."""
    return TokenBalance(
        contract_address=CBRL_CONTRACT,
        name="Crypto BRL",
        symbol="cBRL",
        decimals=18,
        wei="101390000000000000000000",
        ether="101390",
    )


@pytest.fixture
def make_snapshot(cbrl_token: TokenBalance) -> Callable[..., BalanceSnapshot]:
    """Factory for testnet snapshots of the sample address."""

    def factory(
        native_wei: str = "85120000000000000000",
        tokens: tuple[TokenBalance, ...] | None = None,
        network: Network = Network.TESTNET,
        address: str = SAMPLE_ADDRESS,
    ) -> BalanceSnapshot:
        return BalanceSnapshot.build(
            address,
            network,
            NativeBalance.from_wei(native_wei),
            (cbrl_token,) if tokens is None else tokens,
            timestamp=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        )

    return factory
