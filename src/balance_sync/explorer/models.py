"""Data models for explorer balance lookups."""

import contextlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, localcontext
from enum import Enum
from typing import Any

from web3 import Web3

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
DEFAULT_TOKEN_DECIMALS = 18
MAX_TOKEN_DECIMALS = 255

# uint256 has 78 decimal digits; leave plenty of headroom.
_CONVERSION_PRECISION = 200


class InvalidAddressError(ValueError):
    """Raised when a value is not a well-formed chain address."""


class Network(str, Enum):
    """Chains served by the explorer."""

    MAINNET = "mainnet"
    TESTNET = "testnet"

    @property
    def native_symbol(self) -> str:
        """Symbol of the native coin on this network."""
        return "AZE" if self is Network.MAINNET else "AZE-t"

    @classmethod
    def parse(cls, value: "str | Network") -> "Network":
        """Parse a network name, case-insensitively."""
        if isinstance(value, Network):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise ValueError(f"Unknown network: {value!r}") from e


def normalize_address(address: str) -> str:
    """Validate an address and return its lower-cased form.

    Raises:
        InvalidAddressError: If the value is not a 20-byte hex address.
    """
    candidate = str(address).strip().lower()
    if not Web3.is_address(candidate):
        raise InvalidAddressError(f"Not a valid address: {address!r}")
    return candidate


def wei_to_ether(wei: str | int, decimals: int = NATIVE_DECIMALS) -> str:
    """Scale an integer base-unit amount down by ``decimals`` places.

    The result is a plain decimal string with no exponent and no trailing
    zeros, e.g. ``"85120000000000000000"`` -> ``"85.12"`` and ``"0"`` -> ``"0"``.
    Fixed-point arithmetic keeps every digit of uint256-sized amounts.

    Raises:
        ValueError: If ``wei`` is not a non-negative integer or ``decimals``
            is negative.
    """
    try:
        amount = int(str(wei).strip())
    except ValueError as e:
        raise ValueError(f"Not an integer amount: {wei!r}") from e
    if amount < 0:
        raise ValueError(f"Negative amount: {wei!r}")
    if decimals < 0:
        raise ValueError(f"Negative decimals: {decimals}")

    with localcontext() as ctx:
        ctx.prec = _CONVERSION_PRECISION
        value = Decimal(amount).scaleb(-decimals).normalize()
    return format(value, "f")


def parse_token_decimals(raw: Any) -> int:
    """Parse a token's reported decimals, defaulting to 18 when unusable.

    An explicit ``0`` is a valid answer and is kept.
    """
    if raw is None or raw == "":
        return DEFAULT_TOKEN_DECIMALS
    try:
        decimals = int(str(raw).strip())
    except ValueError:
        return DEFAULT_TOKEN_DECIMALS
    if decimals < 0 or decimals > MAX_TOKEN_DECIMALS:
        return DEFAULT_TOKEN_DECIMALS
    return decimals


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def require_mapping(value: Any, field: str) -> dict[str, Any]:
    """Return ``value`` if it is a JSON object, else raise ValueError."""
    if not isinstance(value, dict):
        raise ValueError(f"{field} must be an object, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class NativeBalance:
    """Native coin balance in base units and in whole coins."""

    wei: str
    ether: str

    @classmethod
    def zero(cls) -> "NativeBalance":
        return cls(wei="0", ether="0")

    @classmethod
    def from_wei(cls, wei: str | int) -> "NativeBalance":
        """Create a NativeBalance from a base-unit amount."""
        ether = wei_to_ether(wei, NATIVE_DECIMALS)
        return cls(wei=str(int(str(wei).strip())), ether=ether)

    def to_dict(self) -> dict[str, str]:
        return {"balanceWei": self.wei, "balanceEth": self.ether}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NativeBalance":
        data = require_mapping(data, "nativeBalance")
        return cls(
            wei=str(data.get("balanceWei", "0")),
            ether=str(data.get("balanceEth", "0")),
        )


@dataclass(frozen=True)
class TokenBalance:
    """ERC-20 holding of one address."""

    contract_address: str
    name: str
    symbol: str
    decimals: int
    wei: str
    ether: str

    @classmethod
    def from_explorer(cls, data: dict[str, Any]) -> "TokenBalance":
        """Create a TokenBalance from one ``tokenlist`` result entry.

        Raises:
            KeyError: If the contract address is missing.
            ValueError: If the symbol is empty or the balance is not an integer.
        """
        contract_address = str(data["contractAddress"]).strip()
        symbol = str(data.get("symbol") or "").strip()
        if not symbol:
            raise ValueError(f"Token {contract_address} has no symbol")

        decimals = parse_token_decimals(data.get("decimals"))
        raw_balance = data.get("balance") or "0"
        ether = wei_to_ether(raw_balance, decimals)

        return cls(
            contract_address=contract_address,
            name=str(data.get("name") or symbol),
            symbol=symbol,
            decimals=decimals,
            wei=str(int(str(raw_balance).strip())),
            ether=ether,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "contractAddress": self.contract_address,
            "tokenName": self.name,
            "tokenSymbol": self.symbol,
            "tokenDecimals": self.decimals,
            "balanceWei": self.wei,
            "balanceEth": self.ether,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenBalance":
        data = require_mapping(data, "tokenBalances entry")
        return cls(
            contract_address=str(data["contractAddress"]),
            name=str(data.get("tokenName", "")),
            symbol=str(data["tokenSymbol"]),
            decimals=int(data.get("tokenDecimals", DEFAULT_TOKEN_DECIMALS)),
            wei=str(data.get("balanceWei", "0")),
            ether=str(data.get("balanceEth", "0")),
        )


@dataclass(frozen=True)
class BalanceSnapshot:
    """Known holdings of one address on one network at one instant.

    ``balances_table`` maps every symbol to its whole-coin amount and always
    contains the native symbol. Build snapshots with ``build()`` or ``zero()``
    so the table and the token list stay consistent.
    """

    address: str
    network: Network
    native_balance: NativeBalance
    token_balances: tuple[TokenBalance, ...]
    balances_table: dict[str, str]
    total_token_count: int
    timestamp: datetime
    from_cache: bool = False
    source: str = "explorer"
    sync_status: str | None = None
    sync_error: str | None = None
    last_cache_update: datetime | None = None

    @property
    def native_symbol(self) -> str:
        return self.network.native_symbol

    @classmethod
    def build(
        cls,
        address: str,
        network: Network | str,
        native_balance: NativeBalance,
        token_balances: Iterable[TokenBalance],
        *,
        source: str = "explorer",
        timestamp: datetime | None = None,
    ) -> "BalanceSnapshot":
        """Assemble a snapshot and its balances table.

        A contract listed twice is kept once. When two contracts share a
        symbol, or a token reuses the native symbol, the first one wins and
        the rest are dropped with a warning.
        """
        network = Network.parse(network)
        table = {network.native_symbol: native_balance.ether}
        seen_contracts: set[str] = set()
        kept: list[TokenBalance] = []

        for token in token_balances:
            contract = token.contract_address.lower()
            if contract in seen_contracts:
                logger.warning("Dropping duplicate entry for token contract %s", token.contract_address)
                continue
            if token.symbol in table:
                logger.warning(
                    "Dropping token %s at %s: symbol already taken in balances for %s",
                    token.symbol,
                    token.contract_address,
                    address,
                )
                continue
            seen_contracts.add(contract)
            table[token.symbol] = token.ether
            kept.append(token)

        return cls(
            address=address,
            network=network,
            native_balance=native_balance,
            token_balances=tuple(kept),
            balances_table=table,
            total_token_count=len(kept) + 1,
            timestamp=timestamp or datetime.now(UTC),
            source=source,
        )

    @classmethod
    def zero(
        cls,
        address: str,
        network: Network | str,
        *,
        source: str = "none",
        timestamp: datetime | None = None,
    ) -> "BalanceSnapshot":
        """Snapshot holding only a zero native balance."""
        return cls.build(address, network, NativeBalance.zero(), (), source=source, timestamp=timestamp)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted JSON shape."""
        return {
            "address": self.address,
            "network": self.network.value,
            "nativeBalance": self.native_balance.to_dict(),
            "tokenBalances": [t.to_dict() for t in self.token_balances],
            "balancesTable": dict(self.balances_table),
            "totalTokens": self.total_token_count,
            "timestamp": self.timestamp.isoformat(),
            "fromCache": self.from_cache,
            "source": self.source,
            "syncStatus": self.sync_status,
            "syncError": self.sync_error,
            "lastCacheUpdate": self.last_cache_update.isoformat() if self.last_cache_update else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BalanceSnapshot":
        """Create a BalanceSnapshot from its persisted JSON shape.

        Entries written before the native balance was renamed carry it
        under ``azeBalance``; both are accepted.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has the wrong shape.
        """
        data = require_mapping(data, "balances")
        native_data = data.get("nativeBalance") or data.get("azeBalance") or {}
        token_data = data.get("tokenBalances") or []
        if not isinstance(token_data, list):
            raise ValueError(f"tokenBalances must be a list, got {type(token_data).__name__}")
        tokens = [TokenBalance.from_dict(t) for t in token_data]

        snapshot = cls.build(
            str(data["address"]),
            data["network"],
            NativeBalance.from_dict(native_data),
            tokens,
            source=str(data.get("source", "explorer")),
            timestamp=parse_timestamp(str(data["timestamp"])),
        )

        last_cache_update = None
        if data.get("lastCacheUpdate"):
            with contextlib.suppress(ValueError, AttributeError):
                last_cache_update = parse_timestamp(str(data["lastCacheUpdate"]))

        return replace(
            snapshot,
            from_cache=bool(data.get("fromCache", False)),
            sync_status=data.get("syncStatus"),
            sync_error=data.get("syncError"),
            last_cache_update=last_cache_update,
        )
