"""Explorer layer - AzoreScan balance queries and balance models."""

from balance_sync.explorer.client import (
    ExplorerApiError,
    ExplorerClient,
    ExplorerError,
    ExplorerTransportError,
    MalformedUpstreamDataError,
    UpstreamUnavailableError,
)
from balance_sync.explorer.models import (
    BalanceSnapshot,
    InvalidAddressError,
    NativeBalance,
    Network,
    TokenBalance,
    normalize_address,
    wei_to_ether,
)

__all__ = [
    "BalanceSnapshot",
    "ExplorerApiError",
    "ExplorerClient",
    "ExplorerError",
    "ExplorerTransportError",
    "InvalidAddressError",
    "MalformedUpstreamDataError",
    "NativeBalance",
    "Network",
    "TokenBalance",
    "UpstreamUnavailableError",
    "normalize_address",
    "wei_to_ether",
]
