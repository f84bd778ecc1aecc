"""AzoreScan explorer client with rate limiting and retry logic.

Balances come from two Etherscan-style account endpoints:
- ``action=balance`` returns the native balance in wei
- ``action=tokenlist`` returns every ERC-20 the address holds, balances inline

The two parts degrade independently. An API-level failure of one part
(non-"1" status, unusable payload) is logged and replaced by a zero native
balance or an empty token list. A transport failure of either call, or a
failure of both, means the explorer is unavailable and the whole lookup fails.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any

import httpx

from balance_sync.errors import BalanceSyncError
from balance_sync.explorer.models import (
    BalanceSnapshot,
    NativeBalance,
    Network,
    TokenBalance,
    normalize_address,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAINNET_URL = "https://azorescan.com/api"
DEFAULT_TESTNET_URL = "https://floripa.azorescan.com/api"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_MAX_REQUESTS_PER_SECOND = 5.0

OK_STATUS = "1"
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
EMPTY_RESULT_MESSAGES = frozenset({"no tokens found", "no token found", "no records found"})
HEALTH_CHECK_ADDRESS = "0x0000000000000000000000000000000000000000"
SOURCE_COMPLETE = "explorer"
SOURCE_PARTIAL = "explorer:partial"


class ExplorerError(BalanceSyncError):
    """Base exception for explorer failures."""


class UpstreamUnavailableError(ExplorerError):
    """Raised when the explorer cannot produce an answer."""


class ExplorerTransportError(UpstreamUnavailableError):
    """Raised on timeouts, connection errors and HTTP error statuses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Network failures and overload statuses are worth retrying."""
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES


class ExplorerApiError(UpstreamUnavailableError):
    """Raised when the explorer answers with a non-OK status."""

    def __init__(self, message: str, *, api_message: str | None = None, result: Any = None) -> None:
        super().__init__(message)
        self.api_message = api_message
        self.result = result


class MalformedUpstreamDataError(ExplorerError):
    """Raised when an explorer payload does not have the expected shape."""


@dataclass
class RateLimiter:
    """Token bucket limiting explorer requests per second."""

    capacity: float
    refill_per_second: float
    available: float
    updated_at: float

    @classmethod
    def per_second(cls, rate: float) -> "RateLimiter":
        capacity = max(rate, 1.0)
        return cls(capacity=capacity, refill_per_second=rate, available=capacity, updated_at=time.monotonic())

    async def acquire(self) -> None:
        """Take one token, sleeping until one is available."""
        while True:
            now = time.monotonic()
            self.available = min(
                self.capacity,
                self.available + (now - self.updated_at) * self.refill_per_second,
            )
            self.updated_at = now
            if self.available >= 1.0:
                self.available -= 1.0
                return
            await asyncio.sleep((1.0 - self.available) / self.refill_per_second)


class ExplorerClient:
    """AzoreScan HTTP client producing balance snapshots.

    Example:
        ```python
        async with ExplorerClient() as explorer:
            snapshot = await explorer.get_complete_balances(
                "0x5528...",
                Network.TESTNET,
            )
            print(snapshot.balances_table)  # {"AZE-t": "85.12", "cBRL": "101390"}
        ```
    """

    def __init__(
        self,
        *,
        mainnet_url: str = DEFAULT_MAINNET_URL,
        testnet_url: str = DEFAULT_TESTNET_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
    ) -> None:
        """Initialize the explorer client.

        Args:
            mainnet_url: API base URL for mainnet.
            testnet_url: API base URL for testnet.
            http_client: Shared HTTP client. When omitted, one is created
                and closed by ``aclose()``.
            timeout_seconds: Per-request timeout.
            max_retries: Retries on retryable transport failures.
            retry_delay_seconds: Initial backoff delay, doubled per retry.
            max_requests_per_second: Client-side rate limit.
        """
        self._base_urls = {Network.MAINNET: mainnet_url, Network.TESTNET: testnet_url}
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._rate_limiter = RateLimiter.per_second(max_requests_per_second)

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "ExplorerClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def base_url(self, network: Network | str) -> str:
        """API base URL for a network."""
        return self._base_urls[Network.parse(network)]

    async def _send(self, url: str, params: dict[str, str]) -> httpx.Response:
        try:
            response = await self._client.get(url, params=params, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise ExplorerTransportError(f"Request to {url} timed out after {self._timeout:.1f}s") from e
        except httpx.HTTPError as e:
            raise ExplorerTransportError(f"Request to {url} failed: {e}") from e

        if response.status_code >= 400:
            raise ExplorerTransportError(
                f"{url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def _send_with_retry(self, url: str, params: dict[str, str]) -> httpx.Response:
        """Send a request, retrying retryable transport failures with backoff.

        Raises:
            ExplorerTransportError: If every attempt failed.
        """
        attempts = self._max_retries + 1
        delay = self._retry_delay

        for attempt in range(attempts):
            await self._rate_limiter.acquire()
            try:
                return await self._send(url, params)
            except ExplorerTransportError as e:
                if not e.retryable or attempt == attempts - 1:
                    raise
                logger.warning(
                    "Explorer %s request failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                    params.get("action"),
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

        raise ExplorerTransportError(f"No attempts made for {url}")

    async def _request(
        self,
        network: Network,
        params: dict[str, str],
        *,
        allow_empty: bool = False,
    ) -> Any:
        """Call the explorer and return the ``result`` of an OK answer.

        Args:
            network: Network whose explorer to call.
            params: Query parameters.
            allow_empty: Treat a "no tokens found" answer as an empty list.

        Raises:
            ExplorerTransportError: On transport failure.
            ExplorerApiError: On a non-OK status.
            MalformedUpstreamDataError: On a body that is not an API envelope.
        """
        action = params.get("action", "")
        response = await self._send_with_retry(self.base_url(network), params)

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedUpstreamDataError(f"Explorer {action} returned a non-JSON body") from e
        if not isinstance(payload, dict):
            raise MalformedUpstreamDataError(f"Explorer {action} returned {type(payload).__name__}, expected object")

        status = str(payload.get("status", ""))
        result = payload.get("result")
        if status == OK_STATUS:
            return result

        message = str(payload.get("message") or "Unknown error")
        if allow_empty and not result and message.strip().lower() in EMPTY_RESULT_MESSAGES:
            return []

        detail = f" ({result})" if isinstance(result, str) and result else ""
        raise ExplorerApiError(
            f"Explorer {action} failed on {network.value}: {message}{detail}",
            api_message=message,
            result=result,
        )

    async def get_native_balance(self, address: str, network: Network | str = Network.TESTNET) -> NativeBalance:
        """Get the native coin balance of an address.

        Raises:
            InvalidAddressError: If the address is malformed.
            UpstreamUnavailableError: If the explorer cannot answer.
            MalformedUpstreamDataError: If the balance is not an integer.
        """
        network = Network.parse(network)
        address = normalize_address(address)

        result = await self._request(
            network,
            {"module": "account", "action": "balance", "address": address},
        )
        try:
            balance = NativeBalance.from_wei(result)
        except (TypeError, ValueError) as e:
            raise MalformedUpstreamDataError(f"Unexpected balance result {result!r}") from e

        logger.debug("%s balance of %s: %s", network.native_symbol, address, balance.ether)
        return balance

    async def get_token_list(self, address: str, network: Network | str = Network.TESTNET) -> list[TokenBalance]:
        """Get every ERC-20 balance of an address in one call.

        Entries that cannot be parsed are skipped with a warning.

        Raises:
            InvalidAddressError: If the address is malformed.
            UpstreamUnavailableError: If the explorer cannot answer.
            MalformedUpstreamDataError: If the result is not a list, or none
                of its entries could be parsed.
        """
        network = Network.parse(network)
        address = normalize_address(address)

        result = await self._request(
            network,
            {"module": "account", "action": "tokenlist", "address": address},
            allow_empty=True,
        )
        if not isinstance(result, list):
            raise MalformedUpstreamDataError(f"Unexpected tokenlist result type {type(result).__name__}")

        tokens: list[TokenBalance] = []
        for entry in result:
            if not isinstance(entry, dict):
                logger.warning("Skipping non-object tokenlist entry for %s: %r", address, entry)
                continue
            try:
                tokens.append(TokenBalance.from_explorer(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed token %s for %s: %s",
                    entry.get("contractAddress"),
                    address,
                    e,
                )

        if result and not tokens:
            raise MalformedUpstreamDataError(f"None of the {len(result)} tokenlist entries for {address} were usable")

        logger.debug("Found %d tokens for %s on %s", len(tokens), address, network.value)
        return tokens

    async def get_complete_balances(self, address: str, network: Network | str = Network.TESTNET) -> BalanceSnapshot:
        """Fetch native and token balances and assemble a snapshot.

        Raises:
            InvalidAddressError: If the address is malformed.
            UpstreamUnavailableError: On a transport failure of either call,
                or when both calls failed.
        """
        network = Network.parse(network)
        address = normalize_address(address)

        native_outcome, tokens_outcome = await asyncio.gather(
            self.get_native_balance(address, network),
            self.get_token_list(address, network),
            return_exceptions=True,
        )

        for outcome in (native_outcome, tokens_outcome):
            if isinstance(outcome, ExplorerTransportError):
                raise outcome
            if isinstance(outcome, BaseException) and not isinstance(outcome, ExplorerError):
                raise outcome

        if isinstance(native_outcome, ExplorerError) and isinstance(tokens_outcome, ExplorerError):
            raise UpstreamUnavailableError(
                f"Both balance calls failed for {address} on {network.value}: "
                f"native: {native_outcome}; tokens: {tokens_outcome}"
            ) from native_outcome

        degraded = False
        if isinstance(native_outcome, BaseException):
            logger.warning(
                "Native %s balance unavailable for %s, reporting zero: %s",
                network.native_symbol,
                address,
                native_outcome,
            )
            native = NativeBalance.zero()
            degraded = True
        else:
            native = native_outcome

        if isinstance(tokens_outcome, BaseException):
            logger.warning("Token list unavailable for %s, reporting no tokens: %s", address, tokens_outcome)
            tokens: list[TokenBalance] = []
            degraded = True
        else:
            tokens = tokens_outcome

        source = SOURCE_PARTIAL if degraded else SOURCE_COMPLETE
        snapshot = BalanceSnapshot.build(address, network, native, tokens, source=source)
        logger.info(
            "Fetched %d balances for %s on %s (source=%s)",
            snapshot.total_token_count,
            address,
            network.value,
            source,
        )
        return snapshot

    async def health_check(self) -> bool:
        """Check that both explorers answer an OK balance query.

        Returns:
            True if healthy, False otherwise.
        """
        for network in Network:
            try:
                await self._request(
                    network,
                    {"module": "account", "action": "balance", "address": HEALTH_CHECK_ADDRESS},
                )
            except ExplorerError as e:
                logger.warning("Explorer health check failed for %s: %s", network.value, e)
                return False
        return True

    async def aclose(self) -> None:
        """Close the HTTP client if this explorer created it."""
        if self._owns_client:
            await self._client.aclose()
