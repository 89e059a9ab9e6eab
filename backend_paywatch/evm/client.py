"""
EVM chain client: JSON-RPC over HTTP, transfer subscriptions over WebSocket.

Responsibilities:
- Receipt / transaction / block number / fee data lookups with bounded timeouts.
- Retry with exponential backoff on transient failures, then fail over to the
  backup endpoint when one is configured.
- Classify failures: NetworkError (transient, retryable) vs
  MalformedResponseError (the node answered with something unusable).
- Hand out transfer streams (WebSocket push or HTTP polling) behind one
  async-iterator interface.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable

import httpx

from backend_paywatch.config.env import mask_url
from backend_paywatch.config.networks import NetworkConfig
from backend_paywatch.core.exceptions import MalformedResponseError, NetworkError
from backend_paywatch.evm.models import (
    DecodedTransfer,
    FeeData,
    LogEntry,
    Receipt,
    Transaction,
    hex_to_int,
)
from backend_paywatch.evm.parser import (
    TRANSFER_TOPIC,
    address_to_topic,
    decode_transfer_log,
    decode_transfer_logs,
    normalize_address,
)
from backend_paywatch.evm.streams import PollingTransferStream, WebSocketTransferStream
from backend_paywatch.paywatch_logging import get_logger, short

logger = get_logger(__name__)

# JSON-RPC error codes that indicate an overloaded or flaky node, not a bad request
_TRANSIENT_RPC_CODES = frozenset({-32000, -32005, -32603, 429})
# decimals() selector
_DECIMALS_SELECTOR = "0x313ce567"
_ONE_GWEI = 10**9
MAX_LOG_BLOCK_RANGE = 2000


class ChainClient:
    """
    Thin async client over one network's RPC endpoints.

    One httpx.AsyncClient is created lazily and reused; call aclose() (or use
    ``async with``) when done. Stateless apart from that connection pool, so
    concurrent calls from independent tasks need no locking.
    """

    def __init__(
        self,
        config: NetworkConfig,
        *,
        max_retries: int = 3,
        min_retry_delay_sec: float = 0.5,
        max_retry_delay_sec: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
        ws_connect: Callable[..., Any] | None = None,
    ) -> None:
        """
        Args:
            config: Network snapshot (endpoints, chain id, request timeout).
            max_retries: Attempts per endpoint before moving to the backup / giving up.
            min_retry_delay_sec: Initial delay for exponential backoff between attempts.
            max_retry_delay_sec: Cap for backoff delay.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
            ws_connect: Optional replacement for websockets.connect.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._config = config
        self._max_retries = max_retries
        self._min_retry_delay = min_retry_delay_sec
        self._max_retry_delay = max_retry_delay_sec
        self._transport = transport
        self._ws_connect = ws_connect
        self._http: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    @property
    def config(self) -> NetworkConfig:
        return self._config

    @property
    def network(self) -> str:
        return self._config.network

    async def __aenter__(self) -> "ChainClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout),
                transport=self._transport,
            )
        return self._http

    def _endpoints(self) -> list[str]:
        endpoints = [self._config.http_endpoint]
        backup = self._config.backup_http_endpoint
        if backup and backup != self._config.http_endpoint:
            endpoints.append(backup)
        return endpoints

    async def rpc(self, method: str, params: list[Any]) -> Any:
        """
        Perform one JSON-RPC call with retry and endpoint failover.

        Returns the raw "result" (None is a valid result, e.g. unknown tx).
        Raises NetworkError once every endpoint exhausted its retry budget;
        MalformedResponseError propagates immediately.
        """
        last_error: NetworkError | None = None
        for endpoint in self._endpoints():
            delay = self._min_retry_delay
            for attempt in range(self._max_retries):
                try:
                    return await self._post(endpoint, method, params)
                except NetworkError as e:
                    last_error = e
                    logger.warning(
                        "rpc_retry",
                        method=method,
                        endpoint=mask_url(endpoint),
                        attempt=attempt + 1,
                        max_retries=self._max_retries,
                        error=str(e),
                    )
                    if attempt + 1 < self._max_retries:
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, self._max_retry_delay)
            logger.error(
                "rpc_endpoint_give_up",
                method=method,
                endpoint=mask_url(endpoint),
                error=str(last_error),
            )
        if last_error is None:
            raise NetworkError(f"no RPC endpoint configured for {method}")
        raise last_error

    async def _post(self, endpoint: str, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client().post(endpoint, json=body)
        except httpx.TimeoutException as e:
            raise NetworkError(f"RPC timeout calling {method}", endpoint=endpoint) from e
        except httpx.TransportError as e:
            raise NetworkError(f"RPC transport error calling {method}: {e}", endpoint=endpoint) from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise NetworkError(f"RPC HTTP {resp.status_code} calling {method}", endpoint=endpoint)
        if resp.status_code >= 400:
            raise MalformedResponseError(f"RPC HTTP {resp.status_code} calling {method}")
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"RPC returned non-JSON for {method}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"RPC returned non-object for {method}")
        err = data.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message", err) if isinstance(err, dict) else err
            if code in _TRANSIENT_RPC_CODES:
                raise NetworkError(f"RPC error {code} calling {method}: {message}", endpoint=endpoint)
            raise MalformedResponseError(f"RPC error {code} calling {method}: {message}")
        return data.get("result")

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        """Mined receipt, or None while the transaction is unknown / not yet mined."""
        raw = await self.rpc("eth_getTransactionReceipt", [tx_hash])
        if raw is None:
            return None
        return Receipt.from_rpc(raw)

    async def get_transaction(self, tx_hash: str) -> Transaction | None:
        raw = await self.rpc("eth_getTransactionByHash", [tx_hash])
        if raw is None:
            return None
        return Transaction.from_rpc(raw)

    def decode_transfer_logs(self, receipt: Receipt, token_address: str) -> list[DecodedTransfer]:
        return decode_transfer_logs(receipt, token_address)

    async def _quantity(self, method: str, params: list[Any]) -> int:
        raw = await self.rpc(method, params)
        try:
            return hex_to_int(raw)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"{method} returned {raw!r}") from e

    async def latest_block_number(self) -> int:
        return await self._quantity("eth_blockNumber", [])

    async def chain_id(self) -> int:
        return await self._quantity("eth_chainId", [])

    async def get_fee_data(self) -> FeeData:
        """
        gasPrice from eth_gasPrice; on EIP-1559 chains maxFeePerGas is
        2 * baseFee + 1 gwei priority, derived from the latest block.
        """
        gas_price = await self._quantity("eth_gasPrice", [])
        block = await self.rpc("eth_getBlockByNumber", ["latest", False])
        base_fee = block.get("baseFeePerGas") if isinstance(block, dict) else None
        if base_fee is None:
            return FeeData(gas_price=gas_price, max_fee_per_gas=None, max_priority_fee_per_gas=None)
        try:
            base = hex_to_int(base_fee)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"invalid baseFeePerGas {base_fee!r}") from e
        return FeeData(
            gas_price=gas_price,
            max_fee_per_gas=base * 2 + _ONE_GWEI,
            max_priority_fee_per_gas=_ONE_GWEI,
        )

    async def get_token_decimals(self, token_address: str) -> int:
        """Read decimals() from an ERC-20 contract."""
        raw = await self.rpc(
            "eth_call",
            [{"to": normalize_address(token_address), "data": _DECIMALS_SELECTOR}, "latest"],
        )
        try:
            value = hex_to_int(raw)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"decimals() returned {raw!r}") from e
        if not 0 <= value <= 77:
            raise MalformedResponseError(f"decimals() out of range: {value}")
        return value

    async def get_transfer_logs(
        self,
        token_address: str,
        recipient: str,
        from_block: int,
        to_block: int,
    ) -> list[DecodedTransfer]:
        """
        Transfers of token_address to recipient mined in [from_block, to_block],
        oldest first. Large ranges are split into MAX_LOG_BLOCK_RANGE chunks.
        """
        if to_block < from_block:
            return []
        token = normalize_address(token_address)
        topics = [TRANSFER_TOPIC, None, address_to_topic(recipient)]
        out: list[DecodedTransfer] = []
        start = from_block
        while start <= to_block:
            end = min(start + MAX_LOG_BLOCK_RANGE - 1, to_block)
            raw = await self.rpc(
                "eth_getLogs",
                [{"address": token, "topics": topics, "fromBlock": hex(start), "toBlock": hex(end)}],
            )
            if not isinstance(raw, list):
                raise MalformedResponseError("eth_getLogs returned non-list")
            for item in raw:
                try:
                    entry = LogEntry.from_rpc(item)
                except MalformedResponseError as e:
                    logger.debug("rpc_log_skipped", error=str(e))
                    continue
                if entry.removed or entry.address != token:
                    continue
                transfer = decode_transfer_log(entry)
                if transfer is not None and transfer.to_address == recipient.lower():
                    out.append(transfer)
            start = end + 1
        out.sort(key=lambda t: (t.block_number or 0, t.log_index or 0))
        return out

    def subscribe_transfers(self, token_address: str, recipient: str) -> WebSocketTransferStream:
        """
        Live WebSocket stream of transfers of token_address to recipient.

        Use as ``async with client.subscribe_transfers(t, r) as stream: async for x in stream``;
        entering connects and installs the subscription, exiting releases the socket.
        """
        if not self._config.ws_endpoint:
            raise NetworkError("no websocket endpoint configured")
        logger.debug(
            "rpc_ws_subscribe",
            token=short(token_address),
            recipient=short(recipient),
            url=mask_url(self._config.ws_endpoint),
        )
        return WebSocketTransferStream(
            self._config.ws_endpoint,
            token_address,
            recipient,
            connect=self._ws_connect,
            subscribe_timeout=self._config.request_timeout,
        )

    def poll_transfers(
        self,
        token_address: str,
        recipient: str,
        *,
        interval_sec: float,
        start_block: int | None = None,
    ) -> PollingTransferStream:
        """HTTP polling stream with the same interface as subscribe_transfers()."""
        return PollingTransferStream(
            self,
            token_address,
            recipient,
            interval_sec=interval_sec,
            start_block=start_block,
        )
