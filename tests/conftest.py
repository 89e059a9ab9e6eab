"""
Pytest fixtures for PayWatch tests. Chain access is faked; no RPC node is needed.

FakeChainClient implements the ChainClient surface used by the verifier,
subscriptions and engine. Its WebSocket streams count connections so tests
can assert that an idempotent start never opens a second one.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from backend_paywatch.config.networks import NetworkConfig
from backend_paywatch.core.exceptions import NetworkError, SubscriptionDisconnected
from backend_paywatch.evm.models import DecodedTransfer, FeeData, LogEntry, Receipt, Transaction
from backend_paywatch.evm.parser import TRANSFER_TOPIC, address_to_topic, decode_transfer_logs
from backend_paywatch.evm.streams import PollingTransferStream

USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
PLATFORM = "0x21e1f57a753fE27F7d8068002F65e8a830E2e6A8"
DONOR = "0x" + "11" * 20
OTHER = "0x" + "22" * 20
TX_HASH = "0x" + "ab" * 32

_NETWORK_ENV = (
    "ETH_RPC_URL",
    "ETH_RPC_BACKUP",
    "ETH_WS_URL",
    "ETH_USDT_CONTRACT",
    "PLATFORM_WALLET_ETH",
    "BSC_RPC_URL",
    "BSC_RPC_BACKUP",
    "BSC_WS_URL",
    "BSC_USDT_CONTRACT",
    "PLATFORM_WALLET_BSC",
)


@pytest.fixture(autouse=True)
def clean_network_env(monkeypatch):
    """Network env vars from the developer's shell must not leak into config tests."""
    for key in _NETWORK_ENV:
        monkeypatch.delenv(key, raising=False)


class ChainData:
    """Builders for chain objects used across tests."""

    usdt = USDT
    platform = PLATFORM
    donor = DONOR
    other = OTHER
    tx_hash = TX_HASH

    @staticmethod
    def tx(n: int) -> str:
        return "0x" + format(n, "064x")

    @staticmethod
    def transfer_log(
        sender: str,
        recipient: str,
        value: int,
        *,
        token: str = USDT,
        block: int | None = 100,
        tx_hash: str | None = TX_HASH,
        log_index: int = 0,
    ) -> LogEntry:
        return LogEntry(
            address=token.lower(),
            topics=(TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(recipient)),
            data="0x" + format(value, "064x"),
            block_number=block,
            tx_hash=tx_hash,
            log_index=log_index,
        )

    @staticmethod
    def rpc_log(
        sender: str,
        recipient: str,
        value: int,
        *,
        token: str = USDT,
        block: int = 100,
        tx_hash: str = TX_HASH,
        log_index: int = 0,
        removed: bool = False,
    ) -> dict[str, Any]:
        """Log in JSON-RPC wire form (hex quantities)."""
        return {
            "address": token,
            "topics": [TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(recipient)],
            "data": "0x" + format(value, "064x"),
            "blockNumber": hex(block),
            "transactionHash": tx_hash,
            "logIndex": hex(log_index),
            "removed": removed,
        }

    @staticmethod
    def receipt(logs: list[LogEntry], *, status: int = 1, block: int = 100, tx_hash: str = TX_HASH) -> Receipt:
        return Receipt(tx_hash=tx_hash.lower(), status=status, block_number=block, logs=tuple(logs))

    @staticmethod
    def transaction(
        to: str | None,
        value: int,
        *,
        sender: str = DONOR,
        chain_id: int | None = 1,
        block: int = 100,
        tx_hash: str = TX_HASH,
    ) -> Transaction:
        return Transaction(
            tx_hash=tx_hash.lower(),
            from_address=sender.lower(),
            to_address=to.lower() if to else None,
            value=value,
            chain_id=chain_id,
            block_number=block,
        )

    @staticmethod
    def transfer(
        recipient: str,
        value: int,
        *,
        sender: str = DONOR,
        block: int = 101,
        tx_hash: str = TX_HASH,
        log_index: int = 0,
        token: str = USDT,
    ) -> DecodedTransfer:
        return DecodedTransfer(
            token=token.lower(),
            from_address=sender.lower(),
            to_address=recipient.lower(),
            value=value,
            log_index=log_index,
            tx_hash=tx_hash,
            block_number=block,
        )


class FakeWsStream:
    """WebSocket stream double fed by FakeChainClient.push_ws()."""

    def __init__(self, client: "FakeChainClient", token: str, recipient: str) -> None:
        self._client = client
        self.token = token.lower()
        self.recipient = recipient.lower()
        self._queue: asyncio.Queue[DecodedTransfer | None] = asyncio.Queue()

    async def __aenter__(self) -> "FakeWsStream":
        self._client.ws_connections += 1
        if self._client.ws_fail:
            raise NetworkError("websocket connect failed")
        self._client.ws_streams.append(self)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self in self._client.ws_streams:
            self._client.ws_streams.remove(self)

    def drop(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if item is None:
                raise SubscriptionDisconnected("fake websocket dropped")
            yield item


class FakeChainClient:
    """In-memory chain: receipts, transactions, a block height and transfer history."""

    def __init__(self, config: NetworkConfig) -> None:
        self.config = config
        self.network = config.network
        self.receipts: dict[str, Receipt] = {}
        self.transactions: dict[str, Transaction] = {}
        self.transfers: list[DecodedTransfer] = []
        self.token_decimals: dict[str, int] = {}
        self.fee = FeeData(gas_price=20 * 10**9, max_fee_per_gas=41 * 10**9, max_priority_fee_per_gas=10**9)
        self.block = 100
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self.ws_fail = False
        self.ws_connections = 0
        self.ws_streams: list[FakeWsStream] = []
        self.closed = False

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    def add_receipt(self, receipt: Receipt) -> None:
        self.receipts[receipt.tx_hash] = receipt

    def add_transaction(self, tx: Transaction) -> None:
        self.transactions[tx.tx_hash] = tx

    def push_ws(self, transfer: DecodedTransfer) -> None:
        for stream in list(self.ws_streams):
            if stream.recipient == transfer.to_address:
                stream._queue.put_nowait(transfer)

    def mine(self, transfer: DecodedTransfer) -> None:
        """Add transfer in a new block and advance the chain head to it."""
        self.block = max(self.block + 1, transfer.block_number or 0)
        self.transfers.append(replace(transfer, block_number=self.block))

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        self._record("get_receipt")
        return self.receipts.get(tx_hash.lower())

    async def get_transaction(self, tx_hash: str) -> Transaction | None:
        self._record("get_transaction")
        return self.transactions.get(tx_hash.lower())

    def decode_transfer_logs(self, receipt: Receipt, token_address: str) -> list[DecodedTransfer]:
        return decode_transfer_logs(receipt, token_address)

    async def latest_block_number(self) -> int:
        self._record("latest_block_number")
        return self.block

    async def get_transfer_logs(
        self, token_address: str, recipient: str, from_block: int, to_block: int
    ) -> list[DecodedTransfer]:
        self._record("get_transfer_logs")
        return [
            t
            for t in self.transfers
            if t.token == token_address.lower()
            and t.to_address == recipient.lower()
            and from_block <= (t.block_number or 0) <= to_block
        ]

    async def get_token_decimals(self, token_address: str) -> int:
        self._record("get_token_decimals")
        return self.token_decimals[token_address.lower()]

    async def get_fee_data(self) -> FeeData:
        self._record("get_fee_data")
        return self.fee

    def subscribe_transfers(self, token_address: str, recipient: str) -> FakeWsStream:
        if not self.config.ws_endpoint:
            raise NetworkError("no websocket endpoint configured")
        return FakeWsStream(self, token_address, recipient)

    def poll_transfers(
        self, token_address: str, recipient: str, *, interval_sec: float, start_block: int | None = None
    ) -> PollingTransferStream:
        return PollingTransferStream(
            self, token_address, recipient, interval_sec=interval_sec, start_block=start_block
        )

    async def aclose(self) -> None:
        self.closed = True


def make_config(**overrides: Any) -> NetworkConfig:
    fields: dict[str, Any] = {
        "network": "ethereum",
        "chain_id": 1,
        "http_endpoint": "http://rpc.test",
        "ws_endpoint": None,
        "token_address": USDT,
        "token_decimals": 6,
        "platform_wallet": PLATFORM,
        "min_confirmations": 0,
    }
    fields.update(overrides)
    return NetworkConfig(**fields)


@pytest.fixture
def chain_data() -> type[ChainData]:
    return ChainData


@pytest.fixture
def network_config():
    """Factory: NetworkConfig for a test network (polling only unless ws_endpoint is given)."""
    return make_config


@pytest.fixture
def fake_client() -> FakeChainClient:
    """Chain double without a WebSocket endpoint (subscriptions fall back to polling)."""
    return FakeChainClient(make_config())


@pytest.fixture
def fake_ws_client() -> FakeChainClient:
    """Chain double with a WebSocket endpoint; streams count connections."""
    return FakeChainClient(make_config(ws_endpoint="wss://ws.test"))


@pytest.fixture
def fake_client_cls() -> type[FakeChainClient]:
    return FakeChainClient
