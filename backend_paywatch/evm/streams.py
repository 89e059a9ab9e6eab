"""
Transfer streams: WebSocket push and HTTP polling behind one interface.

Both are async context managers yielding DecodedTransfer when iterated:

    async with stream:
        async for transfer in stream:
            ...

Entering acquires the underlying resource (socket / starting block), exiting
releases it. A dropped connection ends iteration with SubscriptionDisconnected;
RPC failures while polling surface as NetworkError. Polling keeps its
last-seen block across re-entries, so reconnecting resumes without a gap.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from backend_paywatch.core.exceptions import (
    MalformedResponseError,
    NetworkError,
    SubscriptionDisconnected,
)
from backend_paywatch.evm.models import ConnectionKind, DecodedTransfer, LogEntry
from backend_paywatch.evm.parser import (
    TRANSFER_TOPIC,
    address_to_topic,
    decode_transfer_log,
    normalize_address,
)
from backend_paywatch.paywatch_logging import get_logger, short

if TYPE_CHECKING:
    from backend_paywatch.evm.client import ChainClient

logger = get_logger(__name__)

DEFAULT_WS_PING_INTERVAL = 30.0
DEFAULT_WS_PING_TIMEOUT = 10.0
_WS_CLOSE_TIMEOUT = 5.0


class WebSocketTransferStream:
    """eth_subscribe("logs") filtered on the Transfer topic and the recipient."""

    kind = ConnectionKind.WEBSOCKET

    def __init__(
        self,
        url: str,
        token_address: str,
        recipient: str,
        *,
        connect: Callable[..., Any] | None = None,
        subscribe_timeout: float = 10.0,
        ping_interval: float | None = DEFAULT_WS_PING_INTERVAL,
        ping_timeout: float | None = DEFAULT_WS_PING_TIMEOUT,
    ) -> None:
        self._url = url
        self._token = normalize_address(token_address)
        self._recipient = normalize_address(recipient)
        self._connect = connect or websockets.connect
        self._subscribe_timeout = subscribe_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._ws: Any = None
        self._subscription_id: str | None = None

    async def __aenter__(self) -> "WebSocketTransferStream":
        try:
            self._ws = await self._connect(
                self._url,
                open_timeout=self._subscribe_timeout,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
                close_timeout=_WS_CLOSE_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise NetworkError(f"websocket connect failed: {e}", endpoint=self._url) from e
        try:
            await self._subscribe()
        except BaseException:
            await self._close()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self._close()

    async def _subscribe(self) -> None:
        req = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {
                    "address": self._token,
                    "topics": [TRANSFER_TOPIC, None, address_to_topic(self._recipient)],
                },
            ],
        }
        try:
            await self._ws.send(json.dumps(req))
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self._subscribe_timeout)
        except (asyncio.TimeoutError, ConnectionClosed) as e:
            raise NetworkError(f"eth_subscribe failed: {e!r}", endpoint=self._url) from e
        try:
            msg = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise MalformedResponseError("eth_subscribe returned non-JSON") from e
        sub_id = msg.get("result") if isinstance(msg, dict) else None
        if not isinstance(sub_id, str):
            err = msg.get("error") if isinstance(msg, dict) else msg
            raise NetworkError(f"eth_subscribe rejected: {err}", endpoint=self._url)
        self._subscription_id = sub_id
        logger.info(
            "ws_subscribed",
            recipient=short(self._recipient),
            token=short(self._token),
            subscription_id=sub_id,
        )

    async def _close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug("ws_close_error", error=str(e))

    def __aiter__(self) -> AsyncIterator[DecodedTransfer]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DecodedTransfer]:
        if self._ws is None:
            raise SubscriptionDisconnected("stream not entered")
        try:
            async for raw in self._ws:
                transfer = self._decode_notification(raw)
                if transfer is not None:
                    yield transfer
        except ConnectionClosed as e:
            raise SubscriptionDisconnected(f"websocket closed: {e}") from e
        raise SubscriptionDisconnected("websocket stream ended")

    def _decode_notification(self, raw: Any) -> DecodedTransfer | None:
        try:
            msg = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return None
        if not isinstance(msg, dict) or msg.get("method") != "eth_subscription":
            return None
        params = msg.get("params") or {}
        if params.get("subscription") != self._subscription_id:
            return None
        try:
            entry = LogEntry.from_rpc(params.get("result") or {})
        except MalformedResponseError as e:
            logger.debug("ws_log_skipped", error=str(e))
            return None
        # removed=True is a reorg retraction of an earlier notification
        if entry.removed or entry.address != self._token:
            return None
        transfer = decode_transfer_log(entry)
        if transfer is None or transfer.to_address != self._recipient:
            return None
        return transfer


class PollingTransferStream:
    """
    Poll eth_blockNumber every interval and scan new blocks with eth_getLogs.

    last_seen_block advances only after a range has been fully yielded, so an
    error mid-range re-scans it on the next entry (at-least-once). Without a
    start_block the first scan includes the chain head at entry.
    """

    kind = ConnectionKind.HTTP_POLL

    def __init__(
        self,
        client: "ChainClient",
        token_address: str,
        recipient: str,
        *,
        interval_sec: float,
        start_block: int | None = None,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        self._client = client
        self._token = normalize_address(token_address)
        self._recipient = normalize_address(recipient)
        self._interval = interval_sec
        self.last_seen_block: int | None = None if start_block is None else start_block - 1

    async def __aenter__(self) -> "PollingTransferStream":
        if self.last_seen_block is None:
            self.last_seen_block = max(0, await self._client.latest_block_number() - 1)
            logger.info(
                "poll_started",
                recipient=short(self._recipient),
                from_block=self.last_seen_block + 1,
            )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    def __aiter__(self) -> AsyncIterator[DecodedTransfer]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DecodedTransfer]:
        while True:
            latest = await self._client.latest_block_number()
            last_seen = self.last_seen_block if self.last_seen_block is not None else latest
            if latest > last_seen:
                transfers = await self._client.get_transfer_logs(
                    self._token, self._recipient, last_seen + 1, latest
                )
                for transfer in transfers:
                    yield transfer
                self.last_seen_block = latest
            await asyncio.sleep(self._interval)
