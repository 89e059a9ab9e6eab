"""
One long-lived subscription bound to a single recipient wallet.

State machine: STARTING -> ACTIVE -> (RECONNECTING -> ACTIVE)* -> STOPPED.

Tries a WebSocket log subscription first. Whenever a WebSocket connection
attempt fails (no endpoint, first start or any reconnect) it falls back to HTTP
polling for the rest of its life. Connection errors never escape: the
subscription moves to RECONNECTING, waits a fixed backoff and starts again.
Polling resumes from the last scanned block, so it is gap-safe. WebSocket mode
can miss events emitted while reconnecting, and so can the switch from a dropped
WebSocket to polling (subscriptions.reconcile re-scans recent blocks for both).
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from backend_paywatch.core.exceptions import PaywatchError, SubscriptionDisconnected
from backend_paywatch.evm.client import ChainClient
from backend_paywatch.evm.models import ConnectionKind, DecodedTransfer
from backend_paywatch.evm.parser import format_units, normalize_address
from backend_paywatch.evm.streams import PollingTransferStream
from backend_paywatch.paywatch_logging import bind_entity, short
from backend_paywatch.subscriptions.models import (
    EntityId,
    SubscriptionHandle,
    SubscriptionStatus,
    TransferObserved,
)

DEFAULT_MAX_SEEN_TRANSFERS = 10_000


class WalletSubscription:
    """
    Watches inbound token transfers to one wallet and pushes TransferObserved
    events into ``sink`` (a bounded asyncio.Queue; a full queue applies backpressure).
    """

    def __init__(
        self,
        entity_id: EntityId,
        wallet: str,
        client: ChainClient,
        sink: "asyncio.Queue[TransferObserved]",
        *,
        token_address: str,
        token_decimals: int,
        token_symbol: str = "USDT",
        prefer_websocket: bool = True,
        poll_interval_sec: float = 12.0,
        reconnect_backoff_sec: float = 5.0,
        max_seen_transfers: int = DEFAULT_MAX_SEEN_TRANSFERS,
    ) -> None:
        self._entity_id = entity_id
        self._wallet = normalize_address(wallet)
        self._token = normalize_address(token_address)
        self._decimals = token_decimals
        self._symbol = token_symbol
        self._client = client
        self._sink = sink
        self._poll_interval = poll_interval_sec
        self._backoff = reconnect_backoff_sec
        self._max_seen = max_seen_transfers
        self._log = bind_entity(entity_id).bind(wallet=short(self._wallet))

        use_ws = prefer_websocket and bool(client.config.ws_endpoint)
        self._kind = ConnectionKind.WEBSOCKET if use_ws else ConnectionKind.HTTP_POLL
        self._status = SubscriptionStatus.STARTING
        self._poll_stream: PollingTransferStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._last_error: str | None = None
        self._restarts = 0
        self._reconnects = 0

        # (tx_hash, log_index) dedup: set for O(1) lookup, deque for FIFO eviction
        self._seen: set[tuple[str | None, int | None]] = set()
        self._seen_order: deque[tuple[str | None, int | None]] = deque()

    @property
    def entity_id(self) -> EntityId:
        return self._entity_id

    @property
    def wallet(self) -> str:
        return self._wallet

    @property
    def token_address(self) -> str:
        return self._token

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def connection_kind(self) -> ConnectionKind:
        return self._kind

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    @property
    def last_seen_block(self) -> int | None:
        return self._poll_stream.last_seen_block if self._poll_stream is not None else None

    def snapshot(self) -> SubscriptionHandle:
        return SubscriptionHandle(
            entity_id=self._entity_id,
            wallet=self._wallet,
            connection_kind=self._kind,
            status=self._status,
            last_error=self._last_error,
            restarts=self._restarts,
            reconnects=self._reconnects,
            last_seen_block=self.last_seen_block,
        )

    def start(self) -> None:
        """Schedule the subscription task on the running loop. No-op if already running."""
        if self._status is SubscriptionStatus.STOPPED:
            raise RuntimeError("cannot start a stopped subscription")
        if self._task is not None and not self._task.done():
            return
        if self._task is not None:
            self._restarts += 1
        self._status = SubscriptionStatus.STARTING
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"wallet-subscription-{self._entity_id}"
        )

    def stop(self) -> None:
        """Request cancellation and release the connection. Idempotent."""
        if self._status is SubscriptionStatus.STOPPED:
            return
        self._status = SubscriptionStatus.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._log.info("subscription_stopped")

    async def wait_closed(self) -> None:
        """Wait until the task has finished tearing down (after stop())."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._log.warning("subscription_task_error_on_close", error=str(e))

    def _open_stream(self) -> Any:
        if self._kind is ConnectionKind.WEBSOCKET:
            return self._client.subscribe_transfers(self._token, self._wallet)
        if self._poll_stream is None:
            self._poll_stream = self._client.poll_transfers(
                self._token, self._wallet, interval_sec=self._poll_interval
            )
        return self._poll_stream

    async def _run(self) -> None:
        self._log.info("subscription_starting", connection_kind=self._kind.value)
        while self._status is not SubscriptionStatus.STOPPED:
            connected = False
            try:
                async with self._open_stream() as stream:
                    connected = True
                    self._mark_active()
                    async for transfer in stream:
                        await self._emit(transfer)
                raise SubscriptionDisconnected("stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._status is SubscriptionStatus.STOPPED:
                    break
                if self._kind is ConnectionKind.WEBSOCKET and not connected:
                    self._log.warning(
                        "subscription_ws_fallback_to_polling",
                        reconnects=self._reconnects,
                        error=str(e),
                    )
                    self._last_error = str(e)
                    self._kind = ConnectionKind.HTTP_POLL
                    continue
                self._last_error = str(e)
                self._reconnects += 1
                self._status = SubscriptionStatus.RECONNECTING
                if isinstance(e, PaywatchError):
                    self._log.warning(
                        "subscription_reconnecting",
                        connection_kind=self._kind.value,
                        backoff_sec=self._backoff,
                        error=str(e),
                    )
                else:
                    self._log.exception("subscription_unexpected_error", error=str(e))
                await asyncio.sleep(self._backoff)

    def _mark_active(self) -> None:
        self._status = SubscriptionStatus.ACTIVE
        self._last_error = None
        self._log.info("subscription_active", connection_kind=self._kind.value)

    def _mark_seen(self, key: tuple[str | None, int | None]) -> bool:
        """Record key; False if it was already seen. Evicts oldest over capacity."""
        if key in self._seen:
            return False
        if len(self._seen) >= self._max_seen:
            self._seen.discard(self._seen_order.popleft())
        self._seen.add(key)
        self._seen_order.append(key)
        return True

    async def _emit(self, transfer: DecodedTransfer) -> None:
        if not self._mark_seen((transfer.tx_hash, transfer.log_index)):
            return
        event = TransferObserved(
            entity_id=self._entity_id,
            tx_hash=transfer.tx_hash or "",
            from_address=transfer.from_address,
            to_address=transfer.to_address,
            amount=format_units(transfer.value, self._decimals),
            token=transfer.token,
            block_number=transfer.block_number,
            log_index=transfer.log_index,
            network=self._client.network,
            token_symbol=self._symbol,
        )
        self._log.info(
            "transfer_observed",
            tx_hash=short(event.tx_hash, 18),
            amount=str(event.amount),
            sender=short(event.from_address),
            block_number=event.block_number,
        )
        await self._sink.put(event)
