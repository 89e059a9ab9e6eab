"""
Donation recording boundary: the consumer side of the TransferObserved channel.

Persistence lives outside this package. A DonationRecorder receives every
observed transfer; delivery is at-least-once (WebSocket replays, reconciliation
sweeps), so recorders must upsert by tx_hash.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol, Union

from backend_paywatch.paywatch_logging import get_logger, short
from backend_paywatch.subscriptions.models import EntityId, TransferObserved

logger = get_logger(__name__)

DonationHandler = Callable[[TransferObserved], Union[None, Awaitable[None]]]


class DonationRecorder(Protocol):
    def record(self, event: TransferObserved) -> Any:
        """Persist one observed donation. May be sync or return an awaitable."""
        ...


class InMemoryDonationRecorder:
    """Reference recorder: idempotent upsert keyed by tx_hash."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def record(self, event: TransferObserved) -> bool:
        """Store event; returns True when tx_hash was not seen before."""
        key = event.tx_hash.lower()
        row = event.to_donation()
        with self._lock:
            created = key not in self._rows
            self._rows[key] = row
        return created

    def get(self, tx_hash: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(tx_hash.lower())
        return dict(row) if row is not None else None

    def donations_for(self, entity_id: EntityId) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.values() if r["campaign_id"] == entity_id]

    def total_for(self, entity_id: EntityId) -> Decimal:
        return sum((Decimal(r["amount"]) for r in self.donations_for(entity_id)), Decimal(0))

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class DonationDispatcher:
    """
    Drains the event channel. Events for an entity with a registered handler
    go to that handler; everything else goes to the default recorder.
    Handler and recorder failures are logged and never stop the consumer.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[TransferObserved]",
        recorder: DonationRecorder | None = None,
    ) -> None:
        self._queue = queue
        self._recorder: DonationRecorder = recorder if recorder is not None else InMemoryDonationRecorder()
        self._handlers: dict[EntityId, DonationHandler] = {}
        self._processed = 0
        self._failed = 0

    @property
    def recorder(self) -> DonationRecorder:
        return self._recorder

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def failed(self) -> int:
        return self._failed

    def register(self, entity_id: EntityId, handler: DonationHandler) -> None:
        self._handlers[entity_id] = handler

    def unregister(self, entity_id: EntityId) -> None:
        self._handlers.pop(entity_id, None)

    def has_handler(self, entity_id: EntityId) -> bool:
        return entity_id in self._handlers

    async def dispatch(self, event: TransferObserved) -> bool:
        """Deliver one event. Returns False if the target raised."""
        handler = self._handlers.get(event.entity_id)
        target = handler if handler is not None else self._recorder.record
        try:
            result = target(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed += 1
            logger.warning(
                "donation_dispatch_error",
                entity_id=event.entity_id,
                tx_hash=short(event.tx_hash, 18),
                handler="entity" if handler is not None else "recorder",
                error=str(e),
            )
            return False
        self._processed += 1
        logger.info(
            "donation_recorded",
            entity_id=event.entity_id,
            tx_hash=short(event.tx_hash, 18),
            amount=str(event.amount),
            donor=short(event.from_address),
        )
        return True

    async def drain(self) -> int:
        """Dispatch every event already queued without waiting for more. Returns the count."""
        drained = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()
            drained += 1
        return drained

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Consume until stop_event is set; wakes every second to check it.
        Events still queued at that point are drained before returning.
        """
        logger.info("donation_consumer_started")
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()
        drained = await self.drain()
        logger.info(
            "donation_consumer_stopped",
            processed=self._processed,
            failed=self._failed,
            drained=drained,
        )
