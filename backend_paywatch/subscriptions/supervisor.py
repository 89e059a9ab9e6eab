"""
Subscription supervisor: single owner of all wallet subscriptions.

Holds the authoritative map entity_id -> WalletSubscription. Every mutation
goes through an asyncio.Lock, so concurrent start/stop requests for the same
entity can never open two subscriptions. Subscriptions heal their own
connection errors; the supervisor additionally restarts a subscription whose
task died unexpectedly, and exposes status() snapshots for alerting.

Constructed once at process start and passed explicitly to whoever needs it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping

from backend_paywatch.config.settings import AppSettings
from backend_paywatch.evm.client import ChainClient
from backend_paywatch.evm.parser import is_address
from backend_paywatch.paywatch_logging import get_logger, short
from backend_paywatch.subscriptions.models import (
    EntityId,
    MonitoredEntity,
    StartAllResult,
    StartResult,
    SubscriptionHandle,
    TransferObserved,
)
from backend_paywatch.subscriptions.wallet_subscription import WalletSubscription

logger = get_logger(__name__)

STATUS_STARTED = "started"
STATUS_ALREADY_ACTIVE = "already_active"
STATUS_STOPPED = "stopped"
STATUS_NOT_ACTIVE = "not_active"

_TASK_RESTART_DELAY_SEC = 1.0


class SubscriptionSupervisor:
    """
    Starts, stops, deduplicates and restarts per-entity wallet subscriptions.

    All subscriptions write TransferObserved events into one bounded channel
    (``events``); a single consumer (see donations.recorder) drains it.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        token_address: str,
        token_decimals: int,
        token_symbol: str = "USDT",
        settings: AppSettings | None = None,
        events: "asyncio.Queue[TransferObserved] | None" = None,
        prefer_websocket: bool = True,
    ) -> None:
        self._client = client
        self._token = token_address
        self._decimals = token_decimals
        self._symbol = token_symbol
        self._settings = settings or AppSettings()
        self._events: asyncio.Queue[TransferObserved] = events or asyncio.Queue(
            maxsize=self._settings.event_queue_maxsize
        )
        self._prefer_ws = prefer_websocket
        self._subscriptions: dict[EntityId, WalletSubscription] = {}
        self._lock = asyncio.Lock()
        self._closing = False

    @property
    def events(self) -> "asyncio.Queue[TransferObserved]":
        return self._events

    @property
    def client(self) -> ChainClient:
        return self._client

    def __contains__(self, entity_id: EntityId) -> bool:
        return entity_id in self._subscriptions

    def __len__(self) -> int:
        return len(self._subscriptions)

    def get(self, entity_id: EntityId) -> SubscriptionHandle | None:
        sub = self._subscriptions.get(entity_id)
        return sub.snapshot() if sub is not None else None

    def status(self) -> list[SubscriptionHandle]:
        """Snapshot of every subscription, for operational visibility."""
        return [sub.snapshot() for sub in list(self._subscriptions.values())]

    def active_wallets(self) -> dict[EntityId, str]:
        return {eid: sub.wallet for eid, sub in list(self._subscriptions.items())}

    def _build(self, entity_id: EntityId, wallet: str) -> WalletSubscription:
        s = self._settings
        return WalletSubscription(
            entity_id,
            wallet,
            self._client,
            self._events,
            token_address=self._token,
            token_decimals=self._decimals,
            token_symbol=self._symbol,
            prefer_websocket=self._prefer_ws,
            poll_interval_sec=s.poll_interval_sec,
            reconnect_backoff_sec=s.reconnect_backoff_sec,
        )

    async def start_listener(self, entity_id: EntityId, wallet: str) -> StartResult:
        """
        Start watching wallet for entity_id. If the entity already has a
        subscription, return it untouched with status "already_active".
        Raises ValueError for an invalid wallet address.
        """
        if not is_address(wallet):
            raise ValueError(f"Invalid wallet address for {entity_id}: {wallet!r}")
        async with self._lock:
            if self._closing:
                raise RuntimeError("supervisor is shutting down")
            existing = self._subscriptions.get(entity_id)
            if existing is not None:
                logger.info("listener_already_active", entity_id=entity_id, wallet=short(existing.wallet))
                return StartResult(status=STATUS_ALREADY_ACTIVE, handle=existing.snapshot())
            sub = self._build(entity_id, wallet)
            self._subscriptions[entity_id] = sub
            self._launch(sub)
        logger.info(
            "listener_started",
            entity_id=entity_id,
            wallet=short(sub.wallet),
            connection_kind=sub.connection_kind.value,
        )
        return StartResult(status=STATUS_STARTED, handle=sub.snapshot())

    async def stop_listener(self, entity_id: EntityId) -> str:
        """
        Stop and forget entity_id's subscription. Returns "stopped" or
        "not_active". Only requests cancellation; teardown continues in the background.
        """
        async with self._lock:
            sub = self._subscriptions.pop(entity_id, None)
        if sub is None:
            logger.info("listener_not_active", entity_id=entity_id)
            return STATUS_NOT_ACTIVE
        sub.stop()
        logger.info("listener_stop_requested", entity_id=entity_id, wallet=short(sub.wallet))
        return STATUS_STOPPED

    async def start_all(self, entities: Iterable[MonitoredEntity | Mapping[str, Any]]) -> StartAllResult:
        """
        Start listeners for entities flagged active (process-startup resume).
        A row that cannot be read or started counts as failed; the rest still start.
        """
        started = failed = already = inactive = 0
        errors: dict[str, str] = {}
        logger.info("listeners_start_all")
        for index, row in enumerate(entities):
            key = _row_key(row, index)
            try:
                entity = row if isinstance(row, MonitoredEntity) else MonitoredEntity.from_mapping(row)
                if not entity.active:
                    inactive += 1
                    continue
                result = await self.start_listener(entity.id, entity.wallet)
            except Exception as e:
                failed += 1
                errors[key] = str(e)
                logger.warning("listener_start_failed", entity_id=key, error=str(e))
                continue
            if result.status == STATUS_ALREADY_ACTIVE:
                already += 1
            else:
                started += 1
        logger.info(
            "listeners_start_all_done",
            started=started,
            failed=failed,
            already_active=already,
            inactive=inactive,
        )
        return StartAllResult(started=started, failed=failed, already_active=already, errors=errors)

    async def shutdown(self) -> None:
        """Stop every subscription and wait for their teardown."""
        async with self._lock:
            self._closing = True
            subs = list(self._subscriptions.values())
            self._subscriptions.clear()
        for sub in subs:
            sub.stop()
        await asyncio.gather(*(sub.wait_closed() for sub in subs))
        logger.info("supervisor_shutdown", stopped=len(subs))

    def _launch(self, sub: WalletSubscription) -> None:
        sub.start()
        task = sub.task
        if task is not None:
            task.add_done_callback(lambda t, s=sub: self._on_task_done(s, t))

    def _on_task_done(self, sub: WalletSubscription, task: "asyncio.Task[None]") -> None:
        """Restart a subscription whose task ended while it is still registered."""
        if task.cancelled() or self._closing:
            return
        if self._subscriptions.get(sub.entity_id) is not sub:
            return
        exc = task.exception()
        logger.error(
            "listener_task_died",
            entity_id=sub.entity_id,
            error=str(exc) if exc else "exited",
            restart_in_sec=_TASK_RESTART_DELAY_SEC,
        )
        asyncio.get_running_loop().call_later(_TASK_RESTART_DELAY_SEC, self._restart, sub)

    def _restart(self, sub: WalletSubscription) -> None:
        if self._closing or self._subscriptions.get(sub.entity_id) is not sub:
            return
        self._launch(sub)
        logger.info("listener_restarted", entity_id=sub.entity_id)


def _row_key(row: MonitoredEntity | Mapping[str, Any], index: int) -> str:
    """Error key for a start_all row: its id when readable, else its position."""
    if isinstance(row, MonitoredEntity):
        entity_id = row.id
    else:
        entity_id = row.get("id") if isinstance(row, Mapping) else None
    return str(entity_id) if entity_id is not None else f"row_{index}"
