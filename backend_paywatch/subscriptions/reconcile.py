"""
Reconciliation sweep: periodic re-scan of recent blocks for every watched wallet.

WebSocket subscriptions can miss a transfer mined while they reconnect. The
sweep re-reads the last ``lookback_blocks`` blocks of Transfer logs for each
wallet the supervisor currently watches and pushes them into the same event
channel. Duplicates are expected; the donation consumer upserts by tx_hash.
"""

from __future__ import annotations

import asyncio

from backend_paywatch.core.exceptions import PaywatchError
from backend_paywatch.evm.parser import format_units
from backend_paywatch.paywatch_logging import get_logger, short
from backend_paywatch.subscriptions.models import TransferObserved
from backend_paywatch.subscriptions.supervisor import SubscriptionSupervisor

logger = get_logger(__name__)


class ReconciliationSweep:
    """Re-scan the tail of the chain for all supervised wallets."""

    def __init__(
        self,
        supervisor: SubscriptionSupervisor,
        *,
        token_address: str,
        token_decimals: int,
        token_symbol: str = "USDT",
        lookback_blocks: int = 50,
        interval_sec: float = 300.0,
    ) -> None:
        if lookback_blocks < 1:
            raise ValueError("lookback_blocks must be >= 1")
        self._supervisor = supervisor
        self._client = supervisor.client
        self._token = token_address
        self._decimals = token_decimals
        self._symbol = token_symbol
        self._lookback = lookback_blocks
        self._interval = interval_sec
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def sweep_once(self) -> int:
        """Run one sweep; returns the number of events pushed. Per-wallet errors are isolated."""
        wallets = self._supervisor.active_wallets()
        if not wallets:
            return 0
        latest = await self._client.latest_block_number()
        from_block = max(0, latest - self._lookback + 1)
        pushed = 0
        for entity_id, wallet in wallets.items():
            try:
                transfers = await self._client.get_transfer_logs(self._token, wallet, from_block, latest)
            except PaywatchError as e:
                logger.warning("reconcile_wallet_failed", entity_id=entity_id, wallet=short(wallet), error=str(e))
                continue
            for t in transfers:
                await self._supervisor.events.put(
                    TransferObserved(
                        entity_id=entity_id,
                        tx_hash=t.tx_hash or "",
                        from_address=t.from_address,
                        to_address=t.to_address,
                        amount=format_units(t.value, self._decimals),
                        token=t.token,
                        block_number=t.block_number,
                        log_index=t.log_index,
                        network=self._client.network,
                        token_symbol=self._symbol,
                    )
                )
                pushed += 1
        logger.info(
            "reconcile_sweep_done",
            wallets=len(wallets),
            from_block=from_block,
            to_block=latest,
            pushed=pushed,
        )
        return pushed

    async def run(self) -> None:
        """Sweep every interval until stop(). Never raises on sweep failure."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("reconcile_sweep_failed", error=str(e))
        logger.info("reconcile_stopped")
