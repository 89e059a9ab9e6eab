"""
Reconciliation sweep: re-scan recent blocks for every supervised wallet.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

CAMPAIGN_WALLET = "0x" + "33" * 20


def _setup(client, chain_data, lookback=50):
    from backend_paywatch.config.settings import AppSettings
    from backend_paywatch.subscriptions import ReconciliationSweep, SubscriptionSupervisor

    sup = SubscriptionSupervisor(
        client,
        token_address=chain_data.usdt,
        token_decimals=6,
        settings=AppSettings(poll_interval_sec=60, reconnect_backoff_sec=60),
    )
    sweep = ReconciliationSweep(
        sup,
        token_address=chain_data.usdt,
        token_decimals=6,
        lookback_blocks=lookback,
        interval_sec=0.01,
    )
    return sup, sweep


def test_sweep_pushes_recent_transfers(fake_ws_client, chain_data):
    """A transfer missed by the live stream is recovered from the lookback window."""

    async def run():
        sup, sweep = _setup(fake_ws_client, chain_data, lookback=10)
        await sup.start_listener(1, CAMPAIGN_WALLET)
        # outside the lookback window once the head moves to 120
        fake_ws_client.transfers.append(chain_data.transfer(CAMPAIGN_WALLET, 9_000_000, block=105, tx_hash=chain_data.tx(9)))
        fake_ws_client.transfers.append(chain_data.transfer(CAMPAIGN_WALLET, 5_000_000, block=118, tx_hash=chain_data.tx(5)))
        fake_ws_client.block = 120
        pushed = await sweep.sweep_once()
        event = sup.events.get_nowait()
        await sup.shutdown()
        return pushed, event

    pushed, event = asyncio.run(run())
    assert pushed == 1
    assert event.entity_id == 1
    assert event.amount == Decimal("5")
    assert event.block_number == 118


def test_sweep_without_wallets_does_nothing(fake_client, chain_data):
    async def run():
        _, sweep = _setup(fake_client, chain_data)
        return await sweep.sweep_once()

    assert asyncio.run(run()) == 0
    assert fake_client.calls == []


def test_sweep_isolates_wallet_failures(fake_ws_client, chain_data):
    from backend_paywatch.core.exceptions import NetworkError

    class FailingLogs(type(fake_ws_client)):
        async def get_transfer_logs(self, *args, **kwargs):
            raise NetworkError("getLogs failed")

    client = FailingLogs(fake_ws_client.config)

    async def run():
        sup, sweep = _setup(client, chain_data)
        await sup.start_listener(1, CAMPAIGN_WALLET)
        await sup.start_listener(2, "0x" + "44" * 20)
        pushed = await sweep.sweep_once()
        await sup.shutdown()
        return pushed

    assert asyncio.run(run()) == 0


def test_run_loop_stops(fake_client, chain_data):
    async def run():
        _, sweep = _setup(fake_client, chain_data)
        task = asyncio.create_task(sweep.run())
        await asyncio.sleep(0.05)
        sweep.stop()
        await asyncio.wait_for(task, 1.0)
        return task

    assert asyncio.run(run()).done()
