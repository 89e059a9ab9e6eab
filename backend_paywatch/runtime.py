"""
Standalone monitor process: resume campaign listeners and record donations until stopped.

Reads campaign wallets from CAMPAIGN_WALLETS ("id:0xwallet,id:0xwallet") and
network settings from the environment (.env loaded first). Safe shutdown on
SIGINT/SIGTERM: listeners are cancelled and sockets released before exit.

Usage: python -m backend_paywatch
"""

from __future__ import annotations

import asyncio
import os
import signal

from backend_paywatch.config.env import load_paywatch_env
from backend_paywatch.config.networks import StaticSettingsStore
from backend_paywatch.config.settings import get_settings
from backend_paywatch.engine import PaymentEngine
from backend_paywatch.paywatch_logging import get_logger
from backend_paywatch.subscriptions.models import MonitoredEntity

logger = get_logger(__name__)


def parse_campaign_wallets(raw: str) -> list[MonitoredEntity]:
    """
    Parse "12:0xabc...,13:0xdef..." into active MonitoredEntity rows.
    Numeric ids become ints. Malformed entries are skipped with a warning.
    """
    entities: list[MonitoredEntity] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        entity_id, sep, wallet = part.partition(":")
        if not sep or not entity_id.strip() or not wallet.strip():
            logger.warning("runtime_campaign_entry_invalid", entry=part)
            continue
        key = entity_id.strip()
        entities.append(MonitoredEntity(id=int(key) if key.isdigit() else key, wallet=wallet.strip()))
    return entities


def _store_from_env() -> StaticSettingsStore:
    enabled = (os.getenv("BLOCKCHAIN_MONITORING_ENABLED") or "true").strip().lower()
    return StaticSettingsStore({"blockchain_monitoring_enabled": enabled})


async def run_monitor(stop_event: asyncio.Event | None = None) -> int:
    """Run the engine until stop_event is set (or a signal arrives)."""
    load_paywatch_env()
    settings = get_settings()
    engine = PaymentEngine(_store_from_env(), settings=settings)
    stop = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows or not in main thread
            pass

    connection = await engine.test_rpc_connection()
    if not connection["success"]:
        logger.warning("runtime_rpc_unreachable", error=connection.get("error"))

    await engine.run()
    campaigns = parse_campaign_wallets(os.getenv("CAMPAIGN_WALLETS", ""))
    result = await engine.start_all_campaign_listeners(campaigns)
    logger.info("runtime_campaigns_loaded", campaign_count=len(campaigns), **result)
    if (os.getenv("PLATFORM_LISTENER_ENABLED") or "true").strip().lower() == "true":
        platform = await engine.start_platform_listener()
        logger.info("runtime_platform_listener", **platform)

    try:
        await stop.wait()
    finally:
        await engine.shutdown()
    logger.info("runtime_stopped")
    return 0


def main() -> int:
    """CLI entrypoint: run the monitor until SIGINT/SIGTERM."""
    try:
        return asyncio.run(run_monitor())
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
        return 0
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1
