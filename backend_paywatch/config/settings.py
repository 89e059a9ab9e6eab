"""
Application settings and environment configuration.

Process-level knobs (polling cadence, reconnect backoff, channel size,
reconciliation) read from environment variables with defaults. Per-network
RPC configuration is handled separately by config.networks.
"""

from __future__ import annotations

from dataclasses import dataclass

from backend_paywatch.config.env import env_float, env_int, load_paywatch_env

DEFAULT_POLL_INTERVAL_SEC = 12.0
DEFAULT_RECONNECT_BACKOFF_SEC = 5.0
DEFAULT_EVENT_QUEUE_MAXSIZE = 1024
DEFAULT_RECONCILE_INTERVAL_SEC = 300.0
DEFAULT_RECONCILE_LOOKBACK_BLOCKS = 50
DEFAULT_PENDING_POLL_INTERVAL_SEC = 60.0
DEFAULT_CONFIG_CACHE_TTL_SEC = 300.0


@dataclass(frozen=True)
class AppSettings:
    """
    Runtime settings shared by the supervisor, consumer and background sweeps.

    poll_interval_sec: Seconds between polls when a subscription uses HTTP polling.
    reconnect_backoff_sec: Fixed delay before a failed subscription reconnects.
    event_queue_maxsize: Bound of the TransferObserved channel (backpressure).
    reconcile_interval_sec: Seconds between reconciliation sweeps; 0 disables.
    reconcile_lookback_blocks: Blocks re-scanned per active wallet per sweep.
    """

    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC
    reconnect_backoff_sec: float = DEFAULT_RECONNECT_BACKOFF_SEC
    event_queue_maxsize: int = DEFAULT_EVENT_QUEUE_MAXSIZE
    reconcile_interval_sec: float = DEFAULT_RECONCILE_INTERVAL_SEC
    reconcile_lookback_blocks: int = DEFAULT_RECONCILE_LOOKBACK_BLOCKS
    pending_poll_interval_sec: float = DEFAULT_PENDING_POLL_INTERVAL_SEC
    config_cache_ttl_sec: float = DEFAULT_CONFIG_CACHE_TTL_SEC
    rpc_max_retries: int = 3


def get_settings() -> AppSettings:
    """Build AppSettings from the environment (.env loaded first)."""
    load_paywatch_env()
    return AppSettings(
        poll_interval_sec=max(1.0, env_float("POLL_INTERVAL_SEC", DEFAULT_POLL_INTERVAL_SEC)),
        reconnect_backoff_sec=max(0.1, env_float("RECONNECT_BACKOFF_SEC", DEFAULT_RECONNECT_BACKOFF_SEC)),
        event_queue_maxsize=max(1, env_int("EVENT_QUEUE_MAXSIZE", DEFAULT_EVENT_QUEUE_MAXSIZE)),
        reconcile_interval_sec=max(0.0, env_float("RECONCILE_INTERVAL_SEC", DEFAULT_RECONCILE_INTERVAL_SEC)),
        reconcile_lookback_blocks=max(1, env_int("RECONCILE_LOOKBACK_BLOCKS", DEFAULT_RECONCILE_LOOKBACK_BLOCKS)),
        pending_poll_interval_sec=max(1.0, env_float("PENDING_POLL_INTERVAL_SEC", DEFAULT_PENDING_POLL_INTERVAL_SEC)),
        config_cache_ttl_sec=max(0.0, env_float("CONFIG_CACHE_TTL_SEC", DEFAULT_CONFIG_CACHE_TTL_SEC)),
        rpc_max_retries=max(1, env_int("RPC_MAX_RETRIES", 3)),
    )
