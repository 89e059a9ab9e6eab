"""
Per-network configuration resolved from the external settings store.

NetworkConfigProvider.get_config() never raises: it serves a cached snapshot
while fresh, reloads from the store when stale, and degrades to env/hardcoded
fallbacks when the store is unreachable. Snapshots are immutable and replaced
wholesale on reload.

Precedence per field: non-empty store value > environment > hardcoded literal.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping, Protocol

from backend_paywatch.config.env import get_network_env, mask_url
from backend_paywatch.config.settings import DEFAULT_CONFIG_CACHE_TTL_SEC
from backend_paywatch.core.exceptions import UnsupportedNetworkError
from backend_paywatch.paywatch_logging import get_logger

logger = get_logger(__name__)

NETWORK_ETHEREUM = "ethereum"
NETWORK_BSC = "bsc"
SUPPORTED_NETWORKS = (NETWORK_ETHEREUM, NETWORK_BSC)

DEFAULT_REQUEST_TIMEOUT_SEC = 10.0
DEFAULT_MIN_CONFIRMATIONS = 3

# Hardcoded last-resort values per network
_DEFAULTS: dict[str, dict[str, Any]] = {
    NETWORK_ETHEREUM: {
        "name": "Ethereum Mainnet",
        "chain_id": 1,
        "rpc_url": "https://eth.llamarpc.com",
        "rpc_backup": "https://rpc.ankr.com/eth",
        "ws_url": "wss://ethereum-rpc.publicnode.com",
        "usdt_contract": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        "token_decimals": 6,
        "wallet_address": "0x21e1f57a753fE27F7d8068002F65e8a830E2e6A8",
    },
    NETWORK_BSC: {
        "name": "BNB Smart Chain",
        "chain_id": 56,
        "rpc_url": "https://bsc-dataseed.binance.org",
        "rpc_backup": "https://rpc.ankr.com/bsc",
        "ws_url": "",
        "usdt_contract": "0x55d398326f99059fF775485246999027B3197955",
        "token_decimals": 18,
        "wallet_address": "",
    },
}

_WS_DISABLED_VALUES = frozenset({"", "none", "disabled", "off"})


@dataclass(frozen=True)
class NetworkConfig:
    """Immutable per-network snapshot. http_endpoint is always set; ws_endpoint may be None."""

    network: str
    chain_id: int
    http_endpoint: str
    ws_endpoint: str | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC
    monitoring_enabled: bool = True
    name: str = ""
    backup_http_endpoint: str | None = None
    token_address: str = ""
    token_decimals: int = 6
    native_decimals: int = 18
    platform_wallet: str = ""
    min_confirmations: int = DEFAULT_MIN_CONFIRMATIONS

    def __post_init__(self) -> None:
        if not self.http_endpoint:
            raise ValueError("http_endpoint must be non-empty")


@dataclass(frozen=True)
class NetworkFee:
    """Activation fee expected for a network (supplies a TransferExpectation)."""

    network: str
    token_address: str
    decimals: int
    amount: Decimal
    platform_wallet: str
    token_symbol: str = "USDT"


class SettingsStore(Protocol):
    """External settings/persistence collaborator."""

    def get_blockchain_settings(self) -> Mapping[str, str]: ...

    def get_network_fee(self, network: str) -> NetworkFee | None: ...


class StaticSettingsStore:
    """In-memory SettingsStore; used by the CLI runtime and tests."""

    def __init__(
        self,
        settings: Mapping[str, str] | None = None,
        fees: Mapping[str, NetworkFee] | None = None,
    ) -> None:
        self._settings = dict(settings or {})
        self._fees = dict(fees or {})

    def get_blockchain_settings(self) -> Mapping[str, str]:
        return dict(self._settings)

    def get_network_fee(self, network: str) -> NetworkFee | None:
        return self._fees.get(network)

    def update(self, key: str, value: str) -> None:
        self._settings[key] = value


def _pick(settings: Mapping[str, str], network: str, field: str) -> str:
    """Store value if non-empty, else env, else hardcoded."""
    value = (settings.get(f"{network}_{field}") or "").strip()
    if value:
        return value
    value = get_network_env(network, field)
    if value:
        return value
    return str(_DEFAULTS[network].get(field) or "")


def _parse_timeout(raw: str | None) -> float:
    try:
        ms = int(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_REQUEST_TIMEOUT_SEC
    return ms / 1000.0 if ms > 0 else DEFAULT_REQUEST_TIMEOUT_SEC


def _parse_int(raw: str | None, default: int) -> int:
    try:
        return max(0, int(str(raw).strip()))
    except (TypeError, ValueError):
        return default


def build_network_config(
    network: str,
    settings: Mapping[str, str],
    *,
    monitoring_enabled: bool,
) -> NetworkConfig:
    """Merge store settings over env and hardcoded defaults for one network."""
    ws_url = _pick(settings, network, "ws_url")
    backup = _pick(settings, network, "rpc_backup")
    return NetworkConfig(
        network=network,
        chain_id=int(_DEFAULTS[network]["chain_id"]),
        http_endpoint=_pick(settings, network, "rpc_url"),
        ws_endpoint=None if ws_url.lower() in _WS_DISABLED_VALUES else ws_url,
        request_timeout=_parse_timeout(settings.get("rpc_timeout_ms")),
        monitoring_enabled=monitoring_enabled,
        name=str(_DEFAULTS[network]["name"]),
        backup_http_endpoint=backup or None,
        token_address=_pick(settings, network, "usdt_contract"),
        token_decimals=int(_DEFAULTS[network]["token_decimals"]),
        platform_wallet=_pick(settings, network, "wallet_address"),
        min_confirmations=_parse_int(settings.get("min_confirmations"), DEFAULT_MIN_CONFIRMATIONS),
    )


def build_snapshot(settings: Mapping[str, str], *, fallback: bool = False) -> dict[str, NetworkConfig]:
    """
    Build the full network snapshot. BSC is included only when an RPC URL for it
    is present in the store or the environment. In fallback mode monitoring is on.
    """
    if fallback:
        monitoring = True
    else:
        monitoring = (settings.get("blockchain_monitoring_enabled") or "").strip().lower() == "true"
    snapshot = {
        NETWORK_ETHEREUM: build_network_config(NETWORK_ETHEREUM, settings, monitoring_enabled=monitoring),
    }
    bsc_configured = (settings.get("bsc_rpc_url") or "").strip() or get_network_env(NETWORK_BSC, "rpc_url")
    if bsc_configured:
        snapshot[NETWORK_BSC] = build_network_config(NETWORK_BSC, settings, monitoring_enabled=monitoring)
    return snapshot


class NetworkConfigProvider:
    """
    Time-boxed cache in front of the settings store.

    get_config() is synchronous and never raises for a supported network:
    total failure degrades to the hardcoded fallback, which is then cached so
    a dead store is not retried more than once per freshness window.
    """

    def __init__(
        self,
        store: SettingsStore | None,
        *,
        ttl_sec: float = DEFAULT_CONFIG_CACHE_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_sec
        self._clock = clock
        self._snapshot: dict[str, NetworkConfig] | None = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    def get_config(self, network: str = NETWORK_ETHEREUM) -> NetworkConfig:
        """Return the config for one network; UnsupportedNetworkError if it has none."""
        snapshot = self.get_all()
        try:
            return snapshot[network]
        except KeyError:
            raise UnsupportedNetworkError(network) from None

    def get_all(self) -> dict[str, NetworkConfig]:
        """Return the current snapshot of all configured networks."""
        with self._lock:
            now = self._clock()
            if self._snapshot is not None and (now - self._loaded_at) < self._ttl:
                return dict(self._snapshot)
            self._snapshot = self._reload(now)
            self._loaded_at = now
            return dict(self._snapshot)

    def invalidate(self) -> None:
        """Force the next get_config() to reload from the store."""
        with self._lock:
            self._snapshot = None
            self._loaded_at = 0.0

    def _reload(self, now: float) -> dict[str, NetworkConfig]:
        if self._store is None:
            return build_snapshot({}, fallback=True)
        try:
            raw = self._store.get_blockchain_settings()
            settings = {k: str(v) for k, v in (raw or {}).items() if v not in (None, "")}
            snapshot = build_snapshot(settings)
        except Exception as e:
            if self._snapshot is not None:
                logger.warning("config_reload_failed_using_cache", error=str(e))
                return self._snapshot
            logger.warning("config_reload_failed_using_fallback", error=str(e))
            return build_snapshot({}, fallback=True)
        eth = snapshot[NETWORK_ETHEREUM]
        logger.info(
            "config_loaded",
            networks=sorted(snapshot),
            ethereum_rpc=mask_url(eth.http_endpoint),
            monitoring=eth.monitoring_enabled,
        )
        return snapshot
