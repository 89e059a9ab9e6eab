"""
Environment variable loading for PayWatch.

- ETH_RPC_URL / ETH_RPC_BACKUP / ETH_WS_URL: Ethereum endpoints
- BSC_RPC_URL / BSC_WS_URL: BNB Smart Chain endpoints (BSC enabled only if set)
- PLATFORM_WALLET_ETH / PLATFORM_WALLET_BSC: platform receiving wallets
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

# Project root: config is backend_paywatch/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

# env var name per (network, field)
_ENV_KEYS: dict[str, dict[str, str]] = {
    "ethereum": {
        "rpc_url": "ETH_RPC_URL",
        "rpc_backup": "ETH_RPC_BACKUP",
        "ws_url": "ETH_WS_URL",
        "wallet_address": "PLATFORM_WALLET_ETH",
        "usdt_contract": "ETH_USDT_CONTRACT",
    },
    "bsc": {
        "rpc_url": "BSC_RPC_URL",
        "rpc_backup": "BSC_RPC_BACKUP",
        "ws_url": "BSC_WS_URL",
        "wallet_address": "PLATFORM_WALLET_BSC",
        "usdt_contract": "BSC_USDT_CONTRACT",
    },
}


def load_paywatch_env() -> None:
    """Load .env from project root. Safe to call multiple times."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH)


def get_network_env(network: str, field: str) -> str:
    """
    Return the env fallback for a network field ("" when unset).

    Example: get_network_env("ethereum", "rpc_url") reads ETH_RPC_URL.
    """
    load_paywatch_env()
    key = _ENV_KEYS.get(network, {}).get(field)
    if key is None:
        return ""
    return (os.getenv(key) or "").strip()


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def mask_url(url: str) -> str:
    """Mask API keys embedded in RPC URLs before logging."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    if "/v3/" in url:
        return url.split("/v3/")[0] + "/v3/***"
    return url
