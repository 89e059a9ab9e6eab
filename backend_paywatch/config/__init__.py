"""
Configuration management for Backend PayWatch.

Runtime knobs come from environment variables (.env supported); per-network
RPC settings come from the external settings store through
NetworkConfigProvider, with env and hardcoded fallbacks.
"""

from backend_paywatch.config.networks import (  # noqa: F401
    NetworkConfig,
    NetworkConfigProvider,
    SettingsStore,
    StaticSettingsStore,
)
from backend_paywatch.config.settings import AppSettings, get_settings  # noqa: F401

__all__ = [
    "AppSettings",
    "NetworkConfig",
    "NetworkConfigProvider",
    "SettingsStore",
    "StaticSettingsStore",
    "get_settings",
]
