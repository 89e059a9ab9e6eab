"""
Core cross-cutting pieces shared by the chain client, verifier and subscriptions.

Holds the exception taxonomy; structured logging lives in paywatch_logging.
"""

from backend_paywatch.core.exceptions import (
    MalformedResponseError,
    NetworkError,
    PaywatchError,
    SubscriptionDisconnected,
    UnsupportedNetworkError,
)

__all__ = [
    "MalformedResponseError",
    "NetworkError",
    "PaywatchError",
    "SubscriptionDisconnected",
    "UnsupportedNetworkError",
]
