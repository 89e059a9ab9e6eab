"""
Application-level exceptions.

Only infrastructure failures are raised. Business outcomes of a verification
(not found, reverted, mismatches) are result values, never exceptions.
"""

from __future__ import annotations


class PaywatchError(Exception):
    """Base class for all PayWatch errors."""


class NetworkError(PaywatchError):
    """RPC unreachable, timed out or rate limited. Transient; retry with backoff."""

    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class MalformedResponseError(PaywatchError):
    """Node answered with something that cannot be interpreted. Not retried."""


class SubscriptionDisconnected(PaywatchError):
    """Live subscription lost its connection. Internal: triggers a reconnect."""


class UnsupportedNetworkError(PaywatchError, ValueError):
    """No configuration exists for the requested network."""

    def __init__(self, network: str) -> None:
        super().__init__(f"Unsupported network: {network}")
        self.network = network
