"""
Wallet subscriptions: per-entity live transfer watches and their supervisor.

Each active campaign wallet (plus the platform wallet) gets one
WalletSubscription; SubscriptionSupervisor is the only component that
creates, stops or restarts them.
"""

from backend_paywatch.subscriptions.models import (
    PLATFORM_ENTITY_ID,
    MonitoredEntity,
    StartAllResult,
    StartResult,
    SubscriptionHandle,
    SubscriptionStatus,
    TransferObserved,
)
from backend_paywatch.subscriptions.reconcile import ReconciliationSweep
from backend_paywatch.subscriptions.supervisor import SubscriptionSupervisor
from backend_paywatch.subscriptions.wallet_subscription import WalletSubscription

__all__ = [
    "PLATFORM_ENTITY_ID",
    "MonitoredEntity",
    "ReconciliationSweep",
    "StartAllResult",
    "StartResult",
    "SubscriptionHandle",
    "SubscriptionStatus",
    "SubscriptionSupervisor",
    "TransferObserved",
    "WalletSubscription",
]
