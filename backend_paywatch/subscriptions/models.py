"""
Data models for wallet subscriptions.

SubscriptionHandle is the supervisor's read-only view of one subscription;
TransferObserved is the event pushed into the donation channel for every
matching inbound transfer (delivery is at-least-once: consumers upsert by tx_hash).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Union

from backend_paywatch.evm.models import ConnectionKind

PLATFORM_ENTITY_ID = "platform"

EntityId = Union[int, str]


class SubscriptionStatus(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SubscriptionHandle:
    """Snapshot of one subscription for status() and operational alerting."""

    entity_id: EntityId
    wallet: str
    connection_kind: ConnectionKind
    status: SubscriptionStatus
    last_error: str | None = None
    restarts: int = 0
    reconnects: int = 0
    last_seen_block: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "wallet": self.wallet,
            "connection_kind": self.connection_kind.value,
            "status": self.status.value,
            "last_error": self.last_error,
            "restarts": self.restarts,
            "reconnects": self.reconnects,
            "last_seen_block": self.last_seen_block,
        }


@dataclass(frozen=True)
class TransferObserved:
    """One matching on-chain Transfer to a monitored wallet."""

    entity_id: EntityId
    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    token: str
    block_number: int | None
    log_index: int | None = None
    network: str = "ethereum"
    token_symbol: str = "USDT"
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_donation(self) -> dict[str, Any]:
        """Payload shape handed to on_donation callbacks and persisted by recorders."""
        return {
            "campaign_id": self.entity_id,
            "tx_hash": self.tx_hash,
            "donor_wallet": self.from_address,
            "owner_wallet": self.to_address,
            "amount": str(self.amount),
            "token": self.token_symbol,
            "token_address": self.token,
            "network": self.network,
            "block_number": self.block_number,
            "timestamp": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class MonitoredEntity:
    """An entity (campaign) whose wallet should be watched when active."""

    id: EntityId
    wallet: str
    active: bool = True

    @classmethod
    def from_mapping(cls, item: Mapping[str, Any]) -> "MonitoredEntity":
        """Accept {id, wallet|owner_wallet|ownerWallet, active|status} rows from the API/db layer."""
        wallet = item.get("wallet") or item.get("owner_wallet") or item.get("ownerWallet") or ""
        if "active" in item:
            active = bool(item["active"])
        else:
            active = str(item.get("status", "")).lower() == "active"
        entity_id = item.get("id")
        if entity_id is None or entity_id == "":
            raise ValueError("monitored entity row has no id")
        return cls(id=entity_id, wallet=str(wallet), active=active)


@dataclass(frozen=True)
class StartResult:
    status: str  # "started" | "already_active"
    handle: SubscriptionHandle


@dataclass(frozen=True)
class StartAllResult:
    started: int
    failed: int
    already_active: int = 0
    errors: dict[str, str] = field(default_factory=dict)
