"""
Data models for EVM JSON-RPC output.

Frozen dataclasses built from raw RPC dicts via from_rpc(); a payload that
cannot be interpreted raises MalformedResponseError so callers can treat it
as not-found / skip instead of retrying.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from backend_paywatch.core.exceptions import MalformedResponseError


class ConnectionKind(str, Enum):
    WEBSOCKET = "websocket"
    HTTP_POLL = "http-poll"


def hex_to_int(value: Any) -> int:
    """Parse a JSON-RPC quantity ("0x1a" or int). Raises ValueError/TypeError."""
    if isinstance(value, bool):
        raise TypeError("bool is not a quantity")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip().lower()
        if s.startswith("0x"):
            return int(s, 16) if len(s) > 2 else 0
        return int(s)
    raise TypeError(f"unsupported quantity type: {type(value).__name__}")


def _opt_int(value: Any) -> int | None:
    return None if value is None else hex_to_int(value)


def _opt_addr(value: Any) -> str | None:
    return value.lower() if isinstance(value, str) and value else None


@dataclass(frozen=True)
class LogEntry:
    """One event log as returned in receipts, eth_getLogs and eth_subscription."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int | None
    tx_hash: str | None
    log_index: int | None
    removed: bool = False

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "LogEntry":
        try:
            return cls(
                address=str(item["address"]).lower(),
                topics=tuple(str(t).lower() for t in item.get("topics") or ()),
                data=str(item.get("data") or "0x"),
                block_number=_opt_int(item.get("blockNumber")),
                tx_hash=_opt_addr(item.get("transactionHash")),
                log_index=_opt_int(item.get("logIndex")),
                removed=bool(item.get("removed", False)),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MalformedResponseError(f"invalid log entry: {e}") from e


@dataclass(frozen=True)
class Receipt:
    """Mined outcome of a transaction (eth_getTransactionReceipt)."""

    tx_hash: str
    status: int
    block_number: int
    logs: tuple[LogEntry, ...]
    from_address: str | None = None
    to_address: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "Receipt":
        if not isinstance(item, dict):
            raise MalformedResponseError("receipt is not an object")
        try:
            # Pre-Byzantium receipts have no status; treat as success
            status = hex_to_int(item["status"]) if item.get("status") is not None else 1
            return cls(
                tx_hash=str(item["transactionHash"]).lower(),
                status=status,
                block_number=hex_to_int(item["blockNumber"]),
                logs=tuple(LogEntry.from_rpc(log) for log in item.get("logs") or ()),
                from_address=_opt_addr(item.get("from")),
                to_address=_opt_addr(item.get("to")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"invalid receipt: {e}") from e


@dataclass(frozen=True)
class Transaction:
    """Submitted transaction (eth_getTransactionByHash); to_address is None for contract creation."""

    tx_hash: str
    from_address: str
    to_address: str | None
    value: int
    chain_id: int | None
    block_number: int | None
    input: str = "0x"

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "Transaction":
        if not isinstance(item, dict):
            raise MalformedResponseError("transaction is not an object")
        try:
            return cls(
                tx_hash=str(item["hash"]).lower(),
                from_address=str(item["from"]).lower(),
                to_address=_opt_addr(item.get("to")),
                value=hex_to_int(item.get("value") or 0),
                chain_id=_opt_int(item.get("chainId")),
                block_number=_opt_int(item.get("blockNumber")),
                input=str(item.get("input") or "0x"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"invalid transaction: {e}") from e


@dataclass(frozen=True)
class DecodedTransfer:
    """A token Transfer event decoded from a log. value is in raw base units."""

    token: str
    from_address: str
    to_address: str
    value: int
    log_index: int | None
    tx_hash: str | None = None
    block_number: int | None = None


@dataclass(frozen=True)
class FeeData:
    """Current fee data in wei. EIP-1559 fields are None on legacy chains."""

    gas_price: int | None
    max_fee_per_gas: int | None
    max_priority_fee_per_gas: int | None
