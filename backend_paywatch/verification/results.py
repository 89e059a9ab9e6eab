"""
Verification outcomes.

A verification either fully succeeds (Confirmed) or fails with exactly one
reason. Each variant carries a snake_case ``status`` tag, ``ok`` and a
user-facing ``message``; the wording tells the user which action applies
(wait / send more / retry entirely).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, ClassVar, Union


@dataclass(frozen=True)
class _Outcome:
    status: ClassVar[str] = ""
    ok: ClassVar[bool] = False

    @property
    def message(self) -> str:
        return ""

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly dict: Decimals as strings, plus status/ok/message."""
        out: dict[str, Any] = {"status": self.status, "ok": self.ok, "message": self.message}
        for key, value in asdict(self).items():
            out[key] = str(value) if isinstance(value, Decimal) else value
        return out


@dataclass(frozen=True)
class Confirmed(_Outcome):
    amount: Decimal
    from_address: str
    to_address: str
    block_number: int
    confirmations: int | None = None

    status: ClassVar[str] = "confirmed"
    ok: ClassVar[bool] = True

    @property
    def message(self) -> str:
        return f"Payment of {self.amount} confirmed"


@dataclass(frozen=True)
class AmountMismatch(_Outcome):
    expected: Decimal
    actual: Decimal

    status: ClassVar[str] = "amount_mismatch"

    @property
    def message(self) -> str:
        return f"Insufficient payment. Expected: {self.expected}, Received: {self.actual}"


@dataclass(frozen=True)
class RecipientMismatch(_Outcome):
    expected: str
    found: tuple[str, ...] = ()

    status: ClassVar[str] = "recipient_mismatch"

    @property
    def message(self) -> str:
        return "Invalid payment: no transfer to the expected wallet was found in this transaction"


@dataclass(frozen=True)
class NotFound(_Outcome):
    reason: str = "not_mined"

    status: ClassVar[str] = "not_found"

    @property
    def message(self) -> str:
        if self.reason == "invalid_hash":
            return "Transaction hash is invalid"
        return "Transaction not yet confirmed, please wait and try again"


@dataclass(frozen=True)
class Reverted(_Outcome):
    block_number: int | None = None

    status: ClassVar[str] = "reverted"

    @property
    def message(self) -> str:
        return "Payment failed on-chain; please send a new payment"


@dataclass(frozen=True)
class Pending(_Outcome):
    confirmations: int
    required: int

    status: ClassVar[str] = "pending"

    @property
    def message(self) -> str:
        return (
            f"Insufficient confirmations. Required: {self.required}, "
            f"Current: {self.confirmations}. Please wait for more confirmations."
        )


@dataclass(frozen=True)
class WrongChain(_Outcome):
    expected: int
    actual: int

    status: ClassVar[str] = "wrong_chain"

    @property
    def message(self) -> str:
        return f"Invalid chainId. Expected {self.expected}, got {self.actual}"


VerificationResult = Union[
    Confirmed, AmountMismatch, RecipientMismatch, NotFound, Reverted, Pending, WrongChain
]

# Outcomes where re-checking later can still succeed
RETRYABLE_OUTCOMES: tuple[type, ...] = (NotFound, Pending)
