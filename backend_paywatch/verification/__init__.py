"""
Payment verification: decide whether a claimed transaction satisfies an expected transfer.
"""

from backend_paywatch.verification.pending import (
    PendingPayment,
    PendingPaymentStore,
    check_pending_payment,
    poll_pending_payments,
)
from backend_paywatch.verification.results import (
    AmountMismatch,
    Confirmed,
    NotFound,
    Pending,
    RecipientMismatch,
    Reverted,
    VerificationResult,
    WrongChain,
)
from backend_paywatch.verification.verifier import TransferExpectation, TransferVerifier

__all__ = [
    "AmountMismatch",
    "Confirmed",
    "NotFound",
    "Pending",
    "PendingPayment",
    "PendingPaymentStore",
    "RecipientMismatch",
    "Reverted",
    "TransferExpectation",
    "TransferVerifier",
    "VerificationResult",
    "WrongChain",
    "check_pending_payment",
    "poll_pending_payments",
]
