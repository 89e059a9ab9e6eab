"""
Pending payment poller.

Payments submitted before their transaction was final are stored as pending
by the persistence layer. Each poll re-verifies them: a Confirmed result is
handed to mark_confirmed, NotFound/Pending leave the payment pending, and any
other outcome is terminal and marks it failed with the user-facing message.
Infrastructure errors count as errors and leave the payment pending.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Protocol

from backend_paywatch.core.exceptions import NetworkError, PaywatchError
from backend_paywatch.paywatch_logging import get_logger, short
from backend_paywatch.verification.results import RETRYABLE_OUTCOMES, VerificationResult

logger = get_logger(__name__)

_CHAIN_ID_NETWORKS = {1: "ethereum", 56: "bsc"}


@dataclass(frozen=True)
class PendingPayment:
    """A payment awaiting on-chain confirmation."""

    id: Any
    tx_hash: str
    expected_amount: Decimal
    platform_wallet: str
    network: str = "ethereum"
    token_address: str = ""

    @classmethod
    def from_mapping(cls, item: Mapping[str, Any]) -> "PendingPayment":
        """Accept db rows in snake_case or camelCase; network may be given as chain id."""
        network = item.get("network")
        if not network:
            chain_id = item.get("chain_id", item.get("chainId"))
            network = _CHAIN_ID_NETWORKS.get(int(chain_id), "unknown") if chain_id is not None else "ethereum"
        raw_amount = item.get("expected_amount", item.get("expectedAmount"))
        try:
            amount = Decimal(str(raw_amount))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"invalid expected amount {raw_amount!r}") from e
        return cls(
            id=item["id"],
            tx_hash=str(item.get("tx_hash") or item.get("txHash") or ""),
            expected_amount=amount,
            platform_wallet=str(item.get("platform_wallet") or item.get("platformWallet") or ""),
            network=str(network),
            token_address=str(item.get("token_address") or item.get("tokenAddress") or ""),
        )


class PaymentVerifier(Protocol):
    async def verify_payment(
        self,
        network: str,
        tx_hash: str,
        expected_amount: Decimal | str,
        token_address: str,
        platform_wallet: str,
    ) -> VerificationResult: ...

    def default_token(self, network: str) -> str: ...


class PendingPaymentStore(Protocol):
    """Persistence collaborator; methods may be sync or async."""

    def get_pending_payments(self) -> Any: ...

    def mark_confirmed(self, payment: PendingPayment, result: VerificationResult) -> Any: ...

    def mark_failed(self, payment: PendingPayment, error: str) -> Any: ...


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def check_pending_payment(engine: PaymentVerifier, payment: PendingPayment) -> VerificationResult:
    """Verify one pending payment. NetworkError propagates."""
    token = payment.token_address or engine.default_token(payment.network)
    logger.info(
        "pending_payment_check",
        payment_id=payment.id,
        tx_hash=short(payment.tx_hash, 18),
        network=payment.network,
    )
    return await engine.verify_payment(
        payment.network,
        payment.tx_hash,
        payment.expected_amount,
        token,
        payment.platform_wallet,
    )


async def poll_pending_payments(engine: PaymentVerifier, store: PendingPaymentStore) -> dict[str, int]:
    """
    Re-verify every pending payment once.
    Returns counts {processed, still_pending, rejected, errors}.
    """
    counts = {"processed": 0, "still_pending": 0, "rejected": 0, "errors": 0}
    rows: Iterable[Any] = await _maybe_await(store.get_pending_payments()) or []
    rows = list(rows)
    if not rows:
        logger.info("pending_payments_none")
        return counts
    logger.info("pending_payments_poll_started", count=len(rows))

    for row in rows:
        try:
            payment = row if isinstance(row, PendingPayment) else PendingPayment.from_mapping(row)
        except (KeyError, ValueError) as e:
            counts["errors"] += 1
            logger.warning("pending_payment_invalid_row", error=str(e))
            continue
        try:
            result = await check_pending_payment(engine, payment)
        except NetworkError as e:
            counts["errors"] += 1
            logger.warning("pending_payment_network_error", payment_id=payment.id, error=str(e))
            continue
        except (PaywatchError, ValueError) as e:
            counts["errors"] += 1
            logger.warning("pending_payment_check_failed", payment_id=payment.id, error=str(e))
            continue

        try:
            if result.ok:
                await _maybe_await(store.mark_confirmed(payment, result))
                counts["processed"] += 1
                logger.info("pending_payment_confirmed", payment_id=payment.id, tx_hash=short(payment.tx_hash, 18))
            elif isinstance(result, RETRYABLE_OUTCOMES):
                counts["still_pending"] += 1
                logger.info("pending_payment_still_pending", payment_id=payment.id, status=result.status)
            else:
                await _maybe_await(store.mark_failed(payment, result.message))
                counts["rejected"] += 1
                logger.warning("pending_payment_rejected", payment_id=payment.id, status=result.status)
        except Exception as e:
            counts["errors"] += 1
            logger.exception("pending_payment_store_failed", payment_id=payment.id, error=str(e))

    logger.info("pending_payments_poll_done", **counts)
    return counts
