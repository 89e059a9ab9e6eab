"""
Transfer verification: does a transaction pay the expected amount to the expected wallet?

Order of checks (each short-circuits):
1. invalid hash / no receipt      -> NotFound
2. receipt status failed          -> Reverted
3. fewer than min confirmations   -> Pending
4. transaction on another chain   -> WrongChain
5. no transfer to the recipient   -> RecipientMismatch
6. amount below 99% of expected   -> AmountMismatch
otherwise                         -> Confirmed

Business outcomes are return values. Only NetworkError (after the client's
retries) escapes to the caller; malformed node answers are treated as NotFound.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from backend_paywatch.core.exceptions import MalformedResponseError
from backend_paywatch.evm.models import DecodedTransfer, Receipt, Transaction
from backend_paywatch.evm.parser import (
    addresses_equal,
    format_units,
    is_native_token,
    is_tx_hash,
)
from backend_paywatch.paywatch_logging import get_logger, short
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

logger = get_logger(__name__)

# One-sided: accept >= 99% of the expected amount to absorb unit-conversion rounding
AMOUNT_TOLERANCE = Decimal("0.01")


class ReceiptSource(Protocol):
    async def get_receipt(self, tx_hash: str) -> Receipt | None: ...

    async def get_transaction(self, tx_hash: str) -> Transaction | None: ...

    async def latest_block_number(self) -> int: ...

    def decode_transfer_logs(self, receipt: Receipt, token_address: str) -> list[DecodedTransfer]: ...


@dataclass(frozen=True)
class TransferExpectation:
    """Criteria a transaction must satisfy to count as a valid payment."""

    token: str
    recipient: str
    min_amount: Decimal
    decimals: int

    def __post_init__(self) -> None:
        if self.decimals < 0:
            raise ValueError("decimals must be >= 0")
        if self.min_amount < 0:
            raise ValueError("min_amount must be >= 0")


def meets_amount(actual: Decimal, expected: Decimal) -> bool:
    return actual >= expected * (Decimal(1) - AMOUNT_TOLERANCE)


class TransferVerifier:
    """
    Stateless verifier over a chain client; safe to share between concurrent requests.

    min_confirmations: blocks that must be mined on top of the receipt's block
        (0 disables the check).
    expected_chain_id: when set, a transaction carrying a different chainId is
        rejected (replay protection). Legacy transactions without chainId pass.
    """

    def __init__(
        self,
        client: ReceiptSource,
        *,
        min_confirmations: int = 0,
        expected_chain_id: int | None = None,
    ) -> None:
        self._client = client
        self._min_confirmations = max(0, min_confirmations)
        self._expected_chain_id = expected_chain_id

    async def verify(self, tx_hash: str, expectation: TransferExpectation) -> VerificationResult:
        result = await self._verify(tx_hash, expectation)
        log = logger.info if result.ok else logger.warning
        log(
            "verify_" + result.status,
            tx_hash=short(tx_hash, 18),
            recipient=short(expectation.recipient),
            expected=str(expectation.min_amount),
        )
        return result

    async def _verify(self, tx_hash: str, expectation: TransferExpectation) -> VerificationResult:
        if not is_tx_hash(tx_hash):
            return NotFound(reason="invalid_hash")
        tx_hash = tx_hash.lower()
        try:
            receipt = await self._client.get_receipt(tx_hash)
        except MalformedResponseError as e:
            logger.warning("verify_receipt_malformed", tx_hash=short(tx_hash, 18), error=str(e))
            return NotFound(reason="malformed_receipt")
        if receipt is None:
            return NotFound()
        if not receipt.succeeded:
            return Reverted(block_number=receipt.block_number)

        confirmations: int | None = None
        if self._min_confirmations:
            latest = await self._client.latest_block_number()
            # Blocks mined on top of the inclusion block
            confirmations = max(0, latest - receipt.block_number)
            if confirmations < self._min_confirmations:
                return Pending(confirmations=confirmations, required=self._min_confirmations)

        tx: Transaction | None = None
        native = is_native_token(expectation.token)
        if native or self._expected_chain_id is not None:
            try:
                tx = await self._client.get_transaction(tx_hash)
            except MalformedResponseError as e:
                logger.warning("verify_tx_malformed", tx_hash=short(tx_hash, 18), error=str(e))
                return NotFound(reason="malformed_transaction")
            if tx is None:
                return NotFound()
            if (
                self._expected_chain_id is not None
                and tx.chain_id is not None
                and tx.chain_id != self._expected_chain_id
            ):
                return WrongChain(expected=self._expected_chain_id, actual=tx.chain_id)

        if native:
            if tx is None:
                return NotFound()
            return self._check_native(tx, receipt, expectation, confirmations)
        return self._check_token(receipt, expectation, confirmations)

    def _check_token(
        self,
        receipt: Receipt,
        expectation: TransferExpectation,
        confirmations: int | None,
    ) -> VerificationResult:
        transfers = self._client.decode_transfer_logs(receipt, expectation.token)
        matched = [t for t in transfers if addresses_equal(t.to_address, expectation.recipient)]
        if not matched:
            return RecipientMismatch(
                expected=expectation.recipient.lower(),
                found=tuple(t.to_address for t in transfers),
            )
        # Several transfers to the recipient in one tx: the largest one decides
        best = max(matched, key=lambda t: t.value)
        actual = format_units(best.value, expectation.decimals)
        if not meets_amount(actual, expectation.min_amount):
            return AmountMismatch(expected=expectation.min_amount, actual=actual)
        return Confirmed(
            amount=actual,
            from_address=best.from_address,
            to_address=best.to_address,
            block_number=receipt.block_number,
            confirmations=confirmations,
        )

    def _check_native(
        self,
        tx: Transaction,
        receipt: Receipt,
        expectation: TransferExpectation,
        confirmations: int | None,
    ) -> VerificationResult:
        if not addresses_equal(tx.to_address, expectation.recipient):
            return RecipientMismatch(
                expected=expectation.recipient.lower(),
                found=(tx.to_address,) if tx.to_address else (),
            )
        actual = format_units(tx.value, expectation.decimals)
        if not meets_amount(actual, expectation.min_amount):
            return AmountMismatch(expected=expectation.min_amount, actual=actual)
        return Confirmed(
            amount=actual,
            from_address=tx.from_address,
            to_address=tx.to_address or "",
            block_number=receipt.block_number,
            confirmations=confirmations,
        )
