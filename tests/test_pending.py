"""
Pending payment polling: confirmed, still pending, rejected and errored payments.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest


class ScriptedEngine:
    """verify_payment double returning a scripted outcome per tx hash."""

    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = []

    async def verify_payment(self, network, tx_hash, expected_amount, token_address, platform_wallet):
        self.calls.append((network, tx_hash, expected_amount, token_address, platform_wallet))
        outcome = self.outcomes[tx_hash]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def default_token(self, network):
        return "0xdac17f958d2ee523a2206206994597c13d831ec7"


class MemoryStore:
    def __init__(self, rows):
        self.rows = rows
        self.confirmed = []
        self.failed = []

    async def get_pending_payments(self):
        return list(self.rows)

    def mark_confirmed(self, payment, result):
        self.confirmed.append(payment.id)

    def mark_failed(self, payment, error):
        self.failed.append((payment.id, error))


def _row(payment_id, tx_hash, **extra):
    row = {
        "id": payment_id,
        "txHash": tx_hash,
        "expectedAmount": "50",
        "platformWallet": "0x21e1f57a753fE27F7d8068002F65e8a830E2e6A8",
        "chainId": 1,
    }
    row.update(extra)
    return row


def test_poll_classifies_every_outcome():
    from backend_paywatch.core.exceptions import NetworkError
    from backend_paywatch.verification import (
        AmountMismatch,
        Confirmed,
        NotFound,
        Pending,
        poll_pending_payments,
    )

    engine = ScriptedEngine(
        {
            "0xa": Confirmed(amount=Decimal("50"), from_address="0x1", to_address="0x2", block_number=1),
            "0xb": NotFound(),
            "0xc": Pending(confirmations=1, required=3),
            "0xd": AmountMismatch(expected=Decimal("50"), actual=Decimal("40")),
            "0xe": NetworkError("rpc down"),
        }
    )
    store = MemoryStore([_row(i, h) for i, h in enumerate(["0xa", "0xb", "0xc", "0xd", "0xe"], start=1)])

    counts = asyncio.run(poll_pending_payments(engine, store))

    assert counts == {"processed": 1, "still_pending": 2, "rejected": 1, "errors": 1}
    assert store.confirmed == [1]
    assert store.failed == [(4, "Insufficient payment. Expected: 50, Received: 40")]


def test_poll_with_no_pending_payments():
    from backend_paywatch.verification import poll_pending_payments

    counts = asyncio.run(poll_pending_payments(ScriptedEngine({}), MemoryStore([])))
    assert counts == {"processed": 0, "still_pending": 0, "rejected": 0, "errors": 0}


def test_invalid_rows_count_as_errors():
    from backend_paywatch.verification import poll_pending_payments

    store = MemoryStore([{"txHash": "0xa"}, _row(2, "0xb", expectedAmount="lots")])
    counts = asyncio.run(poll_pending_payments(ScriptedEngine({}), store))
    assert counts["errors"] == 2


def test_check_uses_default_token_and_network_from_chain_id():
    from backend_paywatch.verification import NotFound, PendingPayment, check_pending_payment

    engine = ScriptedEngine({"0xa": NotFound()})
    payment = PendingPayment.from_mapping(_row(1, "0xa"))
    result = asyncio.run(check_pending_payment(engine, payment))

    assert isinstance(result, NotFound)
    network, tx_hash, amount, token, wallet = engine.calls[0]
    assert network == "ethereum"
    assert amount == Decimal("50")
    assert token == "0xdac17f958d2ee523a2206206994597c13d831ec7"


def test_pending_payment_from_mapping_snake_case():
    from backend_paywatch.verification import PendingPayment

    payment = PendingPayment.from_mapping(
        {
            "id": 9,
            "tx_hash": "0xabc",
            "expected_amount": 12.5,
            "platform_wallet": "0x" + "22" * 20,
            "network": "bsc",
            "token_address": "0x" + "55" * 20,
        }
    )
    assert payment.network == "bsc"
    assert payment.expected_amount == Decimal("12.5")
    assert payment.token_address == "0x" + "55" * 20


def test_store_failure_counts_as_error():
    from backend_paywatch.verification import Confirmed, poll_pending_payments

    class BrokenStore(MemoryStore):
        def mark_confirmed(self, payment, result):
            raise RuntimeError("db write failed")

    engine = ScriptedEngine(
        {"0xa": Confirmed(amount=Decimal("50"), from_address="0x1", to_address="0x2", block_number=1)}
    )
    counts = asyncio.run(poll_pending_payments(engine, BrokenStore([_row(1, "0xa")])))
    assert counts["errors"] == 1
    assert counts["processed"] == 0


@pytest.mark.parametrize("chain_id,network", [(1, "ethereum"), (56, "bsc"), (137, "unknown")])
def test_chain_id_maps_to_network(chain_id, network):
    from backend_paywatch.verification import PendingPayment

    payment = PendingPayment.from_mapping(_row(1, "0xa", chainId=chain_id))
    assert payment.network == network
