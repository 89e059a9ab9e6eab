"""
ERC-20 Transfer log decoding, address helpers and unit conversion.

Transfer(address indexed from, address indexed to, uint256 value):
- topics[0]: event signature hash
- topics[1]: from (indexed, left-padded to 32 bytes)
- topics[2]: to (indexed, left-padded to 32 bytes)
- data: value (uint256)

Logs that do not decode as a token Transfer are skipped, never raised:
unrelated and malformed logs are expected in real receipts.
"""

from __future__ import annotations

import re
from dataclasses import replace
from decimal import Decimal, localcontext
from typing import Iterable

from eth_utils import is_hex_address, to_checksum_address

from backend_paywatch.evm.models import DecodedTransfer, LogEntry, Receipt

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
# Token identifiers that denote the chain's native asset instead of an ERC-20 contract
NATIVE_TOKEN_ALIASES = frozenset({"", "native", "eth", "bnb", ZERO_ADDRESS})

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_UINT256_DATA_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
# uint256 needs 78 significant digits
_UNIT_PRECISION = 90


def is_address(value: str | None) -> bool:
    return bool(value) and is_hex_address(value)


def normalize_address(value: str) -> str:
    """Lowercase 0x address; ValueError if not a 20-byte hex address."""
    if not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


def to_checksum(value: str) -> str:
    """EIP-55 checksummed form of an address (for display and event payloads)."""
    return to_checksum_address(normalize_address(value))


def addresses_equal(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def is_tx_hash(value: str | None) -> bool:
    return bool(value) and bool(_TX_HASH_RE.match(value))


def is_native_token(token: str | None) -> bool:
    return (token or "").strip().lower() in NATIVE_TOKEN_ALIASES


def address_to_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic for log filters."""
    return "0x" + normalize_address(address)[2:].rjust(64, "0")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def format_units(raw: int, decimals: int) -> Decimal:
    """Raw integer base units to a Decimal amount (1_000_000 at 6 decimals -> 1)."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    with localcontext() as ctx:
        ctx.prec = _UNIT_PRECISION
        return Decimal(int(raw)) / (Decimal(10) ** decimals)


def parse_units(amount: Decimal | str | int, decimals: int) -> int:
    """Decimal amount to raw base units; ValueError if it has more precision than decimals."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    with localcontext() as ctx:
        ctx.prec = _UNIT_PRECISION
        scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{amount} has more than {decimals} decimal places")
        return int(scaled)


def decode_transfer_log(log: LogEntry) -> DecodedTransfer | None:
    """Decode one log as an ERC-20 Transfer; None if it is anything else."""
    if len(log.topics) != 3 or log.topics[0] != TRANSFER_TOPIC:
        # ERC-721 Transfer has 4 topics (tokenId indexed); not a fungible transfer
        return None
    if not _UINT256_DATA_RE.match(log.data):
        return None
    return DecodedTransfer(
        token=log.address,
        from_address=topic_to_address(log.topics[1]),
        to_address=topic_to_address(log.topics[2]),
        value=int(log.data, 16),
        log_index=log.log_index,
        tx_hash=log.tx_hash,
        block_number=log.block_number,
    )


def decode_transfers(logs: Iterable[LogEntry], token_address: str) -> list[DecodedTransfer]:
    """Decode all Transfer logs emitted by token_address, skipping everything else."""
    token = token_address.lower()
    out: list[DecodedTransfer] = []
    for log in logs:
        if log.removed or log.address != token:
            continue
        transfer = decode_transfer_log(log)
        if transfer is not None:
            out.append(transfer)
    return out


def decode_transfer_logs(receipt: Receipt, token_address: str) -> list[DecodedTransfer]:
    """Decode the receipt's Transfer logs for one token contract."""
    transfers = decode_transfers(receipt.logs, token_address)
    # Receipt logs may omit block/hash per log; fill them from the receipt
    return [
        replace(
            t,
            tx_hash=t.tx_hash or receipt.tx_hash,
            block_number=t.block_number if t.block_number is not None else receipt.block_number,
        )
        for t in transfers
    ]
