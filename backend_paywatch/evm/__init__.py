"""
EVM chain access: JSON-RPC client, Transfer log decoding and transfer streams.

Everything above this package talks to the chain only through ChainClient.
"""

from backend_paywatch.evm.client import ChainClient
from backend_paywatch.evm.models import (
    ConnectionKind,
    DecodedTransfer,
    FeeData,
    LogEntry,
    Receipt,
    Transaction,
)
from backend_paywatch.evm.parser import (
    decode_transfer_logs,
    format_units,
    is_address,
    is_native_token,
    is_tx_hash,
    normalize_address,
    parse_units,
    to_checksum,
)

__all__ = [
    "ChainClient",
    "ConnectionKind",
    "DecodedTransfer",
    "FeeData",
    "LogEntry",
    "Receipt",
    "Transaction",
    "decode_transfer_logs",
    "format_units",
    "is_address",
    "is_native_token",
    "is_tx_hash",
    "normalize_address",
    "parse_units",
    "to_checksum",
]
