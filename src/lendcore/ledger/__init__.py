"""Ledger gateway: transaction lookup, escrow objects and submissions."""

from lendcore.ledger.base import (
    EscrowObject,
    LedgerAmount,
    LedgerGateway,
    LedgerTransaction,
    Signer,
    is_valid_address,
    normalize_currency,
)

__all__ = [
    "EscrowObject",
    "LedgerAmount",
    "LedgerGateway",
    "LedgerTransaction",
    "Signer",
    "is_valid_address",
    "normalize_currency",
]
