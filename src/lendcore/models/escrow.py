"""Escrow records backing deposited collateral."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel


class EscrowStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"


class EscrowRecord(BaseModel):
    """One on-ledger escrow: created by the owner, finishable by the protocol with the fulfillment."""

    tx_hash: str
    position_id: str
    market_id: str
    owner: str
    sequence: int
    destination: str
    amount: Decimal
    currency: str
    issuer: str | None = None
    condition: str
    fulfillment: str
    preimage: str
    cancel_after: int | None = None  # ms epoch
    status: EscrowStatus = EscrowStatus.ACTIVE
    created_at: int
    consumed_at: int | None = None
