"""Lending event log entries."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Operation(str, Enum):
    DEPOSIT = "DEPOSIT"
    BORROW = "BORROW"
    REPAY = "REPAY"
    WITHDRAW = "WITHDRAW"
    SUPPLY = "SUPPLY"
    WITHDRAW_SUPPLY = "WITHDRAW_SUPPLY"
    COLLECT_YIELD = "COLLECT_YIELD"
    LIQUIDATE = "LIQUIDATE"
    RECONCILE_ESCROW = "RECONCILE_ESCROW"


class EventStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LendingEvent(BaseModel):
    """One attempt at a mutation. PENDING on entry, resolved exactly once."""

    id: int
    event_type: Operation
    status: EventStatus
    user_address: str
    market_id: str
    position_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    idempotency_key: str | None = None
    params_hash: str | None = None
    tx_hash: str | None = None
    # ledger submission a failed attempt left unconfirmed; a keyed retry resolves it
    pending_tx_hash: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    created_at: int
    resolved_at: int | None = None
