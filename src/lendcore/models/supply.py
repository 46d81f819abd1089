"""Lender supply position."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class SupplyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class SupplyPosition(BaseModel):
    id: str
    user_address: str
    market_id: str
    status: SupplyStatus = SupplyStatus.ACTIVE
    supply_amount: Decimal = Field(Decimal("0"), ge=0)
    yield_index: Decimal
    last_yield_update: int  # ms epoch
    opened_at: int
    closed_at: int | None = None
