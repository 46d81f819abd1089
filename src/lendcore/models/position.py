"""Borrower position and its derived health metrics."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    LIQUIDATED = "LIQUIDATED"
    CLOSED = "CLOSED"


class Position(BaseModel):
    """Borrower state in one market. Only OPEN positions accept mutations."""

    id: str
    user_address: str
    market_id: str
    status: PositionStatus = PositionStatus.OPEN
    collateral_amount: Decimal = Field(Decimal("0"), ge=0)
    loan_principal: Decimal = Field(Decimal("0"), ge=0)
    interest_accrued: Decimal = Field(Decimal("0"), ge=0)
    interest_rate_at_open: Decimal | None = None
    last_accrual_at: int  # ms epoch
    opened_at: int
    closed_at: int | None = None
    liquidated_at: int | None = None

    @property
    def total_debt(self) -> Decimal:
        return self.loan_principal + self.interest_accrued

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


class PositionMetrics(BaseModel):
    """Valuation of a position at current prices. health_factor None means no debt."""

    total_debt: Decimal
    collateral_value_usd: Decimal
    debt_value_usd: Decimal
    current_ltv: Decimal | None
    health_factor: Decimal | None
    liquidatable: bool
    max_borrowable_amount: Decimal
    max_withdrawable_amount: Decimal
    available_liquidity: Decimal


class PositionView(BaseModel):
    position: Position
    metrics: PositionMetrics | None = None
