"""Market, Asset, PriceQuote - lending market configuration and pool state."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class Asset(BaseModel):
    """Ledger asset identified by currency code and issuing account (None for native)."""

    currency: str
    issuer: str | None = None


class Market(BaseModel):
    """Lending market: one collateral asset, one debt asset, one supply pool."""

    market_id: str
    name: str = ""
    collateral: Asset
    debt: Asset
    max_ltv_ratio: Decimal = Field(..., gt=0, lt=1)
    liquidation_ltv_ratio: Decimal = Field(..., gt=0, le=1)
    base_interest_rate: Decimal = Field(..., ge=0)
    liquidation_penalty: Decimal = Field(Decimal("0.05"), ge=0)
    reserve_factor: Decimal = Field(Decimal("0.1"), ge=0, le=1)
    min_collateral_amount: Decimal = Field(Decimal("0"), ge=0)
    min_borrow_amount: Decimal = Field(Decimal("0"), ge=0)
    min_supply_amount: Decimal = Field(Decimal("5"), ge=0)
    vault_id: str | None = None
    vault_scale: int = Field(6, ge=0, le=18)
    active: bool = True
    # pool aggregates (mutated only through storage.markets helpers)
    global_yield_index: Decimal = Decimal("1")
    total_supplied: Decimal = Decimal("0")
    total_borrowed: Decimal = Decimal("0")
    total_reserves: Decimal = Decimal("0")
    last_index_update: int | None = None  # ms epoch

    @model_validator(mode="after")
    def _check_thresholds(self) -> Market:
        if self.liquidation_ltv_ratio <= self.max_ltv_ratio:
            raise ValueError("liquidation_ltv_ratio must be greater than max_ltv_ratio")
        return self

    @property
    def available_liquidity(self) -> Decimal:
        return max(self.total_supplied - self.total_borrowed, Decimal("0"))


class PriceQuote(BaseModel):
    """USD prices for both sides of a market."""

    market_id: str
    collateral_price_usd: Decimal = Field(..., ge=0)
    debt_price_usd: Decimal = Field(..., ge=0)
    updated_at: int  # ms epoch, oldest of the two sides


class PoolMetrics(BaseModel):
    market_id: str
    total_supplied: Decimal
    total_borrowed: Decimal
    total_reserves: Decimal
    available_liquidity: Decimal
    utilization: Decimal
    borrow_apr: Decimal
    supply_apr: Decimal
    supply_apy: Decimal
    global_yield_index: Decimal
