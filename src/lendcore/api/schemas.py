"""Pydantic schemas for API requests (camelCase on the wire) and OpenAPI docs."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "ok"


# --- Envelope (every lending endpoint) ---
class EnvelopeError(BaseModel):
    code: str = Field(..., description="Machine-readable code, e.g. OPERATION_IN_PROGRESS")
    message: str


class Envelope(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: EnvelopeError | None = None


# --- Borrower ---
class DepositRequest(_Request):
    tx_hash: str | None = None
    user_address: str | None = None
    market_id: str | None = None
    escrow_condition: str | None = None
    escrow_fulfillment: str | None = None
    escrow_preimage: str | None = None
    idempotency_key: str | None = None


class BorrowRequest(_Request):
    user_address: str | None = None
    market_id: str | None = None
    amount: Decimal | str | None = None
    idempotency_key: str | None = None


class RepayRequest(BorrowRequest):
    repay_kind: str = "regular"


class WithdrawRequest(BorrowRequest):
    pass


class LiquidateRequest(_Request):
    market_id: str | None = None
    user_address: str | None = None
    limit: int | None = Field(None, ge=1, le=100)


# --- Lender ---
class SupplyRequest(_Request):
    tx_hash: str | None = None
    user_address: str | None = None
    idempotency_key: str | None = None


class WithdrawSupplyRequest(SupplyRequest):
    amount: Decimal | str | None = None


class CollectYieldRequest(_Request):
    user_address: str | None = None
    idempotency_key: str | None = None


# --- Prices ---
class SetPriceRequest(_Request):
    side: str
    price_usd: Decimal | str
    source: str | None = None
