"""FastAPI layer over LendingService: one route per operation, uniform envelope."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lendcore.api.schemas import (
    BorrowRequest,
    CollectYieldRequest,
    DepositRequest,
    Envelope,
    HealthResponse,
    LiquidateRequest,
    RepayRequest,
    SetPriceRequest,
    SupplyRequest,
    WithdrawRequest,
    WithdrawSupplyRequest,
)
from lendcore.config import get_settings
from lendcore.errors import ErrorCategory, ErrorCode, category_of
from lendcore.lending.service import LendingService
from lendcore.models import OperationResult
from lendcore.runtime import open_service

# Set by run_api() so lifespan loads the same config as the CLI.
_config_profile: str | None = None
_config_dir: Path | None = None

_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.STATE_CONFLICT: 409,
    ErrorCategory.BUSINESS_RULE: 422,
    ErrorCategory.EXTERNAL: 502,
    ErrorCategory.INTERNAL: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A service injected before startup (tests, embedding) is used as-is.
    if getattr(app.state, "service", None) is not None:
        yield
        return
    async with open_service(get_settings(_config_profile, _config_dir)) as service:
        app.state.service = service
        try:
            yield
        finally:
            app.state.service = None


app = FastAPI(title="lendcore API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def _service(request: Request) -> LendingService:
    return request.app.state.service


def _status_for(code: str) -> int:
    try:
        return _STATUS[category_of(ErrorCode(code))]
    except ValueError:
        return 500


def _envelope(result: OperationResult) -> JSONResponse:
    """Envelope body; HTTP status derived from the error category."""
    status_code = 200 if result.success or result.error is None else _status_for(result.error.code)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


# --- Borrower ---


@app.post("/lending/deposit", response_model=Envelope)
async def deposit(body: DepositRequest, request: Request, idempotency_key: str | None = Header(None)):
    result = await _service(request).deposit_collateral(
        body.tx_hash,
        body.user_address,
        body.market_id,
        body.escrow_condition,
        body.escrow_fulfillment,
        body.escrow_preimage,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return _envelope(result)


@app.post("/lending/borrow", response_model=Envelope)
async def borrow(body: BorrowRequest, request: Request, idempotency_key: str | None = Header(None)):
    result = await _service(request).borrow(
        body.user_address, body.market_id, body.amount, idempotency_key=body.idempotency_key or idempotency_key
    )
    return _envelope(result)


@app.post("/lending/repay", response_model=Envelope)
async def repay(body: RepayRequest, request: Request, idempotency_key: str | None = Header(None)):
    result = await _service(request).repay(
        body.user_address,
        body.market_id,
        body.amount,
        body.repay_kind,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return _envelope(result)


@app.post("/lending/withdraw", response_model=Envelope)
async def withdraw(body: WithdrawRequest, request: Request, idempotency_key: str | None = Header(None)):
    result = await _service(request).withdraw_collateral(
        body.user_address, body.market_id, body.amount, idempotency_key=body.idempotency_key or idempotency_key
    )
    return _envelope(result)


@app.post("/lending/liquidate", response_model=Envelope)
async def liquidate(body: LiquidateRequest, request: Request):
    return _envelope(await _service(request).liquidate(body.market_id, body.user_address, body.limit))


# Every route is async so all access to the shared DuckDB connection stays on the event loop thread.
@app.get("/lending/position", response_model=Envelope)
async def position(request: Request, user_address: str = Query(..., alias="userAddress"), market_id: str = Query(..., alias="marketId")):
    return _envelope(_service(request).get_position(user_address, market_id))


@app.get("/lending/repay-quote", response_model=Envelope)
async def repay_quote(request: Request, user_address: str = Query(..., alias="userAddress"), market_id: str = Query(..., alias="marketId")):
    return _envelope(_service(request).quote_repayment(user_address, market_id))


@app.get("/lending/events", response_model=Envelope)
async def events(
    request: Request,
    user_address: str | None = Query(None, alias="userAddress"),
    market_id: str | None = Query(None, alias="marketId"),
    position_id: str | None = Query(None, alias="positionId"),
    limit: int = Query(100, ge=1, le=500),
):
    return _envelope(_service(request).list_events(user_address, market_id, position_id, limit))


# --- Markets and lenders ---


@app.get("/markets", response_model=Envelope)
async def markets_list(request: Request):
    return _envelope(_service(request).list_markets())


@app.get("/markets/{market_id}", response_model=Envelope)
async def market_detail(market_id: str, request: Request):
    return _envelope(_service(request).get_market(market_id))


@app.get("/markets/{market_id}/pool", response_model=Envelope)
async def pool_metrics(market_id: str, request: Request):
    return _envelope(_service(request).get_pool_metrics(market_id))


@app.get("/markets/{market_id}/prices", response_model=Envelope)
async def prices(market_id: str, request: Request):
    return _envelope(_service(request).get_prices(market_id))


@app.put("/markets/{market_id}/prices", response_model=Envelope)
async def set_price(market_id: str, body: SetPriceRequest, request: Request):
    return _envelope(_service(request).set_price(market_id, body.side, body.price_usd, body.source))


@app.post("/markets/{market_id}/supply", response_model=Envelope)
async def supply(market_id: str, body: SupplyRequest, request: Request, idempotency_key: str | None = Header(None)):
    result = await _service(request).supply(
        body.tx_hash, body.user_address, market_id, idempotency_key=body.idempotency_key or idempotency_key
    )
    return _envelope(result)


@app.post("/markets/{market_id}/withdraw-supply", response_model=Envelope)
async def withdraw_supply(
    market_id: str, body: WithdrawSupplyRequest, request: Request, idempotency_key: str | None = Header(None)
):
    result = await _service(request).withdraw_supply(
        body.tx_hash,
        body.user_address,
        market_id,
        body.amount,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return _envelope(result)


@app.post("/markets/{market_id}/collect-yield", response_model=Envelope)
async def collect_yield(
    market_id: str, body: CollectYieldRequest, request: Request, idempotency_key: str | None = Header(None)
):
    result = await _service(request).collect_yield(
        body.user_address, market_id, idempotency_key=body.idempotency_key or idempotency_key
    )
    return _envelope(result)


@app.get("/markets/{market_id}/supply-position", response_model=Envelope)
async def supply_position(market_id: str, request: Request, user_address: str = Query(..., alias="userAddress")):
    return _envelope(_service(request).get_supply_position(user_address, market_id))


@app.post("/markets/{market_id}/reconcile-escrows", response_model=Envelope)
async def reconcile_escrows(market_id: str, request: Request):
    return _envelope(await _service(request).reconcile_expired_escrows(market_id))


def run_api(
    host: str = "127.0.0.1", port: int = 8000, profile: str | None = None, config_dir: Path | None = None
) -> None:
    global _config_profile, _config_dir
    _config_profile = profile
    _config_dir = config_dir
    import uvicorn
    uvicorn.run("lendcore.api.main:app", host=host, port=port, reload=False)
