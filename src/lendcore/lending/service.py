"""LendingService - the operation surface of the lending core.

Every public coroutine validates its request, runs the mutation through the
concurrency guard and returns an OperationResult envelope; nothing raises past
this boundary.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import structlog

from lendcore.errors import ErrorCode, LendingError
from lendcore.ledger.base import LedgerGateway, is_valid_address
from lendcore.lending.bridge import EscrowBridge
from lendcore.lending.guard import ConcurrencyGuard
from lendcore.lending.liquidation import DEFAULT_BATCH_LIMIT, LiquidationEngine
from lendcore.lending.pool import SupplyPool
from lendcore.lending.positions import PositionLedger
from lendcore.lending.registry import Clock, MarketRegistry, PriceFeed, wall_clock_ms
from lendcore.lending.repayment import DEFAULT_BUFFER_RATE, DEFAULT_REPAY_DECIMALS, DEFAULT_TERM_MONTHS, RepayKind
from lendcore.models import Operation, OperationResult
from lendcore.storage import event_log as event_store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

    from lendcore.config import Settings

log = structlog.get_logger(__name__)


def canonical(value: Decimal) -> str:
    """Decimal as a plain string without trailing zeros ("70.0" and "70" agree)."""
    return format(value.normalize(), "f")


def parse_amount(value: Any) -> Decimal:
    if value is None or value == "":
        raise LendingError(ErrorCode.MISSING_AMOUNT, "amount is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise LendingError(ErrorCode.INVALID_AMOUNT, f"amount is not a number: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise LendingError(ErrorCode.INVALID_AMOUNT, "amount must be greater than zero")
    return amount


def require_address(value: str | None) -> str:
    if not value:
        raise LendingError(ErrorCode.MISSING_USER_ADDRESS, "userAddress is required")
    if not is_valid_address(value):
        raise LendingError(ErrorCode.INVALID_ADDRESS, f"Not a valid ledger address: {value}")
    return value


def require_market_id(value: str | None) -> str:
    if not value:
        raise LendingError(ErrorCode.MISSING_MARKET_ID, "marketId is required")
    return value


def require_tx_hash(value: str | None) -> str:
    if not value:
        raise LendingError(ErrorCode.MISSING_TX_HASH, "txHash is required")
    return value.upper()


class LendingService:
    """Wires registry, prices, bridge, guard, positions, pool and liquidations."""

    def __init__(
        self,
        conn: DuckDBPyConnection,
        ledger: LedgerGateway,
        *,
        custody_address: str,
        clock: Clock = wall_clock_ms,
        repay_buffer_rate: Decimal = DEFAULT_BUFFER_RATE,
        repay_decimals: int = DEFAULT_REPAY_DECIMALS,
        loan_term_months: int = DEFAULT_TERM_MONTHS,
        liquidation_batch_limit: int = DEFAULT_BATCH_LIMIT,
        max_price_age_sec: int = 0,
    ):
        self.conn = conn
        self.ledger = ledger
        self.clock = clock
        self.registry = MarketRegistry(conn)
        self.prices = PriceFeed(conn, clock, max_price_age_sec)
        self.guard = ConcurrencyGuard(conn, clock)
        self.bridge = EscrowBridge(conn, ledger, custody_address, clock)
        self.pool = SupplyPool(conn, self.registry, self.bridge, self.guard, clock)
        self.positions = PositionLedger(
            conn,
            self.registry,
            self.prices,
            self.bridge,
            self.pool,
            clock,
            repay_buffer_rate=repay_buffer_rate,
            repay_decimals=repay_decimals,
            loan_term_months=loan_term_months,
        )
        self.liquidations = LiquidationEngine(
            conn, self.registry, self.prices, self.positions, self.guard, liquidation_batch_limit
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, conn: DuckDBPyConnection, ledger: LedgerGateway, clock: Clock = wall_clock_ms
    ) -> LendingService:
        return cls(
            conn,
            ledger,
            custody_address=settings.custody_address,
            clock=clock,
            repay_buffer_rate=settings.repay_buffer_rate,
            repay_decimals=settings.repay_decimals,
            loan_term_months=settings.loan_term_months,
            liquidation_batch_limit=settings.liquidation_batch_limit,
            max_price_age_sec=settings.max_price_age_sec,
        )

    # --- collateral and debt ---

    async def deposit_collateral(
        self,
        tx_hash: str | None,
        user_address: str | None,
        market_id: str | None,
        escrow_condition: str | None = None,
        escrow_fulfillment: str | None = None,
        escrow_preimage: str | None = None,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            tx = require_tx_hash(tx_hash)
            user = require_address(user_address)
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.DEPOSIT,
            user,
            mid,
            lambda _pending: self.positions.deposit(
                user, mid, tx, escrow_condition, escrow_fulfillment, escrow_preimage
            ),
            idempotency_key=idempotency_key,
            params={"txHash": tx, "condition": escrow_condition, "fulfillment": escrow_fulfillment},
            currency=market.collateral.currency,
            tx_hash=tx,
        )

    async def borrow(
        self,
        user_address: str | None,
        market_id: str | None,
        amount: Any,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            value = parse_amount(amount)
            user = require_address(user_address)
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.BORROW,
            user,
            mid,
            lambda pending_tx: self.positions.borrow(user, mid, value, pending_tx),
            idempotency_key=idempotency_key,
            params={"amount": canonical(value)},
            amount=value,
            currency=market.debt.currency,
        )

    async def repay(
        self,
        user_address: str | None,
        market_id: str | None,
        amount: Any,
        repay_kind: str | RepayKind | None = RepayKind.REGULAR,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            value = parse_amount(amount)
            user = require_address(user_address)
            mid = require_market_id(market_id)
            kind = RepayKind.parse(repay_kind)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.REPAY,
            user,
            mid,
            lambda pending_tx: self.positions.repay(user, mid, value, kind, pending_tx),
            idempotency_key=idempotency_key,
            params={"amount": canonical(value), "repayKind": kind.value},
            amount=value,
            currency=market.debt.currency,
        )

    async def withdraw_collateral(
        self,
        user_address: str | None,
        market_id: str | None,
        amount: Any,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            value = parse_amount(amount)
            user = require_address(user_address)
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.WITHDRAW,
            user,
            mid,
            lambda pending_tx: self.positions.withdraw(user, mid, value, pending_tx),
            idempotency_key=idempotency_key,
            params={"amount": canonical(value)},
            amount=value,
            currency=market.collateral.currency,
        )

    # --- supply pool ---

    async def supply(
        self,
        tx_hash: str | None,
        user_address: str | None,
        market_id: str | None,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            tx = require_tx_hash(tx_hash)
            user = require_address(user_address)
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.SUPPLY,
            user,
            mid,
            lambda _pending: self.pool.supply(user, mid, tx),
            idempotency_key=idempotency_key,
            params={"txHash": tx},
            currency=market.debt.currency,
            tx_hash=tx,
        )

    async def withdraw_supply(
        self,
        tx_hash: str | None,
        user_address: str | None,
        market_id: str | None,
        amount: Any,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            value = parse_amount(amount)
            tx = require_tx_hash(tx_hash)
            user = require_address(user_address)
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.WITHDRAW_SUPPLY,
            user,
            mid,
            lambda pending_tx: self.pool.withdraw(user, mid, value, tx, pending_tx),
            idempotency_key=idempotency_key,
            params={"txHash": tx, "amount": canonical(value)},
            amount=value,
            currency=market.debt.currency,
            tx_hash=tx,
        )

    async def collect_yield(
        self,
        user_address: str | None,
        market_id: str | None,
        idempotency_key: str | None = None,
    ) -> OperationResult:
        try:
            user = require_address(user_address)
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        return await self.guard.run(
            Operation.COLLECT_YIELD,
            user,
            mid,
            lambda pending_tx: self.pool.collect_yield(user, mid, pending_tx),
            idempotency_key=idempotency_key,
            currency=market.debt.currency,
        )

    # --- liquidation and maintenance ---

    async def liquidate(
        self, market_id: str | None, user_address: str | None = None, limit: int | None = None
    ) -> OperationResult:
        try:
            mid = require_market_id(market_id)
            user = require_address(user_address) if user_address else None
            return OperationResult.ok(await self.liquidations.run(mid, user, limit))
        except LendingError as e:
            return OperationResult.from_error(e)

    async def reconcile_expired_escrows(self, market_id: str | None) -> OperationResult:
        """Drop collateral whose escrow expired and was cancelled by its owner on the ledger.

        Each cancellation runs through the guard on the owner's pair and is logged
        as its own RECONCILE_ESCROW event; a busy pair is skipped until the next run.
        """
        try:
            mid = require_market_id(market_id)
            market = self.registry.get_market(mid)
            found = await self.bridge.find_cancelled_escrows(mid)
        except LendingError as e:
            return OperationResult.from_error(e)
        cancelled: list[dict[str, Any]] = []
        skipped: list[dict[str, Any]] = []
        for record in found:
            outcome = await self.guard.run(
                Operation.RECONCILE_ESCROW,
                record.owner,
                mid,
                lambda _pending, r=record: self.positions.apply_cancelled_escrow(r),
                params={"escrowTxHash": record.tx_hash},
                amount=record.amount,
                currency=market.collateral.currency,
                tx_hash=record.tx_hash,
            )
            if outcome.success:
                cancelled.append(outcome.data or {})
            else:
                skipped.append(
                    {
                        "escrowTxHash": record.tx_hash,
                        "code": outcome.error.code if outcome.error else ErrorCode.INTERNAL_ERROR.value,
                    }
                )
        log.info("escrow_reconcile_finished", market_id=mid, cancelled=len(cancelled), skipped=len(skipped))
        return OperationResult.ok({"marketId": mid, "cancelled": cancelled, "skipped": skipped})

    # --- queries ---

    def _query(self, fn: Any, *args: Any) -> OperationResult:
        try:
            data = fn(*args)
        except LendingError as e:
            return OperationResult.from_error(e)
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="json")
        return OperationResult.ok(_jsonable(data))

    def get_position(self, user_address: str | None, market_id: str | None) -> OperationResult:
        try:
            user = require_address(user_address)
            mid = require_market_id(market_id)
        except LendingError as e:
            return OperationResult.from_error(e)
        return self._query(self.positions.view, user, mid)

    def quote_repayment(self, user_address: str | None, market_id: str | None) -> OperationResult:
        try:
            user = require_address(user_address)
            mid = require_market_id(market_id)
        except LendingError as e:
            return OperationResult.from_error(e)
        return self._query(self.positions.quote_repayment, user, mid)

    def get_supply_position(self, user_address: str | None, market_id: str | None) -> OperationResult:
        try:
            user = require_address(user_address)
            mid = require_market_id(market_id)
        except LendingError as e:
            return OperationResult.from_error(e)
        return self._query(self.pool.supply_view, user, mid)

    def list_markets(self) -> OperationResult:
        return self._query(lambda: {"markets": [m.model_dump(mode="json") for m in self.registry.get_active_markets()]})

    def get_market(self, market_id: str) -> OperationResult:
        return self._query(self.registry.get_market, market_id)

    def get_pool_metrics(self, market_id: str) -> OperationResult:
        return self._query(self.registry.pool_metrics, market_id)

    def get_prices(self, market_id: str) -> OperationResult:
        def _prices() -> dict[str, Any]:
            self.registry.get_market(market_id)
            quote = self.prices.get_prices(market_id)
            return {"prices": quote.model_dump(mode="json") if quote else None}

        return self._query(_prices)

    def set_price(self, market_id: str, side: str, value: Any, source: str | None = None) -> OperationResult:
        def _set() -> dict[str, Any]:
            self.registry.get_market(market_id)
            try:
                price = Decimal(str(value))
            except (InvalidOperation, ValueError):
                raise LendingError(ErrorCode.INVALID_PRICE, f"price is not a number: {value!r}") from None
            quote = self.prices.set_price(market_id, side, price, source)
            return {"marketId": market_id, "side": side, "priceUsd": price, "prices": quote.model_dump(mode="json") if quote else None}

        return self._query(_set)

    def list_events(
        self,
        user_address: str | None = None,
        market_id: str | None = None,
        position_id: str | None = None,
        limit: int = 100,
    ) -> OperationResult:
        events = event_store.list_events(
            self.conn, user_address=user_address, market_id=market_id, position_id=position_id, limit=limit
        )
        return OperationResult.ok({"events": [e.model_dump(mode="json") for e in events]})


def _jsonable(data: dict[str, Any]) -> dict[str, Any]:
    return json.loads(event_store.dumps(data) or "{}")
