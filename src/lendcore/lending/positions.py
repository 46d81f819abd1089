"""Position ledger: collateral deposits, borrowing, repayment, withdrawal and health."""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from lendcore.errors import ErrorCode, LendingError
from lendcore.lending import calculations as calc
from lendcore.lending.bridge import EscrowBridge
from lendcore.lending.pool import SupplyPool
from lendcore.lending.registry import Clock, MarketRegistry, PriceFeed, wall_clock_ms
from lendcore.lending.repayment import (
    DEFAULT_BUFFER_RATE,
    DEFAULT_REPAY_DECIMALS,
    DEFAULT_TERM_MONTHS,
    RepaymentSchedule,
    RepayKind,
    quote_all,
)
from lendcore.models import (
    EscrowRecord,
    EscrowStatus,
    Market,
    Position,
    PositionMetrics,
    PositionStatus,
    PositionView,
    PriceQuote,
)
from lendcore.storage import escrows as escrow_store
from lendcore.storage import positions as position_store
from lendcore.storage.db import transaction

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)


class PositionLedger:
    """Borrower positions. Every mutation checkpoints interest before touching balances."""

    def __init__(
        self,
        conn: DuckDBPyConnection,
        registry: MarketRegistry,
        prices: PriceFeed,
        bridge: EscrowBridge,
        pool: SupplyPool,
        clock: Clock = wall_clock_ms,
        *,
        repay_buffer_rate: Decimal = DEFAULT_BUFFER_RATE,
        repay_decimals: int = DEFAULT_REPAY_DECIMALS,
        loan_term_months: int = DEFAULT_TERM_MONTHS,
    ):
        self.conn = conn
        self.registry = registry
        self.prices = prices
        self.bridge = bridge
        self.pool = pool
        self.clock = clock
        self.repay_buffer_rate = repay_buffer_rate
        self.repay_decimals = repay_decimals
        self.loan_term_months = loan_term_months

    # --- interest ---

    def project(self, position: Position, market: Market, now_ms: int | None = None) -> tuple[Position, Decimal]:
        """Position with interest accrued up to now (not persisted) and the interest added."""
        now = self.clock() if now_ms is None else now_ms
        if not position.is_open or now <= position.last_accrual_at:
            return position, calc.ZERO
        rate = position.interest_rate_at_open if position.interest_rate_at_open is not None else market.base_interest_rate
        elapsed = Decimal(now - position.last_accrual_at) / 1000
        interest = calc.calculate_interest(position.loan_principal, rate, elapsed)
        projected = position.model_copy(
            update={"interest_accrued": position.interest_accrued + interest, "last_accrual_at": now}
        )
        return projected, interest

    def _checkpoint(self, position_id: str, market: Market) -> Position:
        """Re-read, accrue and realize interest into the pool. Caller persists the returned position."""
        position = position_store.get_position(self.conn, position_id)
        if position is None or not position.is_open:
            raise LendingError(ErrorCode.POSITION_NOT_OPEN, f"Position {position_id} is not open")
        projected, interest = self.project(position, market)
        self.pool.realize_interest(market.market_id, interest)
        return projected

    def _require_open(self, user_address: str, market_id: str) -> Position:
        position = position_store.get_open_position(self.conn, user_address, market_id)
        if position is None:
            raise LendingError(ErrorCode.NO_POSITION, f"No open position for {user_address} in market {market_id}")
        return position

    # --- valuation ---

    def metrics(self, position: Position, market: Market, quote: PriceQuote) -> PositionMetrics:
        cp, dp = quote.collateral_price_usd, quote.debt_price_usd
        debt = position.total_debt
        ltv = calc.calculate_ltv(position.collateral_amount, cp, debt, dp)
        return PositionMetrics(
            total_debt=debt,
            collateral_value_usd=calc.quantize_down(position.collateral_amount * cp),
            debt_value_usd=calc.round_up(debt * dp),
            current_ltv=calc.display_ltv(ltv),
            health_factor=calc.calculate_health_factor(ltv, market.liquidation_ltv_ratio),
            liquidatable=debt > 0 and calc.is_liquidatable(ltv, market.liquidation_ltv_ratio),
            max_borrowable_amount=min(
                calc.calculate_max_borrowable(position.collateral_amount, cp, debt, dp, market.max_ltv_ratio),
                market.available_liquidity,
            ),
            max_withdrawable_amount=calc.calculate_max_withdrawable(
                position.collateral_amount, cp, debt, dp, market.max_ltv_ratio
            ),
            available_liquidity=market.available_liquidity,
        )

    def view(self, user_address: str, market_id: str) -> PositionView:
        """Latest position for (user, market) with projected interest and, when open and priced, metrics."""
        market = self.registry.get_market(market_id)
        position = position_store.get_open_position(self.conn, user_address, market_id)
        if position is None:
            position = position_store.get_latest_position(self.conn, user_address, market_id)
        if position is None:
            raise LendingError(ErrorCode.NO_POSITION, f"No position for {user_address} in market {market_id}")
        projected, _ = self.project(position, market)
        if not projected.is_open:
            return PositionView(position=projected, metrics=None)
        quote = self.prices.get_prices(market_id)
        metrics = self.metrics(projected, market, quote) if quote is not None else None
        return PositionView(position=projected, metrics=metrics)

    def quote_repayment(self, user_address: str, market_id: str) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        position, _ = self.project(self._require_open(user_address, market_id), market)
        schedule = RepaymentSchedule.for_position(position, self.loan_term_months)
        return {
            "positionId": position.id,
            "minimumRepayment": schedule.minimum,
            "fullRepayment": schedule.full,
            "suggestedOverpayment": schedule.suggested_overpayment,
            "quotes": quote_all(schedule, self.repay_buffer_rate, self.repay_decimals),
            "bufferRate": self.repay_buffer_rate,
        }

    # --- mutations ---

    async def deposit(
        self,
        user_address: str,
        market_id: str,
        tx_hash: str,
        condition: str | None,
        fulfillment: str | None,
        preimage: str | None,
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        verified = await self.bridge.verify_escrow_deposit(
            tx_hash, user_address, market, condition, fulfillment, preimage
        )
        if verified.amount < market.min_collateral_amount:
            raise LendingError(
                ErrorCode.BELOW_MINIMUM,
                f"Minimum collateral is {market.min_collateral_amount} {market.collateral.currency}",
            )
        now = self.clock()
        with transaction(self.conn):
            self.bridge.mark_processed(tx_hash, "escrow_deposit", market_id, user_address)
            existing = position_store.get_open_position(self.conn, user_address, market_id)
            if existing is None:
                position = Position(
                    id=uuid.uuid4().hex,
                    user_address=user_address,
                    market_id=market_id,
                    collateral_amount=verified.amount,
                    last_accrual_at=now,
                    opened_at=now,
                )
                position_store.insert_position(self.conn, position)
            else:
                position = self._checkpoint(existing.id, market)
                position = position.model_copy(
                    update={"collateral_amount": position.collateral_amount + verified.amount}
                )
                position_store.update_position(self.conn, position)
            self.bridge.record_escrow(verified, position.id, market)
        log.info("collateral_deposited", market_id=market_id, user=user_address, amount=str(verified.amount))
        return {
            "positionId": position.id,
            "marketId": market_id,
            "creditedAmount": verified.amount,
            "collateralAmount": position.collateral_amount,
            "escrowSequence": verified.sequence,
            "txHash": tx_hash,
        }

    async def borrow(
        self, user_address: str, market_id: str, amount: Decimal, pending_tx: str | None = None
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        if pending_tx is not None:
            if await self.bridge.confirm_submission(pending_tx, "loan disbursement") is not None:
                # already paid; the reservation from that attempt still stands
                return self._apply_borrow(user_address, market, amount, pending_tx)
            self.pool.release_liquidity(market_id, amount)

        if amount < market.min_borrow_amount:
            raise LendingError(
                ErrorCode.BELOW_MINIMUM, f"Minimum borrow is {market.min_borrow_amount} {market.debt.currency}"
            )
        position = self._require_open(user_address, market_id)
        quote = self.prices.require_prices(market_id)
        projected, _ = self.project(position, market)
        new_debt = projected.total_debt + amount
        ltv = calc.calculate_ltv(
            position.collateral_amount, quote.collateral_price_usd, new_debt, quote.debt_price_usd
        )
        if calc.exceeds_max_ltv(ltv, market.max_ltv_ratio):
            shown = "undefined" if ltv is None else str(calc.display_ltv(ltv))
            raise LendingError(
                ErrorCode.EXCEEDS_MAX_LTV, f"Resulting LTV {shown} exceeds maximum {market.max_ltv_ratio}"
            )

        self.pool.reserve_liquidity(market_id, amount)
        try:
            tx_hash = await self.bridge.pay_out(user_address, amount, market.debt, "loan disbursement")
        except LendingError as e:
            # an unconfirmed payout keeps its reservation until a retry resolves it
            if e.pending_tx_hash is None:
                self.pool.release_liquidity(market_id, amount)
            raise
        except asyncio.CancelledError:
            self.pool.release_liquidity(market_id, amount)
            raise
        return self._apply_borrow(user_address, market, amount, tx_hash)

    def _apply_borrow(self, user_address: str, market: Market, amount: Decimal, tx_hash: str) -> dict[str, Any]:
        with transaction(self.conn):
            position = self._checkpoint(self._require_open(user_address, market.market_id).id, market)
            update: dict[str, Any] = {"loan_principal": position.loan_principal + amount}
            if position.interest_rate_at_open is None:
                update["interest_rate_at_open"] = market.base_interest_rate
            position = position.model_copy(update=update)
            position_store.update_position(self.conn, position)
        log.info(
            "borrow_completed", market_id=market.market_id, user=user_address, amount=str(amount), tx_hash=tx_hash
        )
        return {
            "positionId": position.id,
            "marketId": market.market_id,
            "borrowedAmount": amount,
            "newPrincipal": position.loan_principal,
            "totalDebt": position.total_debt,
            "txHash": tx_hash,
        }

    def _repay_cap(self, outstanding: Decimal, kind: RepayKind) -> Decimal:
        """Most a repayment may pull. Buffered kinds may cover interest accrued while the payment confirms."""
        if kind is RepayKind.FULL:
            return calc.round_up(outstanding, self.repay_decimals)
        return calc.round_up(outstanding * (1 + self.repay_buffer_rate), self.repay_decimals)

    async def repay(
        self,
        user_address: str,
        market_id: str,
        amount: Decimal,
        kind: RepayKind,
        pending_tx: str | None = None,
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        position = self._require_open(user_address, market_id)
        projected, _ = self.project(position, market)
        outstanding = projected.total_debt

        landed = None
        if pending_tx is not None:
            landed = await self.bridge.confirm_submission(pending_tx, "repayment")
        if landed is not None and landed.amount is not None:
            charged, tx_hash = landed.amount.value, pending_tx
        else:
            if outstanding <= 0:
                raise LendingError(ErrorCode.INVALID_AMOUNT, "Position has no outstanding debt")
            charged = min(amount, self._repay_cap(outstanding, kind))
            tx_hash = await self.bridge.collect(user_address, charged, market.debt, "repayment")
        schedule = RepaymentSchedule.for_position(projected, self.loan_term_months)
        quoted = kind.quote(schedule, self.repay_buffer_rate, self.repay_decimals)

        now = self.clock()
        with transaction(self.conn):
            position = self._checkpoint(position.id, market)
            interest_paid, principal_paid, absorbed = calc.allocate_repayment(
                charged, position.interest_accrued, position.loan_principal
            )
            update: dict[str, Any] = {
                "interest_accrued": position.interest_accrued - interest_paid,
                "loan_principal": position.loan_principal - principal_paid,
            }
            if position.collateral_amount == 0 and position.total_debt == interest_paid + principal_paid:
                update.update(status=PositionStatus.CLOSED, closed_at=now)
            position = position.model_copy(update=update)
            position_store.update_position(self.conn, position)
            self.pool.release_liquidity(market_id, principal_paid)
            if absorbed > 0:
                # unused buffer and rounding remainder are kept by the protocol
                self.pool.realize_interest(market_id, absorbed)
        log.info(
            "repay_completed",
            market_id=market_id,
            user=user_address,
            kind=kind.value,
            interest_paid=str(interest_paid),
            principal_paid=str(principal_paid),
            absorbed=str(absorbed),
            tx_hash=tx_hash,
        )
        return {
            "positionId": position.id,
            "marketId": market_id,
            "repayKind": kind.value,
            "quotedAmount": quoted,
            "amountRepaid": charged,
            "interestPaid": interest_paid,
            "principalPaid": principal_paid,
            "absorbed": absorbed,
            "excess": amount - charged,
            "remainingDebt": position.total_debt,
            "txHash": tx_hash,
        }

    async def withdraw(
        self, user_address: str, market_id: str, amount: Decimal, pending_tx: str | None = None
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        position = self._require_open(user_address, market_id)
        if pending_tx is not None:
            if await self.bridge.confirm_submission(pending_tx, "collateral withdrawal") is not None:
                return self._apply_withdraw(user_address, market, position.id, amount, pending_tx)
        if amount > position.collateral_amount:
            raise LendingError(
                ErrorCode.INSUFFICIENT_COLLATERAL,
                f"Collateral is {position.collateral_amount}, cannot withdraw {amount}",
            )
        projected, _ = self.project(position, market)
        if projected.total_debt > 0:
            quote = self.prices.require_prices(market_id)
            ltv = calc.calculate_ltv(
                position.collateral_amount - amount,
                quote.collateral_price_usd,
                projected.total_debt,
                quote.debt_price_usd,
            )
            if calc.exceeds_max_ltv(ltv, market.max_ltv_ratio):
                raise LendingError(
                    ErrorCode.EXCEEDS_MAX_LTV,
                    f"Withdrawing {amount} would push LTV above {market.max_ltv_ratio}",
                )

        await self.bridge.release_escrows(position.id)
        tx_hash = await self.bridge.pay_out(user_address, amount, market.collateral, "collateral withdrawal")
        return self._apply_withdraw(user_address, market, position.id, amount, tx_hash)

    def _apply_withdraw(
        self, user_address: str, market: Market, position_id: str, amount: Decimal, tx_hash: str
    ) -> dict[str, Any]:
        now = self.clock()
        with transaction(self.conn):
            position = self._checkpoint(position_id, market)
            remaining = max(position.collateral_amount - amount, calc.ZERO)
            update: dict[str, Any] = {"collateral_amount": remaining}
            if remaining == 0 and position.total_debt == 0:
                update.update(status=PositionStatus.CLOSED, closed_at=now)
            position = position.model_copy(update=update)
            position_store.update_position(self.conn, position)
        log.info("collateral_withdrawn", market_id=market.market_id, user=user_address, amount=str(amount))
        return {
            "positionId": position.id,
            "marketId": market.market_id,
            "withdrawnAmount": amount,
            "collateralAmount": position.collateral_amount,
            "status": position.status.value,
            "txHash": tx_hash,
        }

    async def liquidate(self, position_id: str, market_id: str) -> dict[str, Any]:
        """Seize collateral of one unhealthy position and retire its debt."""
        market = self.registry.get_market(market_id)
        position = position_store.get_position(self.conn, position_id)
        if position is None or not position.is_open:
            raise LendingError(ErrorCode.POSITION_NOT_OPEN, f"Position {position_id} is not open")
        quote = self.prices.require_prices(market_id)
        cp, dp = quote.collateral_price_usd, quote.debt_price_usd
        projected, _ = self.project(position, market)
        ltv = calc.calculate_ltv(projected.collateral_amount, cp, projected.total_debt, dp)
        if projected.total_debt <= 0 or not calc.is_liquidatable(ltv, market.liquidation_ltv_ratio):
            raise LendingError(ErrorCode.POSITION_HEALTHY, f"Position {position_id} is not liquidatable")

        seized, penalty = calc.calculate_liquidation_seizure(
            projected.total_debt, dp, cp, projected.collateral_amount, market.liquidation_penalty
        )
        surplus = projected.collateral_amount - seized
        finish_hashes = await self.bridge.release_escrows(position.id)
        surplus_tx: str | None = None
        if surplus > 0:
            surplus_tx = await self.bridge.pay_out(
                position.user_address, surplus, market.collateral, "liquidation surplus"
            )

        now = self.clock()
        with transaction(self.conn):
            position = self._checkpoint(position.id, market)
            debt = position.total_debt
            self.pool.release_liquidity(market_id, position.loan_principal)
            position = position.model_copy(update={"status": PositionStatus.LIQUIDATED, "liquidated_at": now})
            position_store.update_position(self.conn, position)

        covered = debt
        if dp > 0 and cp > 0:
            covered = min(debt, calc.quantize_down((seized - penalty) * cp / dp))
        log.warning(
            "position_liquidated",
            market_id=market_id,
            position_id=position.id,
            user=position.user_address,
            seized=str(seized),
            debt=str(debt),
        )
        return {
            "positionId": position.id,
            "userAddress": position.user_address,
            "marketId": market_id,
            "collateralSeized": seized,
            "penalty": penalty,
            "debtRepaid": debt,
            "surplusReturned": surplus,
            "shortfall": max(debt - covered, calc.ZERO),
            "escrowTxHashes": finish_hashes,
            "surplusTxHash": surplus_tx,
            "txHash": finish_hashes[-1] if finish_hashes else surplus_tx,
        }

    async def apply_cancelled_escrow(self, record: EscrowRecord) -> dict[str, Any]:
        """Remove collateral whose escrow was cancelled on the ledger."""
        market = self.registry.get_market(record.market_id)
        with transaction(self.conn):
            current = escrow_store.get_escrow(self.conn, record.tx_hash)
            if current is None or current.status != EscrowStatus.ACTIVE:
                raise LendingError(
                    ErrorCode.TX_ALREADY_PROCESSED, f"Escrow {record.tx_hash} is no longer active"
                )
            self.bridge.mark_cancelled(record)
            position = position_store.get_position(self.conn, record.position_id)
            if position is not None and position.is_open:
                position = self._checkpoint(position.id, market)
                position = position.model_copy(
                    update={"collateral_amount": max(position.collateral_amount - record.amount, calc.ZERO)}
                )
                position_store.update_position(self.conn, position)
        log.warning(
            "escrow_cancelled",
            market_id=record.market_id,
            position_id=record.position_id,
            amount=str(record.amount),
        )
        return {
            "escrowTxHash": record.tx_hash,
            "positionId": record.position_id,
            "marketId": record.market_id,
            "amount": record.amount,
            "collateralAmount": position.collateral_amount if position is not None else None,
        }
