"""Supply pool accounting: lender deposits, yield index, withdrawals."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from lendcore.errors import ErrorCode, LendingError
from lendcore.lending import calculations as calc
from lendcore.lending.bridge import EscrowBridge
from lendcore.lending.guard import ConcurrencyGuard
from lendcore.lending.registry import Clock, MarketRegistry, wall_clock_ms
from lendcore.models import Market, SupplyPosition, SupplyStatus
from lendcore.storage import markets as market_store
from lendcore.storage import positions as position_store
from lendcore.storage.db import transaction

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)


class SupplyPool:
    def __init__(
        self,
        conn: DuckDBPyConnection,
        registry: MarketRegistry,
        bridge: EscrowBridge,
        guard: ConcurrencyGuard,
        clock: Clock = wall_clock_ms,
    ):
        self.conn = conn
        self.registry = registry
        self.bridge = bridge
        self.guard = guard
        self.clock = clock

    # --- aggregates ---

    def realize_interest(self, market_id: str, interest: Decimal) -> Decimal:
        """Distribute realized borrower interest: lenders via the index, the rest to reserves."""
        if interest <= 0:
            return calc.ZERO
        market = self.registry.get_market(market_id)
        increment, reserves = calc.calculate_index_increment(
            interest, market.reserve_factor, market.total_supplied, market.vault_scale
        )
        market_store.apply_interest(self.conn, market_id, increment, reserves, self.clock())
        log.debug(
            "interest_realized",
            market_id=market_id,
            interest=str(interest),
            index_increment=str(increment),
            reserves=str(reserves),
        )
        return increment

    def reserve_liquidity(self, market_id: str, amount: Decimal) -> None:
        """Claim pool liquidity for a loan before it is disbursed."""
        if not market_store.reserve_borrow(self.conn, market_id, amount):
            market = self.registry.get_market(market_id)
            raise LendingError(
                ErrorCode.INSUFFICIENT_POOL_LIQUIDITY,
                f"Pool has {market.available_liquidity} available, {amount} requested",
            )

    def release_liquidity(self, market_id: str, amount: Decimal) -> None:
        if amount > 0:
            market_store.release_borrow(self.conn, market_id, amount)

    # --- lender operations ---

    def _require_supply(self, user_address: str, market_id: str) -> SupplyPosition:
        supply = position_store.get_active_supply_position(self.conn, user_address, market_id)
        if supply is None:
            raise LendingError(
                ErrorCode.NO_SUPPLY_POSITION, f"No supply position for {user_address} in market {market_id}"
            )
        return supply

    async def supply(self, user_address: str, market_id: str, tx_hash: str) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        deposited = await self.bridge.verify_vault_deposit(tx_hash, user_address, market)
        if deposited.value < market.min_supply_amount:
            raise LendingError(
                ErrorCode.BELOW_MINIMUM, f"Minimum supply is {market.min_supply_amount} {market.debt.currency}"
            )
        now = self.clock()
        with transaction(self.conn):
            self.bridge.mark_processed(tx_hash, "vault_deposit", market_id, user_address)
            market = self.registry.get_market(market_id)
            index = market.global_yield_index
            supply = position_store.get_active_supply_position(self.conn, user_address, market_id)
            if supply is None:
                supply = SupplyPosition(
                    id=uuid.uuid4().hex,
                    user_address=user_address,
                    market_id=market_id,
                    supply_amount=deposited.value,
                    yield_index=index,
                    last_yield_update=now,
                    opened_at=now,
                )
                position_store.insert_supply_position(self.conn, supply)
            else:
                accrued = calc.calculate_accrued_yield(supply.supply_amount, index, supply.yield_index)
                new_amount = supply.supply_amount + deposited.value
                supply = supply.model_copy(
                    update={
                        "supply_amount": new_amount,
                        "yield_index": calc.derive_index_preserving_yield(accrued, new_amount, index),
                        "last_yield_update": now,
                    }
                )
                position_store.update_supply_position(self.conn, supply)
            market_store.add_supply(self.conn, market_id, deposited.value)
        log.info("supply_registered", market_id=market_id, user=user_address, amount=str(deposited.value))
        return {
            "marketId": market_id,
            "supplyPositionId": supply.id,
            "suppliedAmount": deposited.value,
            "supplyAmount": supply.supply_amount,
            "txHash": tx_hash,
        }

    async def collect_yield(
        self, user_address: str, market_id: str, pending_tx: str | None = None
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        if not market.vault_id:
            raise LendingError(
                ErrorCode.UNSUPPORTED_OPERATION, f"Market {market_id} has no supply vault to collect from"
            )
        supply = self._require_supply(user_address, market_id)
        if pending_tx is not None:
            landed = await self.bridge.confirm_submission(pending_tx, "yield payout")
            if landed is not None and landed.amount is not None:
                return self._settle_yield(supply, landed.amount.value, pending_tx)

        collected = calc.calculate_accrued_yield(supply.supply_amount, market.global_yield_index, supply.yield_index)
        if collected <= 0:
            return {"marketId": market_id, "positionId": supply.id, "collectedAmount": calc.ZERO, "txHash": None}

        async with self.guard.aggregate_lock(market_id):
            market = self.registry.get_market(market_id)
            if collected > market.available_liquidity:
                raise LendingError(
                    ErrorCode.INSUFFICIENT_POOL_LIQUIDITY,
                    f"Pool has {market.available_liquidity} available, {collected} of yield owed",
                )
            tx_hash = await self.bridge.pay_out(user_address, collected, market.debt, "yield payout")
        return self._settle_yield(supply, collected, tx_hash)

    def _settle_yield(self, supply: SupplyPosition, collected: Decimal, tx_hash: str) -> dict[str, Any]:
        # yield accrued since the payout was computed stays claimable
        index = self.registry.get_market(supply.market_id).global_yield_index
        owed = calc.calculate_accrued_yield(supply.supply_amount, index, supply.yield_index)
        left = max(owed - collected, calc.ZERO)
        supply = supply.model_copy(
            update={
                "yield_index": calc.derive_index_preserving_yield(left, supply.supply_amount, index),
                "last_yield_update": self.clock(),
            }
        )
        position_store.update_supply_position(self.conn, supply)
        log.info("yield_collected", market_id=supply.market_id, user=supply.user_address, amount=str(collected))
        return {
            "marketId": supply.market_id,
            "positionId": supply.id,
            "collectedAmount": collected,
            "txHash": tx_hash,
        }

    async def withdraw(
        self, user_address: str, market_id: str, amount: Decimal, tx_hash: str, pending_tx: str | None = None
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        if not market.vault_id:
            raise LendingError(ErrorCode.VAULT_NOT_CONFIGURED, f"Market {market_id} has no supply vault")
        supply = self._require_supply(user_address, market_id)
        if amount > supply.supply_amount:
            raise LendingError(
                ErrorCode.INSUFFICIENT_SUPPLY, f"Supplied {supply.supply_amount}, cannot withdraw {amount}"
            )
        self._check_withdrawable(market, amount)
        await self.bridge.verify_vault_withdraw(tx_hash, user_address, market, amount)

        market = self.registry.get_market(market_id)
        index = market.global_yield_index
        accrued = calc.calculate_accrued_yield(supply.supply_amount, index, supply.yield_index)
        remaining = supply.supply_amount - amount

        yield_paid = calc.ZERO
        yield_tx: str | None = None
        if remaining == 0 and accrued > 0:
            # closing the position must not forfeit earned yield
            landed = None
            if pending_tx is not None:
                landed = await self.bridge.confirm_submission(pending_tx, "yield payout")
            if landed is not None and landed.amount is not None:
                yield_tx, yield_paid = pending_tx, landed.amount.value
            else:
                yield_tx = await self.bridge.pay_out(user_address, accrued, market.debt, "yield payout")
                yield_paid = accrued
            accrued = calc.ZERO
            supply = supply.model_copy(update={"yield_index": index, "last_yield_update": self.clock()})
            position_store.update_supply_position(self.conn, supply)

        now = self.clock()
        with transaction(self.conn):
            self.bridge.mark_processed(tx_hash, "vault_withdraw", market_id, user_address)
            if not market_store.remove_supply(self.conn, market_id, amount):
                raise LendingError(
                    ErrorCode.INSUFFICIENT_POOL_LIQUIDITY,
                    f"Withdrawing {amount} would leave less supplied than borrowed",
                )
            update: dict[str, Any] = {"supply_amount": remaining, "last_yield_update": now}
            if remaining == 0:
                update.update(status=SupplyStatus.CLOSED, closed_at=now, yield_index=index)
            else:
                update["yield_index"] = calc.derive_index_preserving_yield(accrued, remaining, index)
            supply = supply.model_copy(update=update)
            position_store.update_supply_position(self.conn, supply)
        log.info("supply_withdrawn", market_id=market_id, user=user_address, amount=str(amount))
        return {
            "marketId": market_id,
            "positionId": supply.id,
            "withdrawnAmount": amount,
            "remainingSupply": remaining,
            "status": supply.status.value,
            "yieldPaid": yield_paid,
            "yieldTxHash": yield_tx,
            "txHash": tx_hash,
        }

    @staticmethod
    def _check_withdrawable(market: Market, amount: Decimal) -> None:
        if market.total_supplied - amount < market.total_borrowed:
            raise LendingError(
                ErrorCode.INSUFFICIENT_POOL_LIQUIDITY,
                f"Pool has {market.available_liquidity} available, {amount} requested",
            )

    def supply_view(self, user_address: str, market_id: str) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        supply = self._require_supply(user_address, market_id)
        return {
            "position": supply.model_dump(mode="json"),
            "accruedYield": calc.calculate_accrued_yield(
                supply.supply_amount, market.global_yield_index, supply.yield_index
            ),
            "pool": self.registry.pool_metrics(market_id).model_dump(mode="json"),
        }
