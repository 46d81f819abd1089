"""Batch liquidation of unhealthy positions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from lendcore.lending.guard import ConcurrencyGuard
from lendcore.lending.positions import PositionLedger
from lendcore.lending.registry import MarketRegistry, PriceFeed
from lendcore.models import Operation, Position, PositionMetrics
from lendcore.storage import positions as position_store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

DEFAULT_BATCH_LIMIT = 10


class LiquidationEngine:
    """Finds liquidatable positions and liquidates them one by one.

    Each position goes through the concurrency guard on its owner's
    (user, market) pair, so a liquidation never interleaves with that
    borrower's own mutation; a busy pair is reported as an error for that
    position and the batch moves on.
    """

    def __init__(
        self,
        conn: DuckDBPyConnection,
        registry: MarketRegistry,
        prices: PriceFeed,
        positions: PositionLedger,
        guard: ConcurrencyGuard,
        default_limit: int = DEFAULT_BATCH_LIMIT,
    ):
        self.conn = conn
        self.registry = registry
        self.prices = prices
        self.positions = positions
        self.guard = guard
        self.default_limit = default_limit

    def candidates(self, market_id: str, user_address: str | None = None) -> list[tuple[Position, PositionMetrics]]:
        """Liquidatable OPEN positions, worst health first."""
        market = self.registry.get_market(market_id)
        quote = self.prices.require_prices(market_id)
        found: list[tuple[Position, PositionMetrics]] = []
        for position in position_store.list_open_positions(self.conn, market_id, user_address):
            projected, _ = self.positions.project(position, market)
            metrics = self.positions.metrics(projected, market, quote)
            if metrics.liquidatable:
                found.append((projected, metrics))
        found.sort(key=lambda pm: pm[1].health_factor if pm[1].health_factor is not None else 0)
        return found

    async def run(
        self, market_id: str, user_address: str | None = None, limit: int | None = None
    ) -> dict[str, Any]:
        market = self.registry.get_market(market_id)
        batch_limit = limit if limit and limit > 0 else self.default_limit
        batch = self.candidates(market_id, user_address)[:batch_limit]
        log.info("liquidation_batch_started", market_id=market_id, candidates=len(batch))

        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for position, _metrics in batch:
            outcome = await self.guard.run(
                Operation.LIQUIDATE,
                position.user_address,
                market_id,
                lambda _pending, pid=position.id: self.positions.liquidate(pid, market_id),
                params={"positionId": position.id},
                amount=position.collateral_amount,
                currency=market.collateral.currency,
            )
            if outcome.success:
                results.append(outcome.data or {})
            else:
                errors.append(
                    {
                        "positionId": position.id,
                        "userAddress": position.user_address,
                        "code": outcome.error.code if outcome.error else "INTERNAL_ERROR",
                        "message": outcome.error.message if outcome.error else "",
                    }
                )
        log.info(
            "liquidation_batch_finished",
            market_id=market_id,
            liquidated=len(results),
            failed=len(errors),
        )
        return {"marketId": market_id, "processed": len(batch), "results": results, "errors": errors}
