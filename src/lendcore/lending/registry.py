"""Market registry and price feed adapter."""

from __future__ import annotations

import time
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from lendcore.errors import ErrorCode, LendingError
from lendcore.lending import calculations as calc
from lendcore.models import Market, PoolMetrics, PriceQuote
from lendcore.storage import markets as market_store
from lendcore.storage import prices as price_store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

Clock = Callable[[], int]
PRICE_SIDES = ("collateral", "debt")


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class MarketRegistry:
    """Read access to configured markets; seeding from static configuration."""

    def __init__(self, conn: DuckDBPyConnection):
        self.conn = conn

    def sync(self, configs: list[Market]) -> int:
        """Insert new markets and refresh static fields of existing ones."""
        for market in configs:
            market_store.upsert_market(self.conn, market)
        log.info("markets_synced", count=len(configs))
        return len(configs)

    def get_active_markets(self) -> list[Market]:
        return market_store.list_markets(self.conn, active_only=True)

    def get_market(self, market_id: str) -> Market:
        market = market_store.get_market(self.conn, market_id)
        if market is None:
            raise LendingError(ErrorCode.MARKET_NOT_FOUND, f"Market not found: {market_id}")
        return market

    def pool_metrics(self, market_id: str) -> PoolMetrics:
        market = self.get_market(market_id)
        utilization = calc.calculate_utilization(market.total_borrowed, market.total_supplied)
        supply_apr = calc.calculate_supply_apr(market.base_interest_rate, utilization, market.reserve_factor)
        return PoolMetrics(
            market_id=market.market_id,
            total_supplied=market.total_supplied,
            total_borrowed=market.total_borrowed,
            total_reserves=market.total_reserves,
            available_liquidity=market.available_liquidity,
            utilization=calc.quantize_down(utilization, calc.LTV_DECIMALS),
            borrow_apr=market.base_interest_rate,
            supply_apr=calc.quantize_down(supply_apr, calc.LTV_DECIMALS),
            supply_apy=calc.calculate_supply_apy(supply_apr),
            global_yield_index=market.global_yield_index,
        )


class PriceFeed:
    """Latest USD prices per market side, written by an external oracle process."""

    def __init__(self, conn: DuckDBPyConnection, clock: Clock = wall_clock_ms, max_age_sec: int = 0):
        self.conn = conn
        self.clock = clock
        self.max_age_sec = max_age_sec

    def set_price(self, market_id: str, side: str, value: Decimal, source: str | None = None) -> PriceQuote | None:
        if side not in PRICE_SIDES:
            raise LendingError(ErrorCode.INVALID_SIDE, f"side must be one of {', '.join(PRICE_SIDES)}")
        if value is None or not value.is_finite() or value < 0:
            raise LendingError(ErrorCode.INVALID_PRICE, "price must be a non-negative number")
        price_store.upsert_price(self.conn, market_id, side, value, source, self.clock())
        log.info("price_set", market_id=market_id, side=side, price_usd=str(value), source=source)
        return self.get_prices(market_id)

    def get_prices(self, market_id: str) -> PriceQuote | None:
        """Both sides, or None while either side has never been set."""
        sides = price_store.get_prices(self.conn, market_id)
        if not all(side in sides for side in PRICE_SIDES):
            return None
        return PriceQuote(
            market_id=market_id,
            collateral_price_usd=sides["collateral"]["price_usd"],
            debt_price_usd=sides["debt"]["price_usd"],
            updated_at=min(sides["collateral"]["updated_at"], sides["debt"]["updated_at"]),
        )

    def require_prices(self, market_id: str) -> PriceQuote:
        """Prices for a valuation path. Raises PRICES_NOT_FOUND or, when the age gate is on, PRICE_STALE."""
        quote = self.get_prices(market_id)
        if quote is None:
            raise LendingError(ErrorCode.PRICES_NOT_FOUND, f"Prices not set for market {market_id}")
        if self.max_age_sec > 0 and self.clock() - quote.updated_at > self.max_age_sec * 1000:
            raise LendingError(
                ErrorCode.PRICE_STALE,
                f"Prices for market {market_id} are older than {self.max_age_sec}s",
            )
        return quote
