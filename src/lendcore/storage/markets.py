"""Market registry and pool aggregate persistence."""

from __future__ import annotations

import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from lendcore.models import Asset, Market

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_COLUMNS = [
    "market_id",
    "name",
    "collateral_currency",
    "collateral_issuer",
    "debt_currency",
    "debt_issuer",
    "max_ltv_ratio",
    "liquidation_ltv_ratio",
    "base_interest_rate",
    "liquidation_penalty",
    "reserve_factor",
    "min_collateral_amount",
    "min_borrow_amount",
    "min_supply_amount",
    "vault_id",
    "vault_scale",
    "active",
    "global_yield_index",
    "total_supplied",
    "total_borrowed",
    "total_reserves",
    "last_index_update",
]
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM markets"
_D = "CAST(? AS DECIMAL(38, 18))"


def _row_to_market(row: tuple[Any, ...]) -> Market:
    d = dict(zip(_COLUMNS, row))
    return Market(
        market_id=d["market_id"],
        name=d["name"] or "",
        collateral=Asset(currency=d["collateral_currency"], issuer=d["collateral_issuer"]),
        debt=Asset(currency=d["debt_currency"], issuer=d["debt_issuer"]),
        max_ltv_ratio=d["max_ltv_ratio"],
        liquidation_ltv_ratio=d["liquidation_ltv_ratio"],
        base_interest_rate=d["base_interest_rate"],
        liquidation_penalty=d["liquidation_penalty"],
        reserve_factor=d["reserve_factor"],
        min_collateral_amount=d["min_collateral_amount"],
        min_borrow_amount=d["min_borrow_amount"],
        min_supply_amount=d["min_supply_amount"],
        vault_id=d["vault_id"],
        vault_scale=d["vault_scale"],
        active=d["active"],
        global_yield_index=d["global_yield_index"],
        total_supplied=d["total_supplied"],
        total_borrowed=d["total_borrowed"],
        total_reserves=d["total_reserves"],
        last_index_update=d["last_index_update"],
    )


def upsert_market(conn: DuckDBPyConnection, market: Market) -> None:
    """Insert a market or refresh its static configuration. Pool aggregates are never overwritten."""
    now_ms = int(time.time() * 1000)
    conn.execute(
        f"""
        INSERT INTO markets ({', '.join(_COLUMNS)}, updated_at)
        VALUES ({', '.join('?' for _ in _COLUMNS)}, ?)
        ON CONFLICT (market_id) DO UPDATE SET
            name = excluded.name,
            collateral_currency = excluded.collateral_currency,
            collateral_issuer = excluded.collateral_issuer,
            debt_currency = excluded.debt_currency,
            debt_issuer = excluded.debt_issuer,
            max_ltv_ratio = excluded.max_ltv_ratio,
            liquidation_ltv_ratio = excluded.liquidation_ltv_ratio,
            base_interest_rate = excluded.base_interest_rate,
            liquidation_penalty = excluded.liquidation_penalty,
            reserve_factor = excluded.reserve_factor,
            min_collateral_amount = excluded.min_collateral_amount,
            min_borrow_amount = excluded.min_borrow_amount,
            min_supply_amount = excluded.min_supply_amount,
            vault_id = excluded.vault_id,
            vault_scale = excluded.vault_scale,
            active = excluded.active,
            updated_at = excluded.updated_at
        """,
        [
            market.market_id,
            market.name,
            market.collateral.currency,
            market.collateral.issuer,
            market.debt.currency,
            market.debt.issuer,
            market.max_ltv_ratio,
            market.liquidation_ltv_ratio,
            market.base_interest_rate,
            market.liquidation_penalty,
            market.reserve_factor,
            market.min_collateral_amount,
            market.min_borrow_amount,
            market.min_supply_amount,
            market.vault_id,
            market.vault_scale,
            market.active,
            market.global_yield_index,
            market.total_supplied,
            market.total_borrowed,
            market.total_reserves,
            market.last_index_update,
            now_ms,
        ],
    )


def get_market(conn: DuckDBPyConnection, market_id: str) -> Market | None:
    row = conn.execute(f"{_SELECT} WHERE market_id = ?", [market_id]).fetchone()
    return _row_to_market(row) if row else None


def list_markets(conn: DuckDBPyConnection, active_only: bool = True) -> list[Market]:
    """List markets ordered by id."""
    where = " WHERE active = true" if active_only else ""
    rows = conn.execute(f"{_SELECT}{where} ORDER BY market_id").fetchall()
    return [_row_to_market(r) for r in rows]


def reserve_borrow(conn: DuckDBPyConnection, market_id: str, amount: Decimal) -> bool:
    """Atomically add amount to total_borrowed if the pool still has that much liquidity."""
    row = conn.execute(
        f"""
        UPDATE markets SET total_borrowed = total_borrowed + {_D}
        WHERE market_id = ? AND total_supplied - total_borrowed >= {_D}
        RETURNING total_borrowed
        """,
        [amount, market_id, amount],
    ).fetchone()
    return row is not None


def release_borrow(conn: DuckDBPyConnection, market_id: str, amount: Decimal) -> None:
    """Subtract repaid or released principal from total_borrowed, floored at zero."""
    conn.execute(
        f"UPDATE markets SET total_borrowed = GREATEST(total_borrowed - {_D}, 0) WHERE market_id = ?",
        [amount, market_id],
    )


def add_supply(conn: DuckDBPyConnection, market_id: str, amount: Decimal) -> None:
    conn.execute(
        f"UPDATE markets SET total_supplied = total_supplied + {_D} WHERE market_id = ?",
        [amount, market_id],
    )


def remove_supply(conn: DuckDBPyConnection, market_id: str, amount: Decimal) -> bool:
    """Atomically subtract supply unless that would leave less supplied than borrowed."""
    row = conn.execute(
        f"""
        UPDATE markets SET total_supplied = total_supplied - {_D}
        WHERE market_id = ? AND total_supplied - {_D} >= total_borrowed
        RETURNING total_supplied
        """,
        [amount, market_id, amount],
    ).fetchone()
    return row is not None


def apply_interest(
    conn: DuckDBPyConnection,
    market_id: str,
    index_delta: Decimal,
    reserves_delta: Decimal,
    now_ms: int,
) -> None:
    """Grow the global yield index and protocol reserves by realized borrower interest."""
    conn.execute(
        f"""
        UPDATE markets SET
            global_yield_index = global_yield_index + {_D},
            total_reserves = total_reserves + {_D},
            last_index_update = ?
        WHERE market_id = ?
        """,
        [index_delta, reserves_delta, now_ms, market_id],
    )
