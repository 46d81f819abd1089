"""Borrower and lender position persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from lendcore.models import Position, PositionStatus, SupplyPosition, SupplyStatus

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_POSITION_COLUMNS = [
    "id",
    "user_address",
    "market_id",
    "status",
    "collateral_amount",
    "loan_principal",
    "interest_accrued",
    "interest_rate_at_open",
    "last_accrual_at",
    "opened_at",
    "closed_at",
    "liquidated_at",
]
_SUPPLY_COLUMNS = [
    "id",
    "user_address",
    "market_id",
    "status",
    "supply_amount",
    "yield_index",
    "last_yield_update",
    "opened_at",
    "closed_at",
]


def _select(table: str, columns: list[str]) -> str:
    return f"SELECT {', '.join(columns)} FROM {table}"


def _to_position(row: tuple[Any, ...]) -> Position:
    return Position(**dict(zip(_POSITION_COLUMNS, row)))


def _to_supply(row: tuple[Any, ...]) -> SupplyPosition:
    return SupplyPosition(**dict(zip(_SUPPLY_COLUMNS, row)))


# --- Borrower positions ---


def insert_position(conn: DuckDBPyConnection, position: Position) -> None:
    data = position.model_dump()
    data["status"] = position.status.value
    conn.execute(
        f"INSERT INTO positions ({', '.join(_POSITION_COLUMNS)}) VALUES ({', '.join('?' for _ in _POSITION_COLUMNS)})",
        [data[c] for c in _POSITION_COLUMNS],
    )


def update_position(conn: DuckDBPyConnection, position: Position) -> None:
    """Write back every mutable column of a position."""
    conn.execute(
        """
        UPDATE positions SET
            status = ?,
            collateral_amount = ?,
            loan_principal = ?,
            interest_accrued = ?,
            interest_rate_at_open = ?,
            last_accrual_at = ?,
            closed_at = ?,
            liquidated_at = ?
        WHERE id = ?
        """,
        [
            position.status.value,
            position.collateral_amount,
            position.loan_principal,
            position.interest_accrued,
            position.interest_rate_at_open,
            position.last_accrual_at,
            position.closed_at,
            position.liquidated_at,
            position.id,
        ],
    )


def get_position(conn: DuckDBPyConnection, position_id: str) -> Position | None:
    row = conn.execute(
        f"{_select('positions', _POSITION_COLUMNS)} WHERE id = ?", [position_id]
    ).fetchone()
    return _to_position(row) if row else None


def get_open_position(conn: DuckDBPyConnection, user_address: str, market_id: str) -> Position | None:
    """Return the single OPEN position for (user, market), if any."""
    row = conn.execute(
        f"{_select('positions', _POSITION_COLUMNS)} WHERE user_address = ? AND market_id = ? AND status = ? "
        "ORDER BY opened_at DESC LIMIT 1",
        [user_address, market_id, PositionStatus.OPEN.value],
    ).fetchone()
    return _to_position(row) if row else None


def get_latest_position(conn: DuckDBPyConnection, user_address: str, market_id: str) -> Position | None:
    """Most recent position for (user, market) in any status."""
    row = conn.execute(
        f"{_select('positions', _POSITION_COLUMNS)} WHERE user_address = ? AND market_id = ? "
        "ORDER BY opened_at DESC, status = 'OPEN' DESC LIMIT 1",
        [user_address, market_id],
    ).fetchone()
    return _to_position(row) if row else None


def list_open_positions(
    conn: DuckDBPyConnection, market_id: str, user_address: str | None = None
) -> list[Position]:
    """OPEN positions in a market, optionally for one user."""
    sql = f"{_select('positions', _POSITION_COLUMNS)} WHERE market_id = ? AND status = ?"
    params: list[Any] = [market_id, PositionStatus.OPEN.value]
    if user_address:
        sql += " AND user_address = ?"
        params.append(user_address)
    rows = conn.execute(sql + " ORDER BY opened_at", params).fetchall()
    return [_to_position(r) for r in rows]


# --- Supply positions ---


def insert_supply_position(conn: DuckDBPyConnection, supply: SupplyPosition) -> None:
    data = supply.model_dump()
    data["status"] = supply.status.value
    conn.execute(
        f"INSERT INTO supply_positions ({', '.join(_SUPPLY_COLUMNS)}) VALUES ({', '.join('?' for _ in _SUPPLY_COLUMNS)})",
        [data[c] for c in _SUPPLY_COLUMNS],
    )


def update_supply_position(conn: DuckDBPyConnection, supply: SupplyPosition) -> None:
    conn.execute(
        """
        UPDATE supply_positions SET
            status = ?,
            supply_amount = ?,
            yield_index = ?,
            last_yield_update = ?,
            closed_at = ?
        WHERE id = ?
        """,
        [
            supply.status.value,
            supply.supply_amount,
            supply.yield_index,
            supply.last_yield_update,
            supply.closed_at,
            supply.id,
        ],
    )


def get_active_supply_position(
    conn: DuckDBPyConnection, user_address: str, market_id: str
) -> SupplyPosition | None:
    row = conn.execute(
        f"{_select('supply_positions', _SUPPLY_COLUMNS)} WHERE user_address = ? AND market_id = ? AND status = ? "
        "ORDER BY opened_at DESC LIMIT 1",
        [user_address, market_id, SupplyStatus.ACTIVE.value],
    ).fetchone()
    return _to_supply(row) if row else None


def list_active_supply_positions(conn: DuckDBPyConnection, market_id: str) -> list[SupplyPosition]:
    rows = conn.execute(
        f"{_select('supply_positions', _SUPPLY_COLUMNS)} WHERE market_id = ? AND status = ? ORDER BY opened_at",
        [market_id, SupplyStatus.ACTIVE.value],
    ).fetchall()
    return [_to_supply(r) for r in rows]
