"""Latest USD price per market side."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection


def upsert_price(
    conn: DuckDBPyConnection,
    market_id: str,
    side: str,
    price_usd: Decimal,
    source: str | None,
    updated_at: int,
) -> None:
    conn.execute(
        """
        INSERT INTO prices (market_id, side, price_usd, source, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (market_id, side) DO UPDATE SET
            price_usd = excluded.price_usd,
            source = excluded.source,
            updated_at = excluded.updated_at
        """,
        [market_id, side, price_usd, source, updated_at],
    )


def get_prices(conn: DuckDBPyConnection, market_id: str) -> dict[str, dict[str, Any]]:
    """Return {side: {price_usd, source, updated_at}} for whatever sides are set."""
    rows = conn.execute(
        "SELECT side, price_usd, source, updated_at FROM prices WHERE market_id = ?",
        [market_id],
    ).fetchall()
    return {r[0]: {"price_usd": r[1], "source": r[2], "updated_at": r[3]} for r in rows}
