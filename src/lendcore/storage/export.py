"""Export the lending event log to Parquet."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection


def export_events_to_parquet(
    conn: DuckDBPyConnection,
    output_path: str | Path,
    market_id: str | None = None,
) -> int:
    """Write lending_events (optionally one market) to a Parquet file. Returns row count."""
    path = Path(output_path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    path_str = str(path).replace("'", "''")
    if market_id:
        conn.execute(
            f"COPY (SELECT * FROM lending_events WHERE market_id = ? ORDER BY id) TO '{path_str}' (FORMAT PARQUET)",
            [market_id],
        )
        return conn.execute(
            "SELECT COUNT(*) FROM lending_events WHERE market_id = ?", [market_id]
        ).fetchone()[0]
    conn.execute(f"COPY (SELECT * FROM lending_events ORDER BY id) TO '{path_str}' (FORMAT PARQUET)")
    return conn.execute("SELECT COUNT(*) FROM lending_events").fetchone()[0]
