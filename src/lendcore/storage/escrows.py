"""Escrow records and processed external transaction hashes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import duckdb

from lendcore.models import EscrowRecord, EscrowStatus

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_COLUMNS = [
    "tx_hash",
    "position_id",
    "market_id",
    "owner",
    "sequence",
    "destination",
    "amount",
    "currency",
    "issuer",
    "condition",
    "fulfillment",
    "preimage",
    "cancel_after",
    "status",
    "created_at",
    "consumed_at",
]
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM escrow_records"


class DuplicateTransaction(Exception):
    """The transaction hash was already recorded as processed."""


def _to_record(row: tuple[Any, ...]) -> EscrowRecord:
    return EscrowRecord(**dict(zip(_COLUMNS, row)))


def insert_escrow(conn: DuckDBPyConnection, record: EscrowRecord) -> None:
    data = record.model_dump()
    data["status"] = record.status.value
    conn.execute(
        f"INSERT INTO escrow_records ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})",
        [data[c] for c in _COLUMNS],
    )


def list_active_escrows(conn: DuckDBPyConnection, position_id: str) -> list[EscrowRecord]:
    rows = conn.execute(
        f"{_SELECT} WHERE position_id = ? AND status = ? ORDER BY created_at",
        [position_id, EscrowStatus.ACTIVE.value],
    ).fetchall()
    return [_to_record(r) for r in rows]


def get_escrow(conn: DuckDBPyConnection, tx_hash: str) -> EscrowRecord | None:
    row = conn.execute(f"{_SELECT} WHERE tx_hash = ?", [tx_hash]).fetchone()
    return _to_record(row) if row else None


def list_expired_escrows(conn: DuckDBPyConnection, market_id: str, now_ms: int) -> list[EscrowRecord]:
    """ACTIVE escrows whose cancel-after time has passed."""
    rows = conn.execute(
        f"{_SELECT} WHERE market_id = ? AND status = ? AND cancel_after IS NOT NULL AND cancel_after <= ? "
        "ORDER BY cancel_after",
        [market_id, EscrowStatus.ACTIVE.value, now_ms],
    ).fetchall()
    return [_to_record(r) for r in rows]


def mark_escrow(conn: DuckDBPyConnection, tx_hash: str, status: EscrowStatus, consumed_at: int) -> None:
    conn.execute(
        "UPDATE escrow_records SET status = ?, consumed_at = ? WHERE tx_hash = ?",
        [status.value, consumed_at, tx_hash],
    )


def is_processed(conn: DuckDBPyConnection, tx_hash: str) -> bool:
    row = conn.execute("SELECT 1 FROM processed_transactions WHERE tx_hash = ?", [tx_hash]).fetchone()
    return row is not None


def mark_processed(
    conn: DuckDBPyConnection,
    tx_hash: str,
    kind: str,
    market_id: str,
    user_address: str,
    processed_at: int,
) -> None:
    """Record a consumed transaction hash. Raises DuplicateTransaction if already recorded."""
    try:
        conn.execute(
            "INSERT INTO processed_transactions (tx_hash, kind, market_id, user_address, processed_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [tx_hash, kind, market_id, user_address, processed_at],
        )
    except duckdb.ConstraintException as e:
        raise DuplicateTransaction(tx_hash) from e
