"""Lending event log - append on entry, resolve exactly once."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from lendcore.models import EventStatus, LendingEvent, Operation

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_COLUMNS = [
    "id",
    "event_type",
    "status",
    "user_address",
    "market_id",
    "position_id",
    "amount",
    "currency",
    "idempotency_key",
    "params_hash",
    "tx_hash",
    "pending_tx_hash",
    "error_code",
    "error_message",
    "params",
    "result",
    "created_at",
    "resolved_at",
]
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM lending_events"


class EventAlreadyResolved(Exception):
    """A terminal update was attempted on an event that is no longer PENDING."""


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(payload: dict[str, Any] | None) -> str | None:
    """Serialize event payloads; Decimals become strings."""
    if payload is None:
        return None
    return json.dumps(payload, default=_json_default, sort_keys=True)


def _loads(raw: Any) -> Any:
    if raw is None or isinstance(raw, dict):
        return raw
    return json.loads(raw)


def _to_event(row: tuple[Any, ...]) -> LendingEvent:
    d = dict(zip(_COLUMNS, row))
    d["params"] = _loads(d["params"]) or {}
    d["result"] = _loads(d["result"])
    return LendingEvent(**d)


def record_pending(
    conn: DuckDBPyConnection,
    event_type: Operation,
    user_address: str,
    market_id: str,
    created_at: int,
    *,
    amount: Decimal | None = None,
    currency: str | None = None,
    idempotency_key: str | None = None,
    params_hash: str | None = None,
    tx_hash: str | None = None,
    params: dict[str, Any] | None = None,
) -> int:
    """Append a PENDING event and return its id."""
    row = conn.execute(
        """
        INSERT INTO lending_events (
            event_type, status, user_address, market_id, amount, currency,
            idempotency_key, params_hash, tx_hash, params, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        [
            event_type.value,
            EventStatus.PENDING.value,
            user_address,
            market_id,
            amount,
            currency,
            idempotency_key,
            params_hash,
            tx_hash,
            dumps(params or {}),
            created_at,
        ],
    ).fetchone()
    return int(row[0])


def _resolve(
    conn: DuckDBPyConnection,
    event_id: int,
    status: EventStatus,
    resolved_at: int,
    *,
    result: dict[str, Any] | None = None,
    position_id: str | None = None,
    tx_hash: str | None = None,
    pending_tx_hash: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> None:
    row = conn.execute(
        """
        UPDATE lending_events SET
            status = ?,
            result = ?,
            position_id = COALESCE(?, position_id),
            tx_hash = COALESCE(?, tx_hash),
            pending_tx_hash = ?,
            error_code = ?,
            error_message = ?,
            resolved_at = ?
        WHERE id = ? AND status = ?
        RETURNING id
        """,
        [
            status.value,
            dumps(result),
            position_id,
            tx_hash,
            pending_tx_hash,
            error_code,
            error_message,
            resolved_at,
            event_id,
            EventStatus.PENDING.value,
        ],
    ).fetchone()
    if row is None:
        raise EventAlreadyResolved(f"event {event_id} is not PENDING")


def complete(
    conn: DuckDBPyConnection,
    event_id: int,
    result: dict[str, Any],
    resolved_at: int,
) -> None:
    """Mark an event COMPLETED with its result payload."""
    _resolve(
        conn,
        event_id,
        EventStatus.COMPLETED,
        resolved_at,
        result=result,
        position_id=result.get("positionId") or result.get("supplyPositionId"),
        tx_hash=result.get("txHash"),
    )


def fail(
    conn: DuckDBPyConnection,
    event_id: int,
    error_code: str,
    error_message: str,
    resolved_at: int,
    *,
    pending_tx_hash: str | None = None,
) -> None:
    """Mark an event FAILED. pending_tx_hash names a submission whose outcome is still unknown."""
    _resolve(
        conn,
        event_id,
        EventStatus.FAILED,
        resolved_at,
        pending_tx_hash=pending_tx_hash,
        error_code=error_code,
        error_message=error_message,
    )


def get_event(conn: DuckDBPyConnection, event_id: int) -> LendingEvent | None:
    row = conn.execute(f"{_SELECT} WHERE id = ?", [event_id]).fetchone()
    return _to_event(row) if row else None


def find_latest_by_key(
    conn: DuckDBPyConnection,
    idempotency_key: str,
    user_address: str,
    market_id: str,
    event_type: Operation,
) -> LendingEvent | None:
    """Most recent attempt carrying this idempotency key in its (user, market, operation) scope."""
    row = conn.execute(
        f"""
        {_SELECT}
        WHERE idempotency_key = ? AND user_address = ? AND market_id = ? AND event_type = ?
        ORDER BY id DESC LIMIT 1
        """,
        [idempotency_key, user_address, market_id, event_type.value],
    ).fetchone()
    return _to_event(row) if row else None


def list_events(
    conn: DuckDBPyConnection,
    *,
    user_address: str | None = None,
    market_id: str | None = None,
    position_id: str | None = None,
    limit: int = 100,
) -> list[LendingEvent]:
    """Newest first, filtered by any of user, market or position."""
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("user_address", user_address),
        ("market_id", market_id),
        ("position_id", position_id),
    ):
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(f"{_SELECT}{where} ORDER BY id DESC LIMIT ?", params + [limit]).fetchall()
    return [_to_event(r) for r in rows]


def log_stats(conn: DuckDBPyConnection) -> dict[str, Any]:
    """Return event log statistics: totals, time range, counts by type and status."""
    total = conn.execute("SELECT COUNT(*) FROM lending_events").fetchone()[0]
    min_ts, max_ts = conn.execute(
        "SELECT MIN(created_at), MAX(created_at) FROM lending_events"
    ).fetchone()
    by_type = conn.execute(
        """
        SELECT event_type, status, COUNT(*) AS cnt FROM lending_events
        GROUP BY event_type, status ORDER BY event_type, status
        """
    ).fetchall()
    return {
        "total_events": total,
        "min_created_at": min_ts,
        "max_created_at": max_ts,
        "by_type": [{"event_type": r[0], "status": r[1], "count": r[2]} for r in by_type],
    }
