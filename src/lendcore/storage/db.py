"""DuckDB connection and schema init."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

SCHEMA_SQL = """
CREATE SEQUENCE IF NOT EXISTS lending_event_seq START 1;

-- Market registry: static configuration plus pool aggregates
CREATE TABLE IF NOT EXISTS markets (
    market_id               VARCHAR PRIMARY KEY,
    name                    VARCHAR,
    collateral_currency     VARCHAR NOT NULL,
    collateral_issuer       VARCHAR,
    debt_currency           VARCHAR NOT NULL,
    debt_issuer             VARCHAR,
    max_ltv_ratio           DECIMAL(18, 8) NOT NULL,
    liquidation_ltv_ratio   DECIMAL(18, 8) NOT NULL,
    base_interest_rate      DECIMAL(18, 8) NOT NULL,
    liquidation_penalty     DECIMAL(18, 8) NOT NULL,
    reserve_factor          DECIMAL(18, 8) NOT NULL,
    min_collateral_amount   DECIMAL(38, 18) NOT NULL,
    min_borrow_amount       DECIMAL(38, 18) NOT NULL,
    min_supply_amount       DECIMAL(38, 18) NOT NULL,
    vault_id                VARCHAR,
    vault_scale             INTEGER NOT NULL,
    active                  BOOLEAN NOT NULL,
    global_yield_index      DECIMAL(38, 18) NOT NULL,
    total_supplied          DECIMAL(38, 18) NOT NULL,
    total_borrowed          DECIMAL(38, 18) NOT NULL,
    total_reserves          DECIMAL(38, 18) NOT NULL,
    last_index_update       BIGINT,
    updated_at              BIGINT NOT NULL
);

-- Latest USD price per (market, side)
CREATE TABLE IF NOT EXISTS prices (
    market_id       VARCHAR NOT NULL,
    side            VARCHAR NOT NULL,
    price_usd       DECIMAL(38, 18) NOT NULL,
    source          VARCHAR,
    updated_at      BIGINT NOT NULL,
    PRIMARY KEY (market_id, side)
);

-- Borrower positions (never deleted, terminal rows kept for audit)
CREATE TABLE IF NOT EXISTS positions (
    id                      VARCHAR PRIMARY KEY,
    user_address            VARCHAR NOT NULL,
    market_id               VARCHAR NOT NULL,
    status                  VARCHAR NOT NULL,
    collateral_amount       DECIMAL(38, 18) NOT NULL,
    loan_principal          DECIMAL(38, 18) NOT NULL,
    interest_accrued        DECIMAL(38, 18) NOT NULL,
    interest_rate_at_open   DECIMAL(18, 8),
    last_accrual_at         BIGINT NOT NULL,
    opened_at               BIGINT NOT NULL,
    closed_at               BIGINT,
    liquidated_at           BIGINT
);

-- Lender supply positions
CREATE TABLE IF NOT EXISTS supply_positions (
    id                  VARCHAR PRIMARY KEY,
    user_address        VARCHAR NOT NULL,
    market_id           VARCHAR NOT NULL,
    status              VARCHAR NOT NULL,
    supply_amount       DECIMAL(38, 18) NOT NULL,
    yield_index         DECIMAL(38, 18) NOT NULL,
    last_yield_update   BIGINT NOT NULL,
    opened_at           BIGINT NOT NULL,
    closed_at           BIGINT
);

-- Escrows backing collateral
CREATE TABLE IF NOT EXISTS escrow_records (
    tx_hash         VARCHAR PRIMARY KEY,
    position_id     VARCHAR NOT NULL,
    market_id       VARCHAR NOT NULL,
    owner           VARCHAR NOT NULL,
    sequence        BIGINT NOT NULL,
    destination     VARCHAR NOT NULL,
    amount          DECIMAL(38, 18) NOT NULL,
    currency        VARCHAR NOT NULL,
    issuer          VARCHAR,
    condition       VARCHAR NOT NULL,
    fulfillment     VARCHAR NOT NULL,
    preimage        VARCHAR NOT NULL,
    cancel_after    BIGINT,
    status          VARCHAR NOT NULL,
    created_at      BIGINT NOT NULL,
    consumed_at     BIGINT
);

-- Every external transaction hash whose effect has been applied
CREATE TABLE IF NOT EXISTS processed_transactions (
    tx_hash         VARCHAR PRIMARY KEY,
    kind            VARCHAR NOT NULL,
    market_id       VARCHAR NOT NULL,
    user_address    VARCHAR NOT NULL,
    processed_at    BIGINT NOT NULL
);

-- Append-only lending event log (one terminal update per row)
CREATE TABLE IF NOT EXISTS lending_events (
    id              BIGINT PRIMARY KEY DEFAULT nextval('lending_event_seq'),
    event_type      VARCHAR NOT NULL,
    status          VARCHAR NOT NULL,
    user_address    VARCHAR NOT NULL,
    market_id       VARCHAR NOT NULL,
    position_id     VARCHAR,
    amount          DECIMAL(38, 18),
    currency        VARCHAR,
    idempotency_key VARCHAR,
    params_hash     VARCHAR,
    tx_hash         VARCHAR,
    pending_tx_hash VARCHAR,
    error_code      VARCHAR,
    error_message   VARCHAR,
    params          JSON,
    result          JSON,
    created_at      BIGINT NOT NULL,
    resolved_at     BIGINT
);
"""


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    Use read_only=True for inspection commands while the API process holds the write lock."""
    path = Path(db_path)
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables and sequences if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise


@contextmanager
def transaction(conn: DuckDBPyConnection) -> Iterator[DuckDBPyConnection]:
    """Run the block in one DuckDB transaction; roll back on any exception."""
    conn.begin()
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
