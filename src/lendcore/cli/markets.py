"""Markets subcommand: sync from config, list, pool metrics."""

from __future__ import annotations

from decimal import Decimal

import typer

from lendcore.errors import LendingError
from lendcore.lending.registry import MarketRegistry
from lendcore.lending.service import canonical
from lendcore.storage.db import get_connection, init_schema

app = typer.Typer(help="Market registry")


@app.command("sync")
def sync(ctx: typer.Context) -> None:
    """Insert or refresh markets from the [[markets]] config tables."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        count = MarketRegistry(conn).sync(settings.market_configs)
        typer.echo(f"Synced {count} markets")
    finally:
        conn.close()


@app.command("list")
def list_cmd(ctx: typer.Context) -> None:
    """List active markets with pool totals."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        markets = MarketRegistry(conn).get_active_markets()
        if not markets:
            typer.echo("No markets. Run: lendcore markets sync")
            return
        for m in markets:
            typer.echo(
                f"{m.market_id}  {m.collateral.currency}->{m.debt.currency}  "
                f"maxLTV={canonical(m.max_ltv_ratio)} liqLTV={canonical(m.liquidation_ltv_ratio)} rate={canonical(m.base_interest_rate)}  "
                f"supplied={canonical(m.total_supplied)} borrowed={canonical(m.total_borrowed)}"
            )
    finally:
        conn.close()


@app.command("pool")
def pool(ctx: typer.Context, market_id: str = typer.Argument(..., help="Market ID")) -> None:
    """Show utilization, APRs and the yield index of a market's pool."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        metrics = MarketRegistry(conn).pool_metrics(market_id)
    except LendingError as e:
        typer.echo(f"{e.code.value}: {e.message}", err=True)
        raise typer.Exit(1)
    finally:
        conn.close()
    for key, value in metrics.model_dump().items():
        typer.echo(f"{key}: {canonical(value) if isinstance(value, Decimal) else value}")
