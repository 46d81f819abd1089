"""Prices subcommand: set and show oracle prices."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

import typer

from lendcore.errors import LendingError
from lendcore.lending.registry import MarketRegistry, PriceFeed
from lendcore.lending.service import canonical
from lendcore.storage.db import get_connection, init_schema

app = typer.Typer(help="USD prices per market side")


@app.command("set")
def set_cmd(
    ctx: typer.Context,
    market_id: str = typer.Argument(..., help="Market ID"),
    side: str = typer.Argument(..., help="collateral or debt"),
    price: str = typer.Argument(..., help="USD price"),
    source: str = typer.Option("cli", "--source", "-s", help="Price source label"),
) -> None:
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        MarketRegistry(conn).get_market(market_id)
        PriceFeed(conn).set_price(market_id, side, Decimal(price), source)
        typer.echo(f"{market_id} {side} = {price} USD")
    except InvalidOperation:
        typer.echo(f"Not a number: {price}", err=True)
        raise typer.Exit(1)
    except LendingError as e:
        typer.echo(f"{e.code.value}: {e.message}", err=True)
        raise typer.Exit(1)
    finally:
        conn.close()


@app.command("show")
def show(ctx: typer.Context, market_id: str = typer.Argument(..., help="Market ID")) -> None:
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        quote = PriceFeed(conn).get_prices(market_id)
    finally:
        conn.close()
    if quote is None:
        typer.echo(f"Prices not set for {market_id}")
        return
    typer.echo(f"collateral: {canonical(quote.collateral_price_usd)} USD")
    typer.echo(f"debt:       {canonical(quote.debt_price_usd)} USD")
    typer.echo(f"updated_at: {quote.updated_at}")
