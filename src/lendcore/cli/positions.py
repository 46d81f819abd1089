"""Positions subcommand: inspect a borrower position and its repayment quotes."""

from __future__ import annotations

import asyncio
import json

import typer

from lendcore.runtime import open_service

app = typer.Typer(help="Borrower and lender positions")


def _print(result) -> None:
    if not result.success:
        typer.echo(f"{result.error.code}: {result.error.message}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(result.data, indent=2))


@app.command("show")
def show(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Borrower address"),
    market: str = typer.Option(..., "--market", "-m", help="Market ID"),
) -> None:
    """Position with accrued interest and health metrics."""

    async def _run():
        async with open_service(ctx.obj["settings"], sync_markets=False) as service:
            return service.get_position(user, market)

    _print(asyncio.run(_run()))


@app.command("quote")
def quote(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Borrower address"),
    market: str = typer.Option(..., "--market", "-m", help="Market ID"),
) -> None:
    """Minimum, full and overpayment repayment amounts."""

    async def _run():
        async with open_service(ctx.obj["settings"], sync_markets=False) as service:
            return service.quote_repayment(user, market)

    _print(asyncio.run(_run()))


@app.command("supply")
def supply(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Lender address"),
    market: str = typer.Option(..., "--market", "-m", help="Market ID"),
) -> None:
    """Lender supply position with unclaimed yield."""

    async def _run():
        async with open_service(ctx.obj["settings"], sync_markets=False) as service:
            return service.get_supply_position(user, market)

    _print(asyncio.run(_run()))
