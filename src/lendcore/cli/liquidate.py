"""Liquidate subcommand: run a liquidation batch, reconcile cancelled escrows."""

from __future__ import annotations

import asyncio

import typer

from lendcore.runtime import open_service

app = typer.Typer(help="Liquidation and escrow maintenance")


@app.command("run")
def run(
    ctx: typer.Context,
    market: str = typer.Option(..., "--market", "-m", help="Market ID"),
    user: str | None = typer.Option(None, "--user", "-u", help="Only this borrower"),
    limit: int | None = typer.Option(None, "--limit", "-n", help="Batch cap (default from config)"),
) -> None:
    """Liquidate unhealthy positions in a market, worst first."""

    async def _run():
        async with open_service(ctx.obj["settings"], sync_markets=False) as service:
            return await service.liquidate(market, user, limit)

    result = asyncio.run(_run())
    if not result.success:
        typer.echo(f"{result.error.code}: {result.error.message}", err=True)
        raise typer.Exit(1)
    data = result.data or {}
    typer.echo(f"Processed {data.get('processed', 0)} positions in {market}")
    for r in data.get("results", []):
        typer.echo(
            f"  liquidated {r['positionId']} ({r['userAddress']}): seized {r['collateralSeized']}, "
            f"debt {r['debtRepaid']}, shortfall {r['shortfall']}"
        )
    for err in data.get("errors", []):
        typer.echo(f"  failed {err['positionId']} ({err['userAddress']}): {err['code']} {err['message']}")


@app.command("reconcile-escrows")
def reconcile_escrows(
    ctx: typer.Context,
    market: str = typer.Option(..., "--market", "-m", help="Market ID"),
) -> None:
    """Remove collateral whose expired escrow was cancelled on the ledger."""

    async def _run():
        async with open_service(ctx.obj["settings"], sync_markets=False) as service:
            return await service.reconcile_expired_escrows(market)

    result = asyncio.run(_run())
    if not result.success:
        typer.echo(f"{result.error.code}: {result.error.message}", err=True)
        raise typer.Exit(1)
    data = result.data or {}
    typer.echo(f"Cancelled escrows: {len(data.get('cancelled', []))}, skipped: {len(data.get('skipped', []))}")
