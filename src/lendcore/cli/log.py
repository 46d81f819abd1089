"""Log subcommand: stats, list, export."""

from __future__ import annotations

import typer

from lendcore.storage.db import get_connection, init_schema
from lendcore.storage.event_log import list_events, log_stats
from lendcore.storage.export import export_events_to_parquet

app = typer.Typer(help="Lending event log export and statistics")


@app.command("export")
def export(
    ctx: typer.Context,
    market: str | None = typer.Option(None, "--market", "-m", help="Filter by market ID"),
    output: str = typer.Option("lending_events.parquet", "--output", "-o", help="Output path"),
) -> None:
    """Export lending events to Parquet."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        count = export_events_to_parquet(conn, output, market_id=market)
        typer.echo(f"Exported {count} events to {output}")
    finally:
        conn.close()


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show event counts by type and status."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        s = log_stats(conn)
        typer.echo(f"Total events: {s['total_events']}")
        typer.echo(f"First created_at: {s.get('min_created_at')}")
        typer.echo(f"Last created_at: {s.get('max_created_at')}")
        for row in s["by_type"]:
            typer.echo(f"  {row['event_type']:<16} {row['status']:<10} {row['count']}")
    finally:
        conn.close()


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    user: str | None = typer.Option(None, "--user", "-u", help="Filter by user address"),
    market: str | None = typer.Option(None, "--market", "-m", help="Filter by market ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max events"),
) -> None:
    """Most recent events, newest first."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        for e in list_events(conn, user_address=user, market_id=market, limit=limit):
            line = f"{e.id:>6} {e.event_type.value:<16} {e.status.value:<10} {e.user_address} {e.market_id}"
            if e.error_code:
                line += f"  {e.error_code}"
            typer.echo(line)
    finally:
        conn.close()
