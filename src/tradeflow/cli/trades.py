"""Trades subcommand: stats, recent, export."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import duckdb
import typer

from tradeflow.models.trade import normalize_pair
from tradeflow.storage.db import get_connection
from tradeflow.storage.export import export_trades_to_parquet
from tradeflow.storage.trades import recent_trades, trade_stats

app = typer.Typer(help="Stored trade statistics, listing and export")

_EMPTY_HINT = "No trades stored yet. Run: tradeflow pipeline run"


@contextmanager
def _read_store(ctx: typer.Context) -> Iterator[duckdb.DuckDBPyConnection]:
    """Read-only connection to the store, so a running consumer keeps its lock."""
    db_path = ctx.obj["settings"].db_path
    if str(db_path) != ":memory:" and not Path(db_path).exists():
        typer.echo(_EMPTY_HINT)
        raise typer.Exit(0)
    try:
        conn = get_connection(db_path, read_only=True)
    except duckdb.Error as e:
        typer.echo(f"Cannot open store {db_path}: {e}", err=True)
        raise typer.Exit(1)
    try:
        yield conn
    except duckdb.Error as e:
        typer.echo(f"Cannot read store {db_path}: {e}", err=True)
        raise typer.Exit(1)
    finally:
        conn.close()


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show trade table statistics (counts, time range, missing ids by pair)."""
    with _read_store(ctx) as conn:
        s = trade_stats(conn)
    typer.echo(f"Total trades: {s['total_trades']}")
    typer.echo(f"Min event_time: {s.get('min_event_time')}")
    typer.echo(f"Max event_time: {s.get('max_event_time')}")
    typer.echo(f"Last written_at: {s.get('last_written_at')}")
    if s.get("by_pair"):
        typer.echo("By pair:")
        for row in s["by_pair"]:
            typer.echo(
                f"  {row['pair']}  {row['count']}  ids {row['min_trade_id']}..{row['max_trade_id']}"
                f"  missing {row['missing']}"
            )


@app.command("recent")
def recent(
    ctx: typer.Context,
    n: int = typer.Option(20, "--n", "-n", help="Number of trades to show"),
    pair: str | None = typer.Option(None, "--pair", help="Filter by pair, e.g. BTC-USDT"),
) -> None:
    """Show the latest stored trades, newest first."""
    with _read_store(ctx) as conn:
        rows = recent_trades(conn, limit=n, pair=normalize_pair(pair) if pair else None)
    if not rows:
        typer.echo(_EMPTY_HINT)
        return
    for r in rows:
        typer.echo(
            f"{r['pair']}  #{r['trade_id']}  {r['price'].normalize():f} x {r['quantity'].normalize():f}"
            f"  {r['side']}  E={r['event_time']}"
        )


@app.command("export")
def export(
    ctx: typer.Context,
    pair: str | None = typer.Option(None, "--pair", help="Filter by pair"),
    output: str = typer.Option("trades.parquet", "--output", "-o", help="Output path"),
) -> None:
    """Export stored trades to Parquet."""
    with _read_store(ctx) as conn:
        count = export_trades_to_parquet(conn, output, pair=normalize_pair(pair) if pair else None)
    typer.echo(f"Exported {count} trades to {output}")
