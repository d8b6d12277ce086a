"""Pipeline subcommand: run, fetch, consume, publish-sample."""

from __future__ import annotations

import asyncio
import signal
import sys
from decimal import Decimal, InvalidOperation

import typer
from pydantic import ValidationError

from tradeflow.config.settings import Settings
from tradeflow.errors import ConfigError, TradeflowError
from tradeflow.pipeline.manager import PipelineManager

app = typer.Typer(help="Run the ingestion pipeline (all roles, or fetcher / consumer alone)")

_BROKER_HELP = "Broker backend: kafka or memory (overrides config)"
_PAIR_HELP = "Trading pair, e.g. BTC-USDT (overrides config)"


def _settings(ctx: typer.Context, broker: str | None, pair: str | None) -> Settings:
    settings: Settings = ctx.obj["settings"]
    try:
        return settings.override("broker", backend=broker).override("feed", pair=pair).validate()
    except ConfigError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(2)


def _run(settings: Settings, *, fetch: bool, consume: bool, label: str) -> None:
    manager = PipelineManager(settings)
    stop_event = asyncio.Event()

    def shutdown() -> None:
        stop_event.set()

    loop = asyncio.new_event_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, shutdown)
        loop.add_signal_handler(signal.SIGTERM, shutdown)
    failed = False
    try:
        typer.echo(f"Starting {label} for {settings.pair} on {settings.broker_backend} (Ctrl+C to stop)...")
        loop.run_until_complete(manager.run(stop_event=stop_event, fetch=fetch, consume=consume))
    except KeyboardInterrupt:
        pass
    except TradeflowError as e:
        failed = True
        typer.echo(f"Pipeline failed: {e}", err=True)
    finally:
        manager.close()
        loop.close()
    if failed:
        raise typer.Exit(1)
    status = manager.get_status()
    typer.echo(f"Stopped. ingested={status['events_ingested']} written={status['rows_written']}")


@app.command("run")
def run(
    ctx: typer.Context,
    broker: str | None = typer.Option(None, "--broker", help=_BROKER_HELP),
    pair: str | None = typer.Option(None, "--pair", help=_PAIR_HELP),
) -> None:
    """Run feed connector, publisher and subscriber in one process."""
    _run(_settings(ctx, broker, pair), fetch=True, consume=True, label="pipeline")


@app.command("fetch")
def fetch(
    ctx: typer.Context,
    broker: str | None = typer.Option(None, "--broker", help=_BROKER_HELP),
    pair: str | None = typer.Option(None, "--pair", help=_PAIR_HELP),
) -> None:
    """Run feed connector and publisher only: exchange feed -> broker topic."""
    _run(_settings(ctx, broker, pair), fetch=True, consume=False, label="fetcher")


@app.command("consume")
def consume(
    ctx: typer.Context,
    broker: str | None = typer.Option(None, "--broker", help=_BROKER_HELP),
    pair: str | None = typer.Option(None, "--pair", help=_PAIR_HELP),
) -> None:
    """Run the subscriber only: broker topic -> DuckDB."""
    _run(_settings(ctx, broker, pair), fetch=False, consume=True, label="consumer")


@app.command("publish-sample")
def publish_sample(
    ctx: typer.Context,
    broker: str | None = typer.Option(None, "--broker", help=_BROKER_HELP),
    pair: str | None = typer.Option(None, "--pair", help=_PAIR_HELP),
    price: str = typer.Option("30000.50", "--price", help="Trade price (decimal string)"),
    quantity: str = typer.Option("0.001", "--quantity", help="Trade quantity (decimal string)"),
    trade_id: int | None = typer.Option(None, "--trade-id", help="Trade id (default: current ms epoch)"),
) -> None:
    """Publish one synthetic trade to the topic to check broker connectivity."""
    settings = _settings(ctx, broker, pair)
    try:
        price_d, quantity_d = Decimal(price), Decimal(quantity)
    except InvalidOperation:
        typer.echo("--price and --quantity must be decimal numbers", err=True)
        raise typer.Exit(2)
    manager = PipelineManager(settings)
    try:
        md = asyncio.run(
            manager.publish_sample(trade_id=trade_id, price=price_d, quantity=quantity_d)
        )
    except ValidationError as e:
        typer.echo(f"Invalid sample trade: {e.errors()[0].get('msg')}", err=True)
        raise typer.Exit(2)
    except TradeflowError as e:
        typer.echo(f"Publish failed: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Published to {md.topic} partition {md.partition} offset {md.offset}")
