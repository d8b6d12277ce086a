"""Root CLI app - entry point and command registration."""

from pathlib import Path

import typer

from tradeflow.config import get_settings
from tradeflow.config.settings import configure_logging
from tradeflow.errors import ConfigError

app = typer.Typer(
    name="tradeflow",
    help="tradeflow - Real-time trade ingestion: exchange feed -> Kafka -> DuckDB.",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    config_dir: Path | None = typer.Option(
        None, "--config-dir", "-C", help="Config directory (default: ./config or package config)"
    ),
    profile: str | None = typer.Option(
        None, "--profile", "-p", help="Config profile (e.g. dev) to overlay on default.toml"
    ),
) -> None:
    """Load and validate settings, configure logging, and store them in context."""
    try:
        settings = get_settings(profile, config_dir=config_dir).validate()
    except ConfigError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(2)
    configure_logging(settings)
    ctx.obj = {"settings": settings, "config_dir": config_dir, "profile": profile}


# Subcommands registered from other modules
from tradeflow.cli import api_cmd, pipeline, trades  # noqa: E402

app.add_typer(pipeline.app, name="pipeline")
app.add_typer(trades.app, name="trades")
app.add_typer(api_cmd.app, name="api")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
