"""API server command."""

import typer

from tradeflow.api.main import run_api

app = typer.Typer(help="Start the observability API server")


@app.callback(invoke_without_command=True)
def api(
    ctx: typer.Context,
    host: str = typer.Option(None, "--host", help="Bind host (default from [api] config)"),
    port: int = typer.Option(None, "--port", help="Bind port (default from [api] config)"),
    with_pipeline: bool = typer.Option(
        False, "--with-pipeline", help="Run feed, publisher and subscriber in the same process",
    ),
) -> None:
    if ctx.invoked_subcommand is not None:
        return
    settings = ctx.obj["settings"]
    run_api(
        host=host or settings.api_host,
        port=port or settings.api_port,
        with_pipeline=with_pipeline,
        profile=ctx.obj["profile"],
    )


if __name__ == "__main__":
    app()
