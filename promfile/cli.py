"""
Command-line interface for promfile.

Provides the `promfile` command to serve a metrics file over HTTP.
"""

import logging
import os
from pathlib import Path

import typer
from typing_extensions import Annotated
import uvicorn

from .filewatch import POLL_INTERVAL
from .metrics import RETRY_INTERVAL, MetricsFileError, load_metrics


app = typer.Typer(add_completion=False)

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def configure_logging(level: str) -> None:
    """Send promfile logs to stderr at the given level."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def main_command(
    file: Annotated[
        Path,
        typer.Argument(help="Metrics file to serve", dir_okay=False)
    ],
    host: Annotated[
        str,
        typer.Option(help="Host to bind to")
    ] = "0.0.0.0",
    port: Annotated[
        int,
        typer.Option(help="Port to run server on")
    ] = 8080,
    poll_interval: Annotated[
        float,
        typer.Option(help="Seconds between two checks of the symlinks leading to the file", min=0.1)
    ] = POLL_INTERVAL,
    retry_interval: Annotated[
        float,
        typer.Option(help="Seconds to wait before watching again a file that went missing", min=0.1)
    ] = RETRY_INTERVAL,
    log_level: Annotated[
        str,
        typer.Option(help="Log level: critical, error, warning, info or debug")
    ] = "info",
):
    """Serve FILE on /metrics and reload it whenever it changes."""
    log_level = log_level.lower()
    if log_level not in LOG_LEVELS:
        typer.echo(f"Error: unknown log level {log_level!r}", err=True)
        raise typer.Exit(1)

    configure_logging(log_level)

    # Fail fast when the file cannot be served at all
    try:
        load_metrics(str(file))
    except MetricsFileError as e:
        typer.echo(f"Error: failed to load metrics: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Serving {file} on http://{host}:{port}/metrics")

    # Pass configuration to the server via environment variables
    os.environ["PROMFILE_PATH"] = str(file)
    os.environ["PROMFILE_POLL_INTERVAL"] = str(poll_interval)
    os.environ["PROMFILE_RETRY_INTERVAL"] = str(retry_interval)

    uvicorn.run(
        "promfile.server:app",
        host=host,
        port=port,
        log_level=log_level,
    )


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    app()
