"""Main CLI entry point for Rollwright.

Usage:
    rollwright serve
    rollwright status shop
    rollwright trigger 3f9c2ab shop billing/worker
    rollwright sync-now shop
    rollwright rollback shop
    rollwright clear shop
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from rollwright.cli import units as units_cli
from rollwright.config import RollwrightConfig, load_config
from rollwright.logging import setup_logging

app = typer.Typer(
    name="rollwright",
    help="Rollwright: build, publish, reconcile, verify and roll back releases",
    no_args_is_help=True,
)

app.command("status")(units_cli.status)
app.command("sync-now")(units_cli.sync_now)
app.command("rollback")(units_cli.rollback)
app.command("clear")(units_cli.clear)
app.command("trigger")(units_cli.trigger)
app.command("events")(units_cli.events)

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Rollwright configuration
        api_url: Operator API base URL the client commands talk to
    """

    def __init__(self, config: RollwrightConfig, api_url: str | None = None):
        self.config = config
        self.api_url = api_url or config.web.api_url


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: RollwrightConfig, api_url: str | None = None) -> AppContext:
    global _app_context
    _app_context = AppContext(config, api_url=api_url)
    return _app_context


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default: [web].host)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default: [web].port)"),
    ] = None,
) -> None:
    """Start the release coordinator and the operator API server."""
    import uvicorn

    from rollwright.web.app import create_app

    ctx = get_app_context()
    config = ctx.config
    bind_host = host or config.web.host
    bind_port = port or config.web.port

    console.print("[bold cyan]Starting Rollwright[/bold cyan]")
    console.print(f"[dim]Listening:[/dim] {bind_host}:{bind_port}")
    console.print(f"[dim]Units:[/dim] {', '.join(sorted(config.units)) or '(none configured)'}")
    console.print(f"[dim]Manifests:[/dim] {config.manifest.repo_path}")
    console.print()

    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_level=config.logging.level.lower(),
    )


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    api_url: Annotated[
        Optional[str],
        typer.Option("--api-url", help="Operator API base URL (default: [web].api_url)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration, configure logging and initialize the CLI context."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config)

    initialize_context(config, api_url=api_url)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
