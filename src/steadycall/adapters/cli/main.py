"""Main CLI application entry point."""

import sys
from typing import Optional
import typer
from rich.console import Console

from .commands import (
    backoff_command,
    config_command,
    info_command,
)

# Create Typer app
app = typer.Typer(
    name="steadycall",
    help="SteadyCall - retries, circuit breakers and rate limits for remote calls",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Rich console for output
console = Console()


def _run(command, *args, **kwargs):
    """Run a command, turning failures into a non-zero exit after they were presented."""
    try:
        command(*args, **kwargs)
    except typer.Exit:
        raise
    except Exception:
        raise typer.Exit(code=1)


@app.command(name="info")
def info(
    config: Optional[str] = typer.Option(
        None,
        "--config", "-c",
        help="Path to configuration file",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output with technical details",
    ),
):
    """
    Show configured dependencies.

    Lists every dependency with its effective retry policy, circuit
    breaker and rate limit, and where each setting came from.
    """
    _run(info_command, config_path=config, verbose=verbose, console=console)


@app.command(name="backoff")
def backoff(
    name: str = typer.Argument(
        ...,
        help="Dependency name (e.g. stripe)",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config", "-c",
        help="Path to configuration file",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output with technical details",
    ),
):
    """
    Preview the retry delay schedule for a dependency.
    """
    _run(backoff_command, name=name, config_path=config, verbose=verbose, console=console)


@app.command(name="config")
def config(
    init: bool = typer.Option(
        False,
        "--init",
        help="Create default configuration file",
    ),
    path: Optional[str] = typer.Option(
        None,
        "--path",
        help="Configuration file path",
    ),
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output with technical details",
    ),
):
    """
    Manage configuration.

    Create, view, or locate SteadyCall configuration files.
    """
    _run(config_command, init=init, path=path, show=show, verbose=verbose, console=console)


def main():
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
