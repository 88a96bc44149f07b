"""Main CLI entry point for querytabs."""

from typing import Optional
import logging
import sys

import structlog
import typer

from . import __version__


# Create main app
app = typer.Typer(
    name="querytabs",
    help="Run and track SQL executions across workspace tabs",
    no_args_is_help=True,
)

# Global state
class GlobalState:
    json_output: bool = False
    verbose: bool = False

state = GlobalState()


def setup_logging(verbose: bool = False) -> None:
    """Configure structured logging to stderr."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if verbose else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"querytabs version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    json_output: bool = typer.Option(
        False, "--json", "-j",
        help="Output as JSON instead of tables"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug information"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """querytabs - submit, track, page and cancel SQL executions from tabs."""
    state.json_output = json_output
    state.verbose = verbose
    setup_logging(verbose)


# Import and register command groups
from .commands import config_cmd, queries, tabs

app.add_typer(config_cmd.app, name="config")
app.add_typer(tabs.app, name="tabs")
queries.register(app)


if __name__ == "__main__":
    app()
