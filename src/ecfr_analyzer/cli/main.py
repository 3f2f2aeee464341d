"""
Main CLI entry point for the eCFR Analyzer
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

from .. import __version__

# Install rich traceback handler for better error display
install(show_locals=True)

# Initialize console
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)


@click.group()
@click.version_option(version=__version__, prog_name="ecfr-analyzer")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file (default: $ECFR_ANALYZER_CONFIG_PATH)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, no_color: bool, config_path: Optional[Path]) -> None:
    """
    eCFR Analyzer - regulation ingest and analytics

    Downloads the Code of Federal Regulations, stores every node in MongoDB,
    indexes it in Elasticsearch and computes per-title analytics.

    Examples:
      ecfr-analyzer serve refresh            # Scheduled ingest service
      ecfr-analyzer serve analysis           # Analytics worker service
      ecfr-analyzer refresh title 40         # Force-refresh one title
      ecfr-analyzer analysis restart text_metrics
      ecfr-analyzer status                   # Jobs and threads at a glance
    """
    ctx.ensure_object(dict)

    # Configure console
    if no_color:
        ctx.obj["console"] = Console(force_terminal=False, no_color=True)
    else:
        ctx.obj["console"] = console

    # Configure logging level
    if verbose:
        logging.getLogger().setLevel(logging.INFO)
        logging.getLogger("ecfr_analyzer").setLevel(logging.DEBUG)
        ctx.obj["verbose"] = True
    else:
        ctx.obj["verbose"] = False

    ctx.obj["no_color"] = no_color
    ctx.obj["config_path"] = config_path


# Import and register commands at module level to support testing
from .commands import analysis, index, refresh, serve, status  # noqa: E402

cli.add_command(refresh.refresh)
cli.add_command(index.index)
cli.add_command(analysis.analysis)
cli.add_command(serve.serve)
cli.add_command(status.status)


def main() -> None:
    """Main entry point for the CLI application"""
    try:
        cli()

    except KeyboardInterrupt:
        console.print("\n[yellow]Operation interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        if "--verbose" in sys.argv or "-v" in sys.argv:
            console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
