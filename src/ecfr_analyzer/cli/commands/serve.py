"""
Long-running service commands
"""

import logging

import click
from rich.console import Console

from ...analysis.analysis_service import AnalysisService
from ...ingestion.refresh_service import RefreshService
from ..utils.async_runner import GracefulKiller, async_command
from ..utils.config_loader import load_cli_config

logger = logging.getLogger(__name__)


@click.group()
def serve() -> None:
    """
    Run the ingest or analytics service until SIGINT / SIGTERM.
    """
    pass


@serve.command("refresh")
@click.pass_context
@async_command
async def serve_refresh(ctx: click.Context) -> None:
    """
    Scheduled title refreshes plus manual refresh triggers.

    The initial download starts after INITIAL_DOWNLOAD_DELAY_MINUTES, then a
    refresh runs every REFRESH_INTERVAL_HOURS.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    service = RefreshService(config)
    killer = GracefulKiller()
    try:
        await service.initialize()
        console.print("[green]Refresh service running[/green]")
        await service.run(killer.stop_event)
        logger.info(f"Received {killer.signal_name or 'stop'}, shutting down")
    finally:
        await service.shutdown()
        killer.restore()


@serve.command("analysis")
@click.option(
    "--no-autostart", is_flag=True, help="Wait for control requests instead of starting workers"
)
@click.pass_context
@async_command
async def serve_analysis(ctx: click.Context, no_autostart: bool) -> None:
    """
    Analytics worker threads with control requests and status logging.

    Workers start after ANALYSIS_STARTUP_DELAY_MINUTES unless --no-autostart.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    service = AnalysisService(config)
    killer = GracefulKiller()
    try:
        await service.initialize()
        console.print("[green]Analysis service running[/green]")
        await service.run(killer.stop_event, start_workers=not no_autostart)
        logger.info(f"Received {killer.signal_name or 'stop'}, stopping analysis threads")
    finally:
        await service.shutdown()
        killer.restore()
