"""
Title refresh commands
"""

from typing import Optional

import click
from rich.console import Console

from ...ingestion.refresh_service import RefreshService
from ...ingestion.title_refresher import describe_progress
from ...models.errors import TitleValidationError
from ...models.record_models import RefreshType, TriggeredBy
from ...storage.document_store import DocumentStore
from ..ui.display import create_refresh_panel
from ..utils.async_runner import GracefulKiller, async_command
from ..utils.config_loader import load_cli_config
from ..utils.validation import title_number_callback


@click.group()
def refresh() -> None:
    """
    Download and ingest CFR titles.

    Jobs record their progress in MongoDB and resume from the last processed
    title when interrupted.
    """
    pass


@refresh.command("run")
@click.pass_context
@async_command
async def run_refresh(ctx: click.Context) -> None:
    """
    Refresh every title whose upstream issue is newer than the stored copy.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    killer = GracefulKiller()
    try:
        async with RefreshService(config) as service:
            with console.status("Refreshing titles..."):
                final = await service.run_refresh(killer.stop_event)
    finally:
        killer.restore()

    if killer.kill_now:
        console.print("[yellow]Stopped after the current title; run again to resume[/yellow]")
    console.print(create_refresh_panel(final))


@refresh.command()
@click.pass_context
@async_command
async def initial(ctx: click.Context) -> None:
    """
    Download every non-reserved title regardless of freshness.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    killer = GracefulKiller()
    try:
        async with RefreshService(config) as service:
            with console.status("Downloading all titles..."):
                final = await service.run_initial(killer.stop_event)
    finally:
        killer.restore()

    if killer.kill_now:
        console.print("[yellow]Stopped after the current title; run again to resume[/yellow]")
    console.print(create_refresh_panel(final))


@refresh.command()
@click.argument("number", type=int, callback=title_number_callback)
@click.pass_context
@async_command
async def title(ctx: click.Context, number: int) -> None:
    """
    Force-download a single title NUMBER (1-50).
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    async with RefreshService(config) as service:
        try:
            with console.status(f"Refreshing title {number}..."):
                result = await service.refresher.refresh_single_title(number)
        except TitleValidationError as e:
            raise click.ClickException(str(e)) from e

    info = result.get("title", {})
    console.print(f"[green]✓ Title {number} refreshed[/green]: {info.get('name', '')}")
    if info.get("upToDateAsOf"):
        console.print(f"  Up to date as of {info['upToDateAsOf']}")


@refresh.command()
@click.option("--title", "title_number", type=int, help="Queue a single-title refresh")
@click.option("--initial", "initial_job", is_flag=True, help="Queue a full initial download")
@click.pass_context
@async_command
async def trigger(ctx: click.Context, title_number: Optional[int], initial_job: bool) -> None:
    """
    Queue a manual refresh for a running refresh service to pick up.
    """
    console: Console = ctx.obj["console"]
    if title_number is not None and initial_job:
        raise click.UsageError("--title and --initial are mutually exclusive")
    if title_number is not None:
        title_number_callback(ctx, None, title_number)  # type: ignore[arg-type]

    config = await load_cli_config(ctx)
    async with DocumentStore(config.mongo, create_indexes=False) as store:
        if title_number is not None:
            row = await store.create_refresh_progress(
                RefreshType.SINGLE_TITLE,
                TriggeredBy.MANUAL_SINGLE,
                metadata={"targetTitle": title_number},
            )
        else:
            refresh_type = RefreshType.INITIAL if initial_job else RefreshType.REFRESH
            row = await store.create_refresh_progress(refresh_type, TriggeredBy.MANUAL)

    console.print(f"[green]Queued trigger {row['_id']}[/green]: {describe_progress(row)}")
