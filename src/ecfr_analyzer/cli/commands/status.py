"""
Status and health check commands
"""

from typing import Any, Dict

import click
from rich.columns import Columns
from rich.console import Console

from ...models.errors import DocumentStoreError
from ...storage.document_store import DocumentStore
from ..ui.display import (
    create_error_display,
    create_rebuild_panel,
    create_refresh_panel,
    create_thread_table,
)
from ..utils.async_runner import async_command
from ..utils.config_loader import load_cli_config


async def collect_status(store: DocumentStore) -> Dict[str, Any]:
    return {
        "titles": len(await store.list_titles()),
        "documents": await store.count_documents(),
        "sections": await store.count_sections(),
        "refresh": await store.latest_refresh_progress(),
        "rebuild": await store.latest_rebuild_progress(),
        "threads": await store.list_threads(),
    }


@click.command()
@click.pass_context
@async_command
async def status(ctx: click.Context) -> None:
    """
    Show ingest and analysis state.

    Prints stored title and document counts, the latest refresh job, the
    latest search index rebuild and every analysis thread.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    try:
        with console.status("Reading status..."):
            async with DocumentStore(config.mongo, create_indexes=False) as store:
                info = await collect_status(store)
    except DocumentStoreError as e:
        console.print(create_error_display(e, context="Connecting to MongoDB"))
        ctx.exit(1)

    console.print(
        f"[bold]{info['titles']}[/bold] titles, [bold]{info['documents']}[/bold] documents "
        f"([bold]{info['sections']}[/bold] sections)"
    )
    console.print(
        Columns([create_refresh_panel(info["refresh"]), create_rebuild_panel(info["rebuild"])])
    )
    if info["threads"]:
        console.print(create_thread_table(info["threads"]))
    else:
        console.print("[dim]No analysis threads recorded yet[/dim]")

    if not config.section_analysis_enabled:
        console.print("[yellow]GROK_API_KEY not set; section analysis is disabled[/yellow]")
