"""
Analysis thread control commands
"""

from typing import Any, Dict, List, Optional

import click
from rich.console import Console

from ...analysis.thread_manager import ThreadManager
from ...ingestion.refresh_service import wait_or_stop
from ...models.record_models import ThreadStatus, ThreadType
from ...storage.document_store import DocumentStore
from ..ui.display import create_thread_table
from ..utils.async_runner import GracefulKiller, async_command
from ..utils.config_loader import load_cli_config
from ..utils.validation import THREAD_CHOICES, resolve_thread_types

# Requested status, statuses it may replace, extra fields
_REQUESTS: Dict[str, Dict[str, Any]] = {
    "start": {
        "status": ThreadStatus.PENDING_START.value,
        "from": [
            ThreadStatus.STOPPED.value,
            ThreadStatus.COMPLETED.value,
            ThreadStatus.FAILED.value,
        ],
        "fields": {},
    },
    "stop": {
        "status": ThreadStatus.PENDING_STOP.value,
        "from": [ThreadStatus.RUNNING.value, ThreadStatus.PENDING_START.value],
        "fields": {},
    },
    "restart": {
        "status": ThreadStatus.PENDING_RESTART.value,
        "from": None,
        "fields": {"resumeData": None},
    },
}


async def request_thread_action(
    store: DocumentStore, thread_type: ThreadType, action: str
) -> Optional[Dict[str, Any]]:
    """
    Write a control request for a running analysis service to apply.

    Returns:
        The updated row, or None when the current status does not allow the action
    """
    request = _REQUESTS[action]
    fields = {"status": request["status"]}
    fields.update(request["fields"])
    return await store.update_thread(thread_type, fields, expected_status=request["from"])


@click.group()
def analysis() -> None:
    """
    Control the analytics worker threads.

    start / stop / restart write control requests that a running
    ``serve analysis`` process applies within a few seconds.
    """
    pass


async def _request(ctx: click.Context, thread: str, action: str) -> List[str]:
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)
    refused = []

    async with DocumentStore(config.mongo, create_indexes=False) as store:
        await store.seed_thread_rows(ThreadType)
        for thread_type in resolve_thread_types(thread):
            row = await request_thread_action(store, thread_type, action)
            if row is None:
                current = await store.get_thread_status(thread_type)
                console.print(
                    f"[yellow]{thread_type.value}: cannot {action} while {current}[/yellow]"
                )
                refused.append(thread_type.value)
            else:
                console.print(f"[green]{thread_type.value}: {action} requested[/green]")

    return refused


@analysis.command()
@click.argument("thread", type=click.Choice(THREAD_CHOICES), default="all")
@click.pass_context
@async_command
async def start(ctx: click.Context, thread: str) -> None:
    """Request THREAD (or all) to start."""
    await _request(ctx, thread, "start")


@analysis.command()
@click.argument("thread", type=click.Choice(THREAD_CHOICES), default="all")
@click.pass_context
@async_command
async def stop(ctx: click.Context, thread: str) -> None:
    """Request THREAD (or all) to stop; progress is kept for resuming."""
    await _request(ctx, thread, "stop")


@analysis.command()
@click.argument("thread", type=click.Choice(THREAD_CHOICES))
@click.pass_context
@async_command
async def restart(ctx: click.Context, thread: str) -> None:
    """Request THREAD to start over from the beginning."""
    await _request(ctx, thread, "restart")


@analysis.command()
@click.pass_context
@async_command
async def status(ctx: click.Context) -> None:
    """Show every analysis thread row."""
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    async with DocumentStore(config.mongo, create_indexes=False) as store:
        rows = await store.list_threads()

    if not rows:
        console.print("[dim]No analysis threads recorded yet[/dim]")
        return
    console.print(create_thread_table(rows))
    for row in rows:
        if row.get("error"):
            console.print(f"[red]{row['threadType']}: {row['error']}[/red]")


@analysis.command("run")
@click.argument("thread", type=click.Choice([t.value for t in ThreadType]))
@click.option("--restart", "from_scratch", is_flag=True, help="Ignore saved progress")
@click.pass_context
@async_command
async def run_thread(ctx: click.Context, thread: str, from_scratch: bool) -> None:
    """
    Run one worker in the foreground until it finishes or Ctrl-C.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)
    thread_type = ThreadType(thread)

    async with DocumentStore(config.mongo) as store:
        manager = ThreadManager(store, config)
        await manager.initialize()
        killer = GracefulKiller()
        try:
            result = await manager.start_thread(thread_type, restart=from_scratch)
            if not result["success"]:
                raise click.ClickException(result["message"])

            console.print(f"[cyan]Running {thread}, press Ctrl-C to stop[/cyan]")
            while manager.is_running(thread_type):
                if await wait_or_stop(killer.stop_event, 1.0):
                    console.print("[yellow]Stopping, progress will be kept...[/yellow]")
                    break
        finally:
            await manager.shutdown()
            killer.restore()

        rows = [await store.get_thread(thread_type) or {}]

    console.print(create_thread_table(rows, title=thread))
