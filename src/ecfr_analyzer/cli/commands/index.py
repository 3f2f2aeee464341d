"""
Search index commands
"""

import click
from rich.console import Console

from ...ingestion.index_rebuilder import IndexRebuilder
from ...models.errors import SearchIndexError
from ...storage.document_store import DocumentStore
from ...storage.search_index import SearchIndex
from ..ui.display import create_rebuild_panel
from ..utils.async_runner import async_command
from ..utils.config_loader import load_cli_config


@click.group()
def index() -> None:
    """
    Manage the Elasticsearch document index.
    """
    pass


@index.command()
@click.pass_context
@async_command
async def rebuild(ctx: click.Context) -> None:
    """
    Delete and recreate the search index from the stored documents.

    Progress is recorded as an IndexRebuildProgress row; setting that row to
    ``cancelled`` stops the rebuild at the next title.
    """
    console: Console = ctx.obj["console"]
    config = await load_cli_config(ctx)

    async with DocumentStore(config.mongo) as store:
        try:
            async with SearchIndex(config.search) as search:
                rebuilder = IndexRebuilder(store, search, config.search)
                with console.status(f"Rebuilding index {search.index_name}..."):
                    final = await rebuilder.rebuild()
        except SearchIndexError as e:
            raise click.ClickException(str(e)) from e

    console.print(create_rebuild_panel(final))
