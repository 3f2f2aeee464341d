"""
Search Index Rebuilder

Recreates the search index from the document store, recording each step on
an IndexRebuildProgress row. The row may be set to ``cancelled`` by an
operator; the rebuild honors it at the next title boundary.
"""

import logging
import time
from typing import Any, Dict, Optional

from ..models.config_models import SearchConfig
from ..models.errors import SearchIndexError
from ..models.record_models import RebuildStatus, utcnow
from ..storage.document_store import DocumentStore
from ..storage.search_index import SEARCH_SOURCE_PROJECTION, SearchIndex, to_search_document

logger = logging.getLogger(__name__)


class IndexRebuilder:
    """Drives a full search index rebuild."""

    def __init__(
        self,
        store: DocumentStore,
        search: SearchIndex,
        config: Optional[SearchConfig] = None,
    ):
        self.store = store
        self.search = search
        self.config = config or SearchConfig()

    async def rebuild(self, progress: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Delete, recreate and repopulate the index.

        Args:
            progress: Existing IndexRebuildProgress row; a new one is created when None

        Returns:
            The final progress row
        """
        row = progress or await self.store.create_rebuild_progress()
        progress_id = row["_id"]
        start_time = time.time()

        await self.store.update_rebuild_progress(
            progress_id, {"status": RebuildStatus.IN_PROGRESS.value, "startTime": utcnow()}
        )
        logger.info(f"Rebuilding search index {self.search.index_name} ({progress_id})")

        step = "deleteIndex"
        try:
            await self.search.delete_index()
            await self._complete_step(progress_id, step)

            step = "createIndex"
            await self.search.create_index()
            await self._complete_step(progress_id, step)

            step = "indexDocuments"
            total = await self.store.count_documents()
            await self.store.update_rebuild_progress(progress_id, {"totalDocuments": total})
            logger.info(f"Indexing {total} documents")

            cancelled = await self._index_all_titles(progress_id)
            if cancelled:
                logger.warning(f"Index rebuild {progress_id} cancelled")
                return await self.store.get_rebuild_progress(progress_id) or row

            await self._complete_step(progress_id, step)
        except Exception as e:
            logger.error(f"Index rebuild failed during {step}: {e}")
            await self.store.update_rebuild_progress(
                progress_id,
                {
                    "status": RebuildStatus.FAILED.value,
                    "error": str(e),
                    "endTime": utcnow(),
                    f"operations.{step}.error": str(e),
                },
            )
            raise

        await self.store.update_rebuild_progress(
            progress_id,
            {"status": RebuildStatus.COMPLETED.value, "endTime": utcnow(), "currentTitle": None},
        )
        final = await self.store.get_rebuild_progress(progress_id) or row
        logger.info(
            f"Index rebuild completed in {time.time() - start_time:.1f}s: "
            f"{final.get('indexedDocuments', 0)} indexed, "
            f"{final.get('failedDocuments', 0)} failed"
        )
        return final

    async def _complete_step(self, progress_id: Any, step: str) -> None:
        await self.store.update_rebuild_progress(
            progress_id, {f"operations.{step}.completed": True}
        )

    async def _is_cancelled(self, progress_id: Any) -> bool:
        row = await self.store.get_rebuild_progress(progress_id)
        return bool(row) and row.get("status") == RebuildStatus.CANCELLED.value

    async def _index_all_titles(self, progress_id: Any) -> bool:
        """Index every title's documents; returns True when cancelled."""
        titles = {t["number"]: t.get("name") for t in await self.store.list_titles()}

        for title_number in await self.store.distinct_title_numbers():
            if await self._is_cancelled(progress_id):
                return True

            await self.store.update_rebuild_progress(progress_id, {"currentTitle": title_number})
            title_name = titles.get(title_number)

            async for batch in self.store.iter_document_batches(
                title_number, self.config.bulk_batch_size, SEARCH_SOURCE_PROJECTION
            ):
                records = [(str(doc["_id"]), to_search_document(doc, title_name)) for doc in batch]
                try:
                    indexed, failed = await self.search.bulk_index(records, refresh=False)
                    increments = {
                        "processedDocuments": len(batch),
                        "indexedDocuments": indexed,
                        "failedDocuments": failed,
                    }
                except SearchIndexError as e:
                    logger.error(f"Batch of title {title_number} failed to index: {e}")
                    increments = {"processedDocuments": len(batch), "failedDocuments": len(batch)}
                await self.store.update_rebuild_progress(progress_id, increments=increments)

            logger.info(f"Indexed documents of title {title_number}")

        return False
