"""
Unit tests for the search index rebuilder.
"""

from unittest.mock import AsyncMock

import pytest

from ecfr_analyzer.ingestion.index_rebuilder import IndexRebuilder
from ecfr_analyzer.models.config_models import SearchConfig
from ecfr_analyzer.models.errors import SearchIndexError


def make_search():
    search = AsyncMock()
    search.index_name = "ecfr_documents"
    search.bulk_index.side_effect = lambda records, refresh=True: (len(records), 0)
    return search


def seed(store, title_number, count):
    store.add_title(title_number, name=f"Title {title_number}")
    for index in range(count):
        store.add_document(
            titleNumber=title_number,
            type="section",
            identifier=f"section_{title_number}_{index}",
            content="Text.",
        )


class TestIndexRebuilder:
    """Test the delete, create and repopulate steps."""

    @pytest.mark.asyncio
    async def test_full_rebuild(self, store):
        seed(store, 1, 3)
        seed(store, 2, 2)
        search = make_search()

        row = await IndexRebuilder(store, search, SearchConfig(bulk_batch_size=2)).rebuild()

        assert row["status"] == "completed"
        assert row["totalDocuments"] == 5
        assert row["processedDocuments"] == 5
        assert row["indexedDocuments"] == 5
        assert row["failedDocuments"] == 0
        assert row["currentTitle"] is None
        assert row["startTime"] is not None
        assert row["endTime"] is not None
        assert all(step["completed"] for step in row["operations"].values())

        search.delete_index.assert_awaited_once()
        search.create_index.assert_awaited_once()
        assert search.bulk_index.await_count == 3
        assert all(c.kwargs["refresh"] is False for c in search.bulk_index.call_args_list)
        first_record = search.bulk_index.call_args_list[0].args[0][0][1]
        assert first_record["titleName"] == "Title 1"

    @pytest.mark.asyncio
    async def test_uses_existing_progress_row(self, store):
        seed(store, 1, 1)
        progress = await store.create_rebuild_progress()

        row = await IndexRebuilder(store, make_search()).rebuild(progress)

        assert row["_id"] == progress["_id"]
        assert len(store.rebuild_rows) == 1

    @pytest.mark.asyncio
    async def test_batch_failure_counted(self, store):
        """Test a failing bulk request marks its batch failed and the rebuild continues."""
        seed(store, 1, 2)
        seed(store, 2, 1)
        search = make_search()
        search.bulk_index.side_effect = [SearchIndexError("rejected"), (1, 0)]

        row = await IndexRebuilder(store, search).rebuild()

        assert row["status"] == "completed"
        assert row["failedDocuments"] == 2
        assert row["indexedDocuments"] == 1
        assert row["processedDocuments"] == 3

    @pytest.mark.asyncio
    async def test_step_failure_recorded(self, store):
        search = make_search()
        search.create_index.side_effect = SearchIndexError("mapping rejected")

        with pytest.raises(SearchIndexError):
            await IndexRebuilder(store, search).rebuild()

        row = await store.latest_rebuild_progress()
        assert row["status"] == "failed"
        assert row["error"] == "mapping rejected"
        assert row["operations"]["deleteIndex"]["completed"] is True
        assert row["operations"]["createIndex"]["error"] == "mapping rejected"
        assert row["operations"]["indexDocuments"]["completed"] is False

    @pytest.mark.asyncio
    async def test_cancel_between_titles(self, store):
        seed(store, 1, 1)
        seed(store, 2, 1)
        search = make_search()

        def cancel_after_first(records, refresh=True):
            for row in store.rebuild_rows.values():
                row["status"] = "cancelled"
            return len(records), 0

        search.bulk_index.side_effect = cancel_after_first

        row = await IndexRebuilder(store, search).rebuild()

        assert row["status"] == "cancelled"
        assert row["currentTitle"] == 1
        assert search.bulk_index.await_count == 1
        assert row["operations"]["indexDocuments"]["completed"] is False
