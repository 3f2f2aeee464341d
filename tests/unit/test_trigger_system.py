"""
Unit tests for the refresh and analysis trigger watchers.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from bson import ObjectId

from ecfr_analyzer.ingestion.trigger_system import (
    MIGRATION_NOTE,
    AnalysisTriggerWatcher,
    RefreshTriggerWatcher,
)
from ecfr_analyzer.models.record_models import JobStatus, RefreshType, TriggeredBy, utcnow


def complete(progress, stop_event=None):
    return {**progress, "status": "completed"}


def make_refresher():
    refresher = AsyncMock()
    refresher.refresh.side_effect = complete
    refresher.initial_download.side_effect = complete
    return refresher


class TestRefreshTriggerWatcher:
    """Test promotion and dispatch of manual refresh triggers."""

    @pytest.mark.asyncio
    async def test_no_trigger(self, store):
        watcher = RefreshTriggerWatcher(store, make_refresher())
        assert await watcher.check_once() is None

    @pytest.mark.asyncio
    async def test_manual_refresh_dispatched(self, store):
        refresher = make_refresher()
        trigger = await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)

        watcher = RefreshTriggerWatcher(store, refresher)
        result = await watcher.check_once()

        assert result["status"] == "completed"
        promoted = refresher.refresh.call_args.kwargs["progress"]
        assert promoted["_id"] == trigger["_id"]
        assert promoted["status"] == JobStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_initial_trigger(self, store):
        refresher = make_refresher()
        await store.create_refresh_progress(RefreshType.INITIAL, TriggeredBy.MANUAL)

        await RefreshTriggerWatcher(store, refresher).check_once()

        refresher.initial_download.assert_awaited_once()
        refresher.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_title_trigger(self, store):
        refresher = make_refresher()
        trigger = await store.create_refresh_progress(
            RefreshType.SINGLE_TITLE, TriggeredBy.MANUAL_SINGLE, metadata={"targetTitle": 40}
        )

        await RefreshTriggerWatcher(store, refresher).check_once()

        args = refresher.refresh_single_title.call_args
        assert args.args == (40,)
        assert args.kwargs["progress"]["_id"] == trigger["_id"]

    @pytest.mark.asyncio
    async def test_oldest_trigger_first(self, store):
        refresher = make_refresher()
        first = await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)
        second = await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)
        store.refresh_rows[second["_id"]]["createdAt"] = first["createdAt"] + timedelta(seconds=1)

        await RefreshTriggerWatcher(store, refresher).check_once()

        assert refresher.refresh.call_args.kwargs["progress"]["_id"] == first["_id"]

    @pytest.mark.asyncio
    async def test_waits_while_refresh_in_progress(self, store):
        refresher = make_refresher()
        await store.create_refresh_progress(
            RefreshType.REFRESH, TriggeredBy.SCHEDULED, status=JobStatus.IN_PROGRESS
        )
        await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)

        assert await RefreshTriggerWatcher(store, refresher).check_once() is None
        refresher.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_waits_while_job_lock_held(self, store):
        """Test a job running in this process blocks trigger promotion."""
        refresher = make_refresher()
        trigger = await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)
        lock = asyncio.Lock()
        watcher = RefreshTriggerWatcher(store, refresher, job_lock=lock)

        async with lock:
            assert await watcher.check_once() is None

        assert store.refresh_rows[trigger["_id"]]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_failed_dispatch_marks_trigger_failed(self, store):
        refresher = make_refresher()
        refresher.refresh.side_effect = RuntimeError("registry down")
        trigger = await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)

        result = await RefreshTriggerWatcher(store, refresher).check_once()

        assert result["status"] == "failed"
        assert result["lastError"] == "registry down"
        assert store.refresh_rows[trigger["_id"]]["completedAt"] is not None

    @pytest.mark.asyncio
    async def test_single_title_without_target_fails(self, store):
        refresher = make_refresher()
        await store.create_refresh_progress(RefreshType.SINGLE_TITLE, TriggeredBy.MANUAL_SINGLE)

        result = await RefreshTriggerWatcher(store, refresher).check_once()

        assert result["status"] == "failed"
        assert "targetTitle" in result["lastError"]
        refresher.refresh_single_title.assert_not_called()

    @pytest.mark.asyncio
    async def test_triggered_job_receives_stop_event(self, store):
        """Test a triggered job is handed the service stop event and run lets it finish."""
        refresher = make_refresher()
        stop = asyncio.Event()

        def stop_mid_job(progress, stop_event=None):
            stop.set()
            return {**progress, "status": "in_progress"}

        refresher.refresh.side_effect = stop_mid_job
        await store.create_refresh_progress(RefreshType.REFRESH, TriggeredBy.MANUAL)
        watcher = RefreshTriggerWatcher(store, refresher, interval=10.0)

        await asyncio.wait_for(watcher.run(stop), 1.0)

        assert refresher.refresh.call_args.kwargs["stop_event"] is stop
        assert watcher.checks == 1

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, store):
        watcher = RefreshTriggerWatcher(store, make_refresher(), interval=0.01)
        stop = asyncio.Event()
        task = asyncio.create_task(watcher.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, 1.0)

        assert watcher.checks >= 2


class TestAnalysisTriggerWatcher:
    """Test retirement of legacy analysis triggers."""

    @pytest.mark.asyncio
    async def test_cleans_and_answers(self, store):
        now = utcnow()
        store.analysis_triggers = [
            {"_id": ObjectId(), "status": "pending", "createdAt": now - timedelta(hours=2)},
            {
                "_id": ObjectId(),
                "status": "pending",
                "triggeredBy": "manual",
                "createdAt": now - timedelta(minutes=5),
            },
            {"_id": ObjectId(), "status": "completed", "createdAt": now - timedelta(days=3)},
        ]

        row = await AnalysisTriggerWatcher(store).check_once()

        assert row["status"] == "completed"
        assert row["error"] == MIGRATION_NOTE
        assert len(store.analysis_triggers) == 2

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, store):
        assert await AnalysisTriggerWatcher(store).check_once() is None
