"""
Unit tests for the refresh service lifecycle and schedule.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ecfr_analyzer.ingestion.refresh_service import (
    INTERRUPTED_NOTE,
    RefreshService,
    wait_or_stop,
)
from ecfr_analyzer.models.config_models import AnalyzerConfig
from ecfr_analyzer.models.errors import SearchIndexError
from ecfr_analyzer.models.record_models import JobStatus, RefreshType, TriggeredBy


def make_service(store, **refresh):
    config = AnalyzerConfig(refresh={"initial_download_delay_minutes": 0, **refresh})
    search = AsyncMock()
    client = AsyncMock()
    client.get_metrics = MagicMock(return_value={})
    return RefreshService(config, store=store, search=search, client=client)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_interrupted_single_title_jobs_failed(self, store):
        single = await store.create_refresh_progress(
            RefreshType.SINGLE_TITLE, TriggeredBy.MANUAL, status=JobStatus.IN_PROGRESS
        )
        scheduled = await store.create_refresh_progress(
            RefreshType.REFRESH, TriggeredBy.SCHEDULED, status=JobStatus.IN_PROGRESS
        )
        service = make_service(store)

        await service.initialize()

        failed = await store.get_refresh_progress(single["_id"])
        assert failed["status"] == "failed"
        assert failed["lastError"] == INTERRUPTED_NOTE
        resumable = await store.get_refresh_progress(scheduled["_id"])
        assert resumable["status"] == "in_progress"
        service.client.initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_search_unavailable_is_not_fatal(self, store):
        service = make_service(store)
        service.search.initialize.side_effect = SearchIndexError("connection refused")

        await service.initialize()

        assert service._initialized is True
        service.client.initialize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_closes_dependencies(self, store):
        service = make_service(store)
        await service.initialize()

        await service.shutdown()

        service.client.close.assert_awaited_once()
        service.search.cleanup.assert_awaited_once()
        assert service._initialized is False


class TestSchedule:
    @pytest.mark.asyncio
    async def test_initial_download_runs_first(self, store):
        service = make_service(store)
        stop = asyncio.Event()
        service.refresher = AsyncMock()

        async def initial(stop_event=None):
            stop.set()
            return {"type": "initial", "status": "completed"}

        service.refresher.initial_download.side_effect = initial

        await service._run_schedule(stop)

        service.refresher.initial_download.assert_awaited_once()
        service.refresher.refresh.assert_not_awaited()
        assert service.runs == 1
        assert service.last_run is not None

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_schedule(self, store):
        service = make_service(store)
        stop = asyncio.Event()
        service.refresher = AsyncMock()

        async def initial(stop_event=None):
            stop.set()
            raise RuntimeError("registry unavailable")

        service.refresher.initial_download.side_effect = initial

        await service._run_schedule(stop)

        assert service.runs == 0

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_job(self, store):
        """Test shutdown lets the in-flight job finish instead of cancelling it."""
        service = make_service(store)
        stop = asyncio.Event()
        service.refresher = AsyncMock()
        finished = []

        async def initial(stop_event=None):
            stop.set()
            await asyncio.sleep(0.05)
            finished.append(stop_event)
            return {"type": "initial", "status": "in_progress"}

        service.refresher.initial_download.side_effect = initial

        await asyncio.wait_for(service.run(stop), timeout=1.0)

        assert finished == [stop]
        service.refresher.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_returns_when_stopped(self, store):
        service = make_service(store, initial_download_delay_minutes=5)
        stop = asyncio.Event()
        service.refresher = AsyncMock()
        service.watcher.run = AsyncMock()

        stop.set()
        await asyncio.wait_for(service.run(stop), timeout=1.0)

        service.refresher.initial_download.assert_not_awaited()


class TestWaitOrStop:
    @pytest.mark.asyncio
    async def test_stop_event(self):
        event = asyncio.Event()
        event.set()
        assert await wait_or_stop(event, 10) is True

    @pytest.mark.asyncio
    async def test_timeout(self):
        assert await wait_or_stop(asyncio.Event(), 0.01) is False
