"""
Test CLI validation utilities and thread control requests
"""

import click
import pytest

from ecfr_analyzer.cli.commands.analysis import request_thread_action
from ecfr_analyzer.cli.commands.status import collect_status
from ecfr_analyzer.cli.utils.validation import (
    THREAD_CHOICES,
    resolve_thread_types,
    title_number_callback,
    validate_title_number,
)
from ecfr_analyzer.models.record_models import ThreadType


class TestTitleNumberValidation:
    """Test title number validation"""

    @pytest.mark.parametrize("number", [1, 25, 50])
    def test_valid_numbers(self, number):
        assert validate_title_number(number) == (True, None)

    @pytest.mark.parametrize("number", [-1, 0, 51, 100])
    def test_invalid_numbers(self, number):
        is_valid, error = validate_title_number(number)
        assert not is_valid
        assert "between 1 and 50" in error

    def test_callback_raises_bad_parameter(self):
        with pytest.raises(click.BadParameter):
            title_number_callback(None, None, 0)
        assert title_number_callback(None, None, 7) == 7


class TestThreadSelection:
    def test_choices(self):
        assert THREAD_CHOICES[-1] == "all"
        assert set(THREAD_CHOICES[:-1]) == {t.value for t in ThreadType}

    def test_resolve(self):
        assert resolve_thread_types("all") == list(ThreadType)
        assert resolve_thread_types("version_history") == [ThreadType.VERSION_HISTORY]


class TestControlRequests:
    """Test the rows written by analysis start/stop/restart"""

    @pytest.mark.asyncio
    async def test_start_from_stopped(self, store):
        await store.seed_thread_rows(list(ThreadType))

        row = await request_thread_action(store, ThreadType.TEXT_METRICS, "start")

        assert row["status"] == "pending_start"

    @pytest.mark.asyncio
    async def test_stop_refused_when_idle(self, store):
        await store.seed_thread_rows(list(ThreadType))

        row = await request_thread_action(store, ThreadType.TEXT_METRICS, "stop")

        assert row is None
        assert await store.get_thread_status(ThreadType.TEXT_METRICS) == "stopped"

    @pytest.mark.asyncio
    async def test_start_refused_while_running(self, store):
        await store.seed_thread_rows(list(ThreadType))
        store.set_status(ThreadType.TEXT_METRICS, "running")

        assert await request_thread_action(store, ThreadType.TEXT_METRICS, "start") is None

    @pytest.mark.asyncio
    async def test_restart_clears_resume_data(self, store):
        await store.seed_thread_rows(list(ThreadType))
        store.set_status(ThreadType.SECTION_ANALYSIS, "running")
        await store.update_thread(
            ThreadType.SECTION_ANALYSIS, {"resumeData": {"lastSectionIndex": 40}}
        )

        row = await request_thread_action(store, ThreadType.SECTION_ANALYSIS, "restart")

        assert row["status"] == "pending_restart"
        assert row["resumeData"] is None


class TestCollectStatus:
    @pytest.mark.asyncio
    async def test_counts_and_latest_rows(self, store):
        store.add_title(1)
        store.add_document(titleNumber=1, type="title")
        store.add_document(titleNumber=1, type="section")
        await store.seed_thread_rows(list(ThreadType))

        info = await collect_status(store)

        assert info["titles"] == 1
        assert info["documents"] == 2
        assert info["sections"] == 1
        assert info["refresh"] is None
        assert info["rebuild"] is None
        assert len(info["threads"]) == len(ThreadType)
