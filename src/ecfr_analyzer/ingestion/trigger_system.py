"""
Trigger Watcher

Polls the shared store for operator-created trigger rows. The refresh
watcher promotes the oldest pending manual RefreshProgress and hands it to
the Title Refresher; the analysis watcher retires legacy AnalysisProgress
triggers, which the thread manager has superseded.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from ..models.record_models import JobStatus, RefreshType, TriggeredBy, utcnow
from ..storage.document_store import DocumentStore
from .title_refresher import TitleRefresher

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 30.0
STALE_TRIGGER_AGE = timedelta(hours=1)
MIGRATION_NOTE = (
    "Migrated to thread-based analysis system. Use the settings page to control analysis."
)


class _PollingWatcher:
    """Runs ``check_once`` every ``interval`` seconds until stopped."""

    name = "trigger watcher"

    def __init__(self, interval: float = DEFAULT_CHECK_INTERVAL):
        self.interval = interval
        self.checks = 0
        self.stop_event: Optional[asyncio.Event] = None

    async def check_once(self) -> Any:
        raise NotImplementedError

    async def run(self, stop_event: asyncio.Event) -> None:
        self.stop_event = stop_event
        logger.info(f"Starting {self.name}, checking every {self.interval:.0f}s")
        while not stop_event.is_set():
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"{self.name} check failed: {e}")
            self.checks += 1

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{self.name} stopped")


class RefreshTriggerWatcher(_PollingWatcher):
    """Promotes manual refresh triggers while no refresh is running."""

    name = "refresh trigger watcher"

    def __init__(
        self,
        store: DocumentStore,
        refresher: TitleRefresher,
        interval: float = DEFAULT_CHECK_INTERVAL,
        job_lock: Optional[asyncio.Lock] = None,
    ):
        """
        Args:
            job_lock: Held while a refresh job runs in this process; shared with
                the scheduled jobs so only one job runs at a time
        """
        super().__init__(interval)
        self.store = store
        self.refresher = refresher
        self.job_lock = job_lock or asyncio.Lock()

    async def check_once(self) -> Optional[Dict[str, Any]]:
        """
        Run the oldest pending manual trigger, if any and if nothing else runs.

        Returns:
            The final progress row of the job that ran, or None
        """
        if self.job_lock.locked() or await self.store.refresh_in_progress():
            return None

        async with self.job_lock:
            trigger = await self.store.find_oldest_pending_trigger()
            if trigger is None:
                return None

            row = await self.store.promote_refresh_trigger(trigger["_id"])
            if row is None:
                logger.debug(f"Trigger {trigger['_id']} was claimed elsewhere")
                return None

            logger.info(
                f"Processing {row.get('triggeredBy')} {row.get('type')} trigger {row['_id']}"
            )
            try:
                return await self._dispatch(row)
            except Exception as e:
                logger.error(f"Triggered refresh {row['_id']} failed: {e}")
                await self.store.update_refresh_progress(
                    row["_id"],
                    {
                        "status": JobStatus.FAILED.value,
                        "lastError": str(e),
                        "completedAt": utcnow(),
                    },
                )
                return await self.store.get_refresh_progress(row["_id"])

    async def _dispatch(self, row: Dict[str, Any]) -> Dict[str, Any]:
        refresh_type = row.get("type")
        triggered_by = row.get("triggeredBy")

        if (
            refresh_type == RefreshType.SINGLE_TITLE.value
            or triggered_by == TriggeredBy.MANUAL_SINGLE.value
        ):
            target = (row.get("metadata") or {}).get("targetTitle")
            if target is None:
                raise ValueError("Single-title trigger is missing metadata.targetTitle")
            await self.refresher.refresh_single_title(int(target), progress=row)
            return await self.store.get_refresh_progress(row["_id"]) or row

        if refresh_type == RefreshType.INITIAL.value:
            return await self.refresher.initial_download(progress=row, stop_event=self.stop_event)
        return await self.refresher.refresh(progress=row, stop_event=self.stop_event)


class AnalysisTriggerWatcher(_PollingWatcher):
    """Cleans stale legacy analysis triggers and answers the oldest manual one."""

    name = "analysis trigger watcher"

    def __init__(self, store: DocumentStore, interval: float = DEFAULT_CHECK_INTERVAL):
        super().__init__(interval)
        self.store = store

    async def check_once(self) -> Optional[Dict[str, Any]]:
        deleted = await self.store.delete_stale_analysis_triggers(utcnow() - STALE_TRIGGER_AGE)
        if deleted:
            logger.info(f"Removed {deleted} stale analysis triggers")

        row = await self.store.complete_oldest_manual_analysis_trigger(MIGRATION_NOTE)
        if row is not None:
            logger.info(f"Answered legacy analysis trigger {row['_id']}: {MIGRATION_NOTE}")
        return row
