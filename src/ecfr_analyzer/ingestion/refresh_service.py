"""
Refresh Service

Long-running ingest process: connects the document store, search index and
upstream client, runs the initial download after a startup delay, refreshes
every ``refresh_interval_hours`` and answers manual triggers in between.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..integration.ecfr_client import EcfrClient
from ..models.config_models import AnalyzerConfig
from ..models.errors import SearchIndexError
from ..storage.document_store import DocumentStore
from ..storage.search_index import SearchIndex
from .title_refresher import TitleRefresher, describe_progress
from .trigger_system import RefreshTriggerWatcher

logger = logging.getLogger(__name__)

INTERRUPTED_NOTE = "Interrupted by service shutdown"


async def wait_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; returns True when the stop event fired first."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


class RefreshService:
    """
    Ingest service orchestrating scheduled and triggered refresh jobs.

    Only one refresh job runs at a time in this process; scheduled jobs and
    triggered jobs share a lock.
    """

    def __init__(
        self,
        config: AnalyzerConfig,
        store: Optional[DocumentStore] = None,
        search: Optional[SearchIndex] = None,
        client: Optional[EcfrClient] = None,
    ):
        self.config = config
        self.store = store or DocumentStore(config.mongo)
        self.search = search or SearchIndex(config.search)
        self.client = client or EcfrClient(config.refresh)
        self.refresher = TitleRefresher(
            self.store,
            self.search,
            self.client,
            config=config.refresh,
            search_config=config.search,
        )
        self.job_lock = asyncio.Lock()
        self.watcher = RefreshTriggerWatcher(
            self.store,
            self.refresher,
            interval=config.refresh.trigger_check_interval,
            job_lock=self.job_lock,
        )

        self.last_run: Optional[datetime] = None
        self.runs = 0
        self._initialized = False

    async def initialize(self) -> None:
        """Connect every dependency; search problems are logged, not fatal."""
        if self._initialized:
            return

        logger.info("Initializing refresh service")
        await self.store.connect()

        interrupted = await self.store.fail_interrupted_single_title_jobs(INTERRUPTED_NOTE)
        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted single-title jobs as failed")

        try:
            await self.search.initialize()
            await self.search.ensure_index()
        except SearchIndexError as e:
            logger.error(f"Search index unavailable, documents will not be indexed: {e}")

        await self.client.initialize()
        self._initialized = True
        logger.info("Refresh service initialized")

    async def shutdown(self) -> None:
        logger.info("Shutting down refresh service")
        if self._initialized:
            try:
                latest = await self.store.latest_refresh_progress()
                logger.info(f"Refresh progress at shutdown: {describe_progress(latest)}")
            except Exception as e:
                logger.warning(f"Could not read refresh progress: {e}")

        await self.client.close()
        await self.search.cleanup()
        await self.store.close()
        self._initialized = False
        logger.info("Refresh service shutdown complete")

    async def __aenter__(self) -> "RefreshService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    async def run_initial(self, stop_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        async with self.job_lock:
            result = await self.refresher.initial_download(stop_event=stop_event)
        self._record_run()
        return result

    async def run_refresh(self, stop_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        async with self.job_lock:
            result = await self.refresher.refresh(stop_event=stop_event)
        self._record_run()
        return result

    def _record_run(self) -> None:
        self.runs += 1
        self.last_run = datetime.now()

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Run the schedule and the trigger watcher until ``stop_event`` is set.

        A job still running at that point finishes its current title and
        returns; its progress row keeps the processed titles so the next start
        resumes it.
        """
        tasks = [
            asyncio.create_task(self.watcher.run(stop_event)),
            asyncio.create_task(self._run_schedule(stop_event)),
        ]
        await stop_event.wait()
        if self.job_lock.locked():
            logger.info("Waiting for the current title to finish before shutdown")
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error(f"Refresh task ended with an error: {result}")

    async def _run_schedule(self, stop_event: asyncio.Event) -> None:
        delay = self.config.refresh.initial_download_delay_minutes * 60
        if delay:
            logger.info(f"Initial download starts in {delay / 60:.0f} minutes")
            if await wait_or_stop(stop_event, delay):
                return

        await self._guarded(self.run_initial, stop_event, "Initial download")

        interval = self.config.refresh.refresh_interval_hours * 3600
        while not await wait_or_stop(stop_event, interval):
            await self._guarded(self.run_refresh, stop_event, "Scheduled refresh")

    async def _guarded(self, job: Any, stop_event: asyncio.Event, label: str) -> None:
        try:
            final = await job(stop_event)
            logger.info(f"{label} finished: {describe_progress(final)}")
        except Exception as e:
            logger.error(f"{label} failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "trigger_checks": self.watcher.checks,
            "refresher": self.refresher.get_stats(),
            "client": self.client.get_metrics(),
        }
