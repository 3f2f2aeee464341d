"""
Analysis Service

Long-running analytics process: the thread manager, the legacy analysis
trigger cleanup, the control request poller and the periodic status log.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..ingestion.trigger_system import AnalysisTriggerWatcher
from ..models.config_models import AnalyzerConfig
from ..storage.document_store import DocumentStore
from .thread_manager import ThreadManager

logger = logging.getLogger(__name__)


class AnalysisService:
    """Hosts the analytics workers until asked to stop."""

    def __init__(
        self,
        config: AnalyzerConfig,
        store: Optional[DocumentStore] = None,
        manager: Optional[ThreadManager] = None,
    ):
        self.config = config
        self.store = store or DocumentStore(config.mongo)
        self.manager = manager or ThreadManager(self.store, config)
        self.watcher = AnalysisTriggerWatcher(
            self.store, interval=config.refresh.trigger_check_interval
        )
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        logger.info("Initializing analysis service")
        await self.store.connect()
        await self.manager.initialize()
        if not self.config.section_analysis_enabled:
            logger.warning("GROK_API_KEY not set; section_analysis will not start")
        self._initialized = True

    async def shutdown(self) -> None:
        logger.info("Shutting down analysis service")
        if self._initialized:
            await self.manager.shutdown()
        await self.store.close()
        self._initialized = False
        logger.info("Analysis service shutdown complete")

    async def __aenter__(self) -> "AnalysisService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    async def run(self, stop_event: asyncio.Event, start_workers: bool = True) -> None:
        """
        Serve until ``stop_event`` is set.

        Args:
            start_workers: Start every worker after the configured startup delay
        """
        if start_workers:
            self.manager.schedule_startup(self.config.analysis.startup_delay_minutes * 60)

        await asyncio.gather(
            self.watcher.run(stop_event),
            self.manager.run_control_poller(stop_event),
            self.manager.run_status_log(stop_event),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {"trigger_checks": self.watcher.checks, "threads": self.manager.get_stats()}
