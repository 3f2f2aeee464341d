"""
Base classes for analytics workers.

A worker runs on its own OS thread inside its own event loop with a private
document store connection. It never writes its AnalysisThread row itself:
progress, checkpoints and the final outcome are published as messages that
the thread manager mirrors to the row. Cancellation is cooperative; the
worker looks at its stop event and its row status at every checkpoint.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ...models.config_models import AnalyzerConfig, MongoConfig
from ...models.errors import WorkerStopped
from ...models.record_models import STOP_REQUEST_STATUSES, ThreadType
from ...storage.document_store import DocumentStore

logger = logging.getLogger(__name__)

WORKER_POOL_SIZE = 5
# Longest single sleep before the stop event is looked at again
_PAUSE_SLICE = 1.0

Publisher = Callable[[Dict[str, Any]], None]


def worker_mongo_config(config: MongoConfig) -> MongoConfig:
    """Connection settings for a worker-owned client."""
    return config.model_copy(update={"max_pool_size": WORKER_POOL_SIZE})


class BaseWorker:
    """Lifecycle, checkpointing and progress reporting shared by every worker."""

    thread_type: ThreadType

    def __init__(
        self,
        config: AnalyzerConfig,
        stop_event: threading.Event,
        publish: Publisher,
        restart: bool = False,
        store: Optional[DocumentStore] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            config: Application configuration
            stop_event: Set by the manager to request a stop
            publish: Thread-safe sink for control messages
            restart: Ignore any stored resumeData and start over
            store: Pre-connected store; a private one is opened when None
            sleep: Sleep function, replaceable in tests
        """
        self.config = config
        self.stop_event = stop_event
        self.publish = publish
        self.restart = restart
        self.store = store
        self._owns_store = store is None
        self._sleep = sleep

        self.processed = 0
        self.failed = 0
        self._start_time = 0.0

    # -- lifecycle --------------------------------------------------------------

    async def execute(self) -> Dict[str, Any]:
        """
        Thread entry point: connect, run, publish the outcome, disconnect.

        Returns:
            The terminal message that was published
        """
        self._start_time = time.time()
        try:
            if self._owns_store:
                self.store = DocumentStore(
                    worker_mongo_config(self.config.mongo), create_indexes=False
                )
                await self.store.connect()

            row = await self.store.get_thread(self.thread_type)
            resume = None if self.restart else (row or {}).get("resumeData")
            await self.run(resume)

            message: Dict[str, Any] = {
                "type": "completed",
                "data": {"total": self.processed, "failedCount": self.failed},
            }
            logger.info(
                f"Worker {self.thread_type.value} completed: {self.processed} processed, "
                f"{self.failed} failed"
            )
        except WorkerStopped as e:
            message = {
                "type": "stopped",
                "data": {"total": self.processed, "failedCount": self.failed},
            }
            logger.info(f"Worker {self.thread_type.value} stopped: {e}")
        except Exception as e:
            message = {"type": "error", "error": str(e)}
            logger.exception(f"Worker {self.thread_type.value} failed: {e}")
        finally:
            if self._owns_store and self.store is not None:
                await self.store.close()

        self.publish(message)
        return message

    async def run(self, resume: Optional[Dict[str, Any]]) -> None:
        """Process every item, raising WorkerStopped when asked to stop."""
        raise NotImplementedError

    # -- cancellation -------------------------------------------------------------

    async def checkpoint(self) -> None:
        """
        Raise WorkerStopped if a stop was requested.

        Raises:
            WorkerStopped: Stop event set, or row status is pending_stop / pending_restart
        """
        if self.stop_event.is_set():
            raise WorkerStopped("stop requested")

        status = await self.store.get_thread_status(self.thread_type)
        if status in STOP_REQUEST_STATUSES:
            self.stop_event.set()
            raise WorkerStopped(f"row status is {status}")

    async def pause(self, seconds: float) -> None:
        """Sleep, waking early when the stop event is set."""
        remaining = seconds
        while remaining > 0 and not self.stop_event.is_set():
            step = min(remaining, _PAUSE_SLICE)
            await self._sleep(step)
            remaining -= step

    # -- reporting ----------------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        done = self.processed + self.failed
        elapsed_ms = (time.time() - self._start_time) * 1000
        return {
            "itemsProcessed": self.processed,
            "itemsFailed": self.failed,
            "averageTimePerItem": round(elapsed_ms / done) if done else 0,
        }

    def report_progress(self, current: int, total: int, **fields: Any) -> None:
        percentage = round(current / total * 100) if total else 0
        data: Dict[str, Any] = {
            "progress": {"current": current, "total": total, "percentage": min(percentage, 100)}
        }
        data.update(fields)
        self.publish({"type": "progress", "data": data})

    def report_item(self, current_item: Dict[str, Any]) -> None:
        self.publish({"type": "progress", "data": {"currentItem": current_item}})


class TitleWorker(BaseWorker):
    """
    Worker that walks the stored titles in ascending order.

    ``resumeData.lastTitleIndex`` is the index of the next title to process.
    """

    description = "Processing title"
    delay_between_titles = 0.0

    async def prepare(self) -> None:
        """Hook run once before the first title."""

    async def process_title(self, title: Dict[str, Any]) -> None:
        raise NotImplementedError

    @staticmethod
    def resume_index(resume: Optional[Dict[str, Any]], total: int) -> int:
        if not isinstance(resume, dict):
            return 0
        index = resume.get("lastTitleIndex")
        if not isinstance(index, int) or index < 0:
            return 0
        return min(index, total)

    async def run(self, resume: Optional[Dict[str, Any]]) -> None:
        titles: List[Dict[str, Any]] = await self.store.list_titles()
        total = len(titles)
        start = self.resume_index(resume, total)
        if start:
            logger.info(f"Worker {self.thread_type.value} resuming at title index {start}")

        await self.prepare()
        self.report_progress(start, total)

        for index in range(start, total):
            await self.checkpoint()
            title = titles[index]
            self.report_item(
                {
                    "titleNumber": title["number"],
                    "titleName": title.get("name"),
                    "description": self.description,
                }
            )

            try:
                await self.process_title(title)
                self.processed += 1
            except WorkerStopped:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(
                    f"Worker {self.thread_type.value} failed on title {title['number']}: {e}"
                )

            self.report_progress(
                index + 1,
                total,
                resumeData={"lastTitleIndex": index + 1},
                statistics=self.statistics(),
            )

            if self.delay_between_titles and index + 1 < total:
                await self.pause(self.delay_between_titles)
