"""
Analysis Thread Manager

Owns the four analytics workers. Each worker runs on its own OS thread and
event loop; the manager starts and stops them, mirrors their progress
messages onto the AnalysisThread rows, and applies control requests that
other processes write to those rows (pending_start, pending_stop,
pending_restart).

Features:
- One worker per thread type, duplicate starts refused
- Cooperative stop bounded by ``stop_timeout``
- Crash recovery of rows left running by a dead process
- Periodic status summary in the log
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.config_models import AnalyzerConfig
from ..models.errors import ThreadManagerError
from ..models.record_models import ThreadStatus, ThreadType, utcnow
from ..storage.document_store import DocumentStore
from .workers import WORKER_CLASSES
from .workers.base import BaseWorker, Publisher

logger = logging.getLogger(__name__)

WorkerFactory = Callable[..., BaseWorker]

# Statuses from which an acknowledged stop may move the row to stopped
_STOPPABLE = [
    ThreadStatus.RUNNING.value,
    ThreadStatus.PENDING_STOP.value,
    ThreadStatus.PENDING_RESTART.value,
    ThreadStatus.PENDING_START.value,
]
# A worker's own "stopped" message leaves pending_restart for the restart path
_WORKER_STOPPABLE = [
    ThreadStatus.RUNNING.value,
    ThreadStatus.PENDING_STOP.value,
    ThreadStatus.PENDING_START.value,
]
_RECOVERABLE = [ThreadStatus.RUNNING.value, ThreadStatus.PENDING_STOP.value]
_PROGRESS_FIELDS = ("progress", "currentItem", "resumeData", "statistics")


def default_worker_factory(thread_type: ThreadType, **kwargs: Any) -> BaseWorker:
    return WORKER_CLASSES[thread_type](**kwargs)


@dataclass
class WorkerHandle:
    """A launched worker thread and the signals used to stop it."""

    thread_type: ThreadType
    thread: threading.Thread
    stop_event: threading.Event
    done: asyncio.Event
    started_at: float = field(default_factory=time.monotonic)

    def is_alive(self) -> bool:
        return self.thread.is_alive() and not self.done.is_set()


class ThreadManager:
    """Lifecycle control for the analytics worker threads."""

    def __init__(
        self,
        store: DocumentStore,
        config: AnalyzerConfig,
        worker_factory: WorkerFactory = default_worker_factory,
    ):
        """
        Args:
            store: Manager-side store connection; workers open their own
            config: Application configuration
            worker_factory: Builds a worker for a thread type, replaceable in tests
        """
        self.store = store
        self.config = config
        self.worker_factory = worker_factory

        self._handles: Dict[ThreadType, WorkerHandle] = {}
        self._locks: Dict[ThreadType, asyncio.Lock] = {t: asyncio.Lock() for t in ThreadType}
        self._queue: Optional["asyncio.Queue[Tuple[ThreadType, Dict[str, Any]]]"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._startup_task: Optional[asyncio.Task] = None

        self.stats = {
            "threads_started": 0,
            "threads_stopped": 0,
            "threads_completed": 0,
            "threads_failed": 0,
            "messages_processed": 0,
            "control_requests": 0,
        }

    # -- setup --------------------------------------------------------------------

    async def initialize(self) -> None:
        """Seed rows, recover rows orphaned by a dead process, start the message pump."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        await self.store.seed_thread_rows(ThreadType)

        for row in await self.store.list_threads():
            if row.get("status") not in _RECOVERABLE:
                continue
            try:
                thread_type = ThreadType(row["threadType"])
            except ValueError:
                logger.warning(f"Ignoring unknown thread type {row.get('threadType')!r}")
                continue
            await self.store.update_thread(
                thread_type,
                {"status": ThreadStatus.STOPPED.value, "lastStopTime": utcnow()},
                expected_status=_RECOVERABLE,
            )
            logger.info(f"Recovered {thread_type.value} from {row['status']} to stopped")

        self._pump_task = asyncio.create_task(self._pump())
        logger.info("Thread manager initialized")

    def schedule_startup(self, delay: float) -> asyncio.Task:
        """Start every worker after ``delay`` seconds."""

        async def _delayed_start() -> None:
            if delay > 0:
                logger.info(f"Analysis workers will start in {delay:.0f}s")
                await asyncio.sleep(delay)
            await self.start_all()

        self._startup_task = asyncio.create_task(_delayed_start())
        return self._startup_task

    async def shutdown(self) -> None:
        """Stop all workers, drain pending messages and stop the pump."""
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            try:
                await self._startup_task
            except asyncio.CancelledError:
                pass

        await self.stop_all()

        if self._pump_task is not None:
            while self._queue is not None and not self._queue.empty():
                thread_type, message = self._queue.get_nowait()
                await self._apply_message(thread_type, message)
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        logger.info("Thread manager shut down")

    # -- control --------------------------------------------------------------------

    async def start_thread(self, thread_type: ThreadType, restart: bool = False) -> Dict[str, Any]:
        """
        Launch the worker for ``thread_type``.

        Args:
            restart: Discard resumeData and progress and start from the beginning

        Returns:
            ``{"success": bool, "message": str}``
        """
        async with self._locks[thread_type]:
            return await self._start_locked(thread_type, restart)

    async def stop_thread(self, thread_type: ThreadType) -> Dict[str, Any]:
        """Ask the worker to stop and wait for it to acknowledge."""
        async with self._locks[thread_type]:
            return await self._stop_locked(thread_type)

    async def restart_thread(self, thread_type: ThreadType) -> Dict[str, Any]:
        """Stop the worker if running, clear its resume point, start it again."""
        async with self._locks[thread_type]:
            await self.store.update_thread(
                thread_type,
                {"status": ThreadStatus.PENDING_RESTART.value, "resumeData": None},
            )
            await self._stop_locked(thread_type)
            result = await self._start_locked(thread_type, restart=True)
            if not result["success"]:
                await self._mark_start_refused(thread_type, result["message"])
            return result

    async def start_all(self) -> Dict[str, Dict[str, Any]]:
        results = {}
        for thread_type in ThreadType:
            results[thread_type.value] = await self.start_thread(thread_type)
            if not results[thread_type.value]["success"]:
                logger.warning(
                    f"Not starting {thread_type.value}: {results[thread_type.value]['message']}"
                )
        return results

    async def stop_all(self) -> Dict[str, Dict[str, Any]]:
        running = [t for t, h in self._handles.items() if h.is_alive()]
        if running:
            logger.info(f"Stopping {len(running)} analysis threads")
        outcomes = await asyncio.gather(*(self.stop_thread(t) for t in running))
        return {t.value: outcome for t, outcome in zip(running, outcomes)}

    async def get_thread_status(self) -> List[Dict[str, Any]]:
        return await self.store.list_threads()

    def is_running(self, thread_type: ThreadType) -> bool:
        handle = self._handles.get(thread_type)
        return handle is not None and handle.is_alive()

    async def _start_locked(self, thread_type: ThreadType, restart: bool) -> Dict[str, Any]:
        if thread_type == ThreadType.SECTION_ANALYSIS and not self.config.section_analysis_enabled:
            return {"success": False, "message": "GROK_API_KEY is not configured"}

        if self.is_running(thread_type):
            return {"success": False, "message": "Thread is already running"}

        fields: Dict[str, Any] = {
            "status": ThreadStatus.RUNNING.value,
            "lastStartTime": utcnow(),
            "error": None,
            "currentItem": None,
        }
        if restart:
            fields["resumeData"] = None
            fields["progress"] = {"current": 0, "total": 0, "percentage": 0}
            fields["statistics"] = {"itemsProcessed": 0, "itemsFailed": 0, "averageTimePerItem": 0}
        await self.store.update_thread(thread_type, fields)

        self._launch(thread_type, restart)
        self.stats["threads_started"] += 1
        logger.info(f"Started analysis thread {thread_type.value}{' (restart)' if restart else ''}")
        return {"success": True, "message": "Thread started"}

    async def _stop_locked(self, thread_type: ThreadType) -> Dict[str, Any]:
        handle = self._handles.get(thread_type)
        if handle is None or not handle.is_alive():
            await self.store.update_thread(
                thread_type,
                {"status": ThreadStatus.STOPPED.value, "lastStopTime": utcnow(), "currentItem": None},
                expected_status=_STOPPABLE,
            )
            return {"success": True, "message": "Thread is not running"}

        # pending_restart is left in place so the worker sees a stop request either way
        await self.store.update_thread(
            thread_type,
            {"status": ThreadStatus.PENDING_STOP.value},
            expected_status=[ThreadStatus.RUNNING.value, ThreadStatus.PENDING_START.value],
        )
        handle.stop_event.set()

        timeout = self.config.analysis.stop_timeout
        message = "Thread stopped"
        try:
            await asyncio.wait_for(handle.done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{thread_type.value} did not acknowledge stop within {timeout:.0f}s; "
                "it will exit at its next checkpoint"
            )
            message = f"Stop requested; worker did not confirm within {timeout:.0f}s"

        await self.store.update_thread(
            thread_type,
            {"status": ThreadStatus.STOPPED.value, "lastStopTime": utcnow(), "currentItem": None},
            expected_status=_STOPPABLE,
        )
        self.stats["threads_stopped"] += 1
        logger.info(f"Stopped analysis thread {thread_type.value}")
        return {"success": True, "message": message}

    async def _mark_start_refused(self, thread_type: ThreadType, reason: str) -> None:
        await self.store.update_thread(
            thread_type,
            {"status": ThreadStatus.FAILED.value, "error": reason, "lastStopTime": utcnow()},
            expected_status=[
                ThreadStatus.PENDING_START.value,
                ThreadStatus.PENDING_RESTART.value,
                ThreadStatus.STOPPED.value,
            ],
        )

    # -- worker threads -----------------------------------------------------------

    def _publisher(self, thread_type: ThreadType) -> Publisher:
        loop = self._loop
        queue = self._queue
        if loop is None or queue is None:
            raise ThreadManagerError("Thread manager is not initialized")

        def publish(message: Dict[str, Any]) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, (thread_type, message))
            except RuntimeError:
                logger.warning(
                    f"Dropped {message.get('type')} message from {thread_type.value}: loop closed"
                )

        return publish

    def _launch(self, thread_type: ThreadType, restart: bool) -> WorkerHandle:
        stop_event = threading.Event()
        publish = self._publisher(thread_type)
        worker = self.worker_factory(
            thread_type,
            config=self.config,
            stop_event=stop_event,
            publish=publish,
            restart=restart,
        )
        thread = threading.Thread(
            target=self._thread_main,
            args=(worker, publish),
            name=f"analysis-{thread_type.value}",
            daemon=True,
        )
        handle = WorkerHandle(thread_type, thread, stop_event, asyncio.Event())
        self._handles[thread_type] = handle
        thread.start()
        return handle

    @staticmethod
    def _thread_main(worker: BaseWorker, publish: Publisher) -> None:
        try:
            asyncio.run(worker.execute())
        except Exception as e:
            logger.exception(f"Worker thread {threading.current_thread().name} crashed: {e}")
            publish({"type": "error", "error": str(e)})

    # -- message pump -------------------------------------------------------------

    async def _pump(self) -> None:
        while True:
            thread_type, message = await self._queue.get()
            try:
                await self._apply_message(thread_type, message)
            except Exception as e:
                logger.error(f"Failed to apply {message.get('type')} from {thread_type.value}: {e}")

    async def _apply_message(self, thread_type: ThreadType, message: Dict[str, Any]) -> None:
        """Mirror one worker message onto the AnalysisThread row."""
        self.stats["messages_processed"] += 1
        kind = message.get("type")
        handle = self._handles.get(thread_type)

        if kind == "progress":
            data = message.get("data") or {}
            fields = {key: data[key] for key in _PROGRESS_FIELDS if key in data}
            if fields:
                await self.store.update_thread(thread_type, fields)
            return

        now = utcnow()
        if kind == "completed":
            data = message.get("data") or {}
            row = await self.store.get_thread(thread_type) or {}
            run_ms = (time.monotonic() - handle.started_at) * 1000 if handle else 0
            await self.store.update_thread(
                thread_type,
                {
                    "status": ThreadStatus.COMPLETED.value,
                    "lastCompletedTime": now,
                    "totalRunTime": int((row.get("totalRunTime") or 0) + run_ms),
                    "progress.percentage": 100,
                    "resumeData": None,
                    "currentItem": None,
                    "statistics.itemsFailed": data.get("failedCount", 0),
                },
            )
            self.stats["threads_completed"] += 1
            logger.info(f"Analysis thread {thread_type.value} completed")
        elif kind == "stopped":
            await self.store.update_thread(
                thread_type,
                {"status": ThreadStatus.STOPPED.value, "lastStopTime": now, "currentItem": None},
                expected_status=_WORKER_STOPPABLE,
            )
        elif kind == "error":
            await self.store.update_thread(
                thread_type,
                {
                    "status": ThreadStatus.FAILED.value,
                    "error": message.get("error") or "Unknown error",
                    "lastStopTime": now,
                },
            )
            self.stats["threads_failed"] += 1
            logger.error(f"Analysis thread {thread_type.value} failed: {message.get('error')}")
        else:
            logger.warning(f"Unknown message type {kind!r} from {thread_type.value}")
            return

        if handle is not None:
            handle.done.set()

    # -- control requests from other processes --------------------------------------

    async def poll_control_requests(self) -> List[Tuple[str, str]]:
        """
        Apply pending_start / pending_stop / pending_restart rows.

        Returns:
            (thread type, action) pairs that were acted on
        """
        actions = []
        for row in await self.store.list_threads():
            try:
                thread_type = ThreadType(row.get("threadType"))
            except ValueError:
                continue
            if self._locks[thread_type].locked():
                continue

            status = row.get("status")
            if status == ThreadStatus.PENDING_START.value:
                result = await self.start_thread(thread_type)
                if result["success"]:
                    pass
                elif self.is_running(thread_type):
                    await self.store.update_thread(
                        thread_type,
                        {"status": ThreadStatus.RUNNING.value},
                        expected_status=[ThreadStatus.PENDING_START.value],
                    )
                else:
                    await self._mark_start_refused(thread_type, result["message"])
                actions.append((thread_type.value, "start"))
            elif status == ThreadStatus.PENDING_STOP.value:
                await self.stop_thread(thread_type)
                actions.append((thread_type.value, "stop"))
            elif status == ThreadStatus.PENDING_RESTART.value:
                await self.restart_thread(thread_type)
                actions.append((thread_type.value, "restart"))

        if actions:
            self.stats["control_requests"] += len(actions)
            logger.info(f"Applied control requests: {actions}")
        return actions

    async def run_control_poller(self, stop_event: asyncio.Event) -> None:
        interval = self.config.analysis.control_poll_interval
        while not stop_event.is_set():
            try:
                await self.poll_control_requests()
            except Exception as e:
                logger.error(f"Control request poll failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # -- status log -------------------------------------------------------------------

    async def log_status(self) -> None:
        for row in await self.store.list_threads():
            progress = row.get("progress") or {}
            logger.info(
                f"Thread {row.get('threadType')}: {row.get('status')} "
                f"{progress.get('current', 0)}/{progress.get('total', 0)} "
                f"({progress.get('percentage', 0)}%)"
            )

    async def run_status_log(self, stop_event: asyncio.Event) -> None:
        interval = self.config.analysis.status_log_interval
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await self.log_status()
                except Exception as e:
                    logger.error(f"Thread status log failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["running"] = [t.value for t in ThreadType if self.is_running(t)]
        return stats
