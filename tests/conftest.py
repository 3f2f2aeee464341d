"""
Shared fixtures: an in-memory stand-in for the MongoDB document store.

The fake keeps the subset of DocumentStore behaviour the workers, the
thread manager and the trigger watchers rely on. State is guarded by a
threading lock because analytics workers call it from their own threads
and event loops.
"""

import copy
import threading
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import pytest
from bson import ObjectId

from ecfr_analyzer.models.config_models import AnalyzerConfig
from ecfr_analyzer.storage.document_store import InsertReport
from ecfr_analyzer.models.record_models import (
    JobStatus,
    RefreshType,
    ThreadType,
    TriggeredBy,
    default_thread_row,
    utcnow,
)


def _set_path(row: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = row
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


class FakeBlobStore:
    """GridFS double keeping payloads in a dict."""

    def __init__(self) -> None:
        self.files: Dict[ObjectId, Dict[str, Any]] = {}

    async def upload(
        self, filename: str, data: bytes, metadata: Optional[Dict[str, Any]] = None
    ) -> ObjectId:
        file_id = ObjectId()
        self.files[file_id] = {"filename": filename, "data": data, "metadata": metadata or {}}
        return file_id

    async def download(self, file_id: Any) -> bytes:
        return self.files[ObjectId(str(file_id))]["data"]

    async def download_text(self, file_id: Any) -> str:
        return (await self.download(file_id)).decode("utf-8")

    async def delete(self, file_id: Any) -> None:
        self.files.pop(ObjectId(str(file_id)), None)


class InMemoryStore:
    """Dictionary-backed DocumentStore double."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.threads: Dict[str, Dict[str, Any]] = {}
        self.titles: List[Dict[str, Any]] = []
        self.documents: List[Dict[str, Any]] = []
        self.blob_contents: Dict[Any, str] = {}
        self.metrics: List[Dict[str, Any]] = []
        self.version_histories: Dict[int, Dict[str, Any]] = {}
        self.section_analyses: Dict[Any, Dict[str, Any]] = {}
        self.settings: Dict[str, Any] = {}
        self.refresh_rows: Dict[Any, Dict[str, Any]] = {}
        self.analysis_triggers: List[Dict[str, Any]] = []
        self.rebuild_rows: Dict[Any, Dict[str, Any]] = {}
        self.rejected_identifiers: set = set()
        self.blobs = FakeBlobStore()
        self.analysis_writes = 0
        self.closed = False

    # -- lifecycle --------------------------------------------------------------

    async def connect(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    # -- analysis threads ---------------------------------------------------------

    async def seed_thread_rows(self, thread_types: Iterable[ThreadType]) -> None:
        with self._lock:
            for thread_type in thread_types:
                if thread_type.value not in self.threads:
                    row = default_thread_row(thread_type)
                    row["createdAt"] = utcnow()
                    self.threads[thread_type.value] = row

    async def get_thread(self, thread_type: ThreadType) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.threads.get(thread_type.value)
            return copy.deepcopy(row) if row else None

    async def list_threads(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(self.threads[k]) for k in sorted(self.threads)]

    async def update_thread(
        self,
        thread_type: ThreadType,
        fields: Dict[str, Any],
        expected_status: Optional[Iterable[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.threads.get(thread_type.value)
            if row is None:
                return None
            if expected_status is not None and row.get("status") not in list(expected_status):
                return None
            for key, value in fields.items():
                _set_path(row, key, copy.deepcopy(value))
            row["updatedAt"] = utcnow()
            return copy.deepcopy(row)

    async def get_thread_status(self, thread_type: ThreadType) -> Optional[str]:
        with self._lock:
            row = self.threads.get(thread_type.value)
            return row.get("status") if row else None

    def set_status(self, thread_type: ThreadType, status: str) -> None:
        """Synchronous write, as another process would do."""
        with self._lock:
            self.threads[thread_type.value]["status"] = status

    # -- titles and documents ---------------------------------------------------------

    def add_title(self, number: int, name: Optional[str] = None) -> Dict[str, Any]:
        title = {"_id": ObjectId(), "number": number, "name": name or f"Title {number}"}
        self.titles.append(title)
        self.titles.sort(key=lambda t: t["number"])
        return title

    def add_document(self, **fields: Any) -> Dict[str, Any]:
        document = {"_id": ObjectId()}
        document.update(fields)
        self.documents.append(document)
        return document

    async def list_titles(self) -> List[Dict[str, Any]]:
        return [dict(t) for t in self.titles]

    async def get_title(self, number: int) -> Optional[Dict[str, Any]]:
        for title in self.titles:
            if title["number"] == number:
                return {k: v for k, v in title.items() if k != "xmlContent"}
        return None

    async def upsert_title(self, number: int, fields: Dict[str, Any]) -> None:
        for title in self.titles:
            if title["number"] == number:
                title.update(fields)
                return
        title = {"_id": ObjectId(), "createdAt": utcnow()}
        title.update(fields)
        self.titles.append(title)
        self.titles.sort(key=lambda t: t["number"])

    async def delete_documents_for_title(self, title_number: int) -> int:
        before = len(self.documents)
        self.documents = [d for d in self.documents if d.get("titleNumber") != title_number]
        return before - len(self.documents)

    async def insert_documents(
        self, documents: List[Dict[str, Any]], batch_size: int = 50
    ) -> InsertReport:
        report = InsertReport()
        for document in documents:
            if document.get("identifier") in self.rejected_identifiers:
                report.failed += 1
                continue
            document.setdefault("_id", ObjectId())
            self.documents.append(document)
            report.inserted_ids.append(document["_id"])
        return report

    async def count_documents(self, query: Optional[Dict[str, Any]] = None) -> int:
        query = query or {}
        return sum(
            1 for d in self.documents if all(d.get(k) == v for k, v in query.items())
        )

    async def distinct_title_numbers(self) -> List[int]:
        return sorted({d["titleNumber"] for d in self.documents if d.get("titleNumber") is not None})

    async def iter_document_batches(
        self, title_number: int, batch_size: int, projection: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        documents = sorted(
            (d for d in self.documents if d.get("titleNumber") == title_number),
            key=lambda d: d["_id"],
        )
        for start in range(0, len(documents), batch_size):
            yield [dict(d) for d in documents[start:start + batch_size]]

    async def mark_title_analyzed(self, number: int, when: datetime) -> None:
        for title in self.titles:
            if title["number"] == number:
                title["lastAnalyzed"] = when

    async def get_root_title_document(self, title_number: int) -> Optional[Dict[str, Any]]:
        for document in self.documents:
            if document.get("titleNumber") == title_number and document.get("type") == "title":
                return dict(document)
        return None

    async def load_document_content(self, document: Dict[str, Any]) -> str:
        blob_id = document.get("contentGridFS")
        if blob_id is not None:
            if blob_id in self.blob_contents:
                return self.blob_contents[blob_id]
            return await self.blobs.download_text(blob_id)
        return document.get("content") or ""

    async def count_sections(self) -> int:
        return sum(1 for d in self.documents if d.get("type") == "section")

    async def fetch_sections(
        self, start_id: Optional[ObjectId] = None, limit: int = 6
    ) -> List[Dict[str, Any]]:
        sections = sorted(
            (d for d in self.documents if d.get("type") == "section"), key=lambda d: d["_id"]
        )
        if start_id is not None:
            sections = [s for s in sections if s["_id"] >= start_id]
        return [dict(s) for s in sections[:limit]]

    # -- analytics ------------------------------------------------------------------

    async def get_setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    async def insert_metric(self, title_number: int, metrics: Dict[str, Any], when: datetime) -> Any:
        row = {"_id": ObjectId(), "titleNumber": title_number, "analysisDate": when, "metrics": metrics}
        self.metrics.append(row)
        return row["_id"]

    async def upsert_daily_age_distribution(
        self, title_number: int, distribution: Dict[str, int], when: datetime, day_start: datetime
    ) -> bool:
        for row in reversed(self.metrics):
            if row["titleNumber"] == title_number and row["analysisDate"] >= day_start:
                row["metrics"]["regulationAgeDistribution"] = distribution
                row["analysisDate"] = when
                return True
        await self.insert_metric(title_number, {"regulationAgeDistribution": distribution}, when)
        return False

    async def get_version_history(self, title_number: int) -> Optional[Dict[str, Any]]:
        return self.version_histories.get(title_number)

    async def upsert_version_history(
        self, title_number: int, versions: List[Dict[str, Any]], when: datetime
    ) -> None:
        self.version_histories[title_number] = {
            "titleNumber": title_number,
            "versions": versions,
            "lastUpdated": when,
        }

    async def section_analysis_exists(self, document_id: ObjectId, version: str) -> bool:
        with self._lock:
            row = self.section_analyses.get(document_id)
            return row is not None and row.get("analysisVersion") == version

    async def upsert_section_analysis(self, document_id: ObjectId, fields: Dict[str, Any]) -> None:
        with self._lock:
            self.analysis_writes += 1
            self.section_analyses.setdefault(document_id, {}).update(fields)

    # -- refresh progress and triggers ----------------------------------------------

    async def create_refresh_progress(
        self,
        refresh_type: RefreshType,
        triggered_by: TriggeredBy,
        status: JobStatus = JobStatus.PENDING,
        titles_order: Optional[List[int]] = None,
        total_titles: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        now = utcnow()
        row = {
            "_id": ObjectId(),
            "type": refresh_type.value,
            "status": status.value,
            "totalTitles": total_titles,
            "processedTitles": 0,
            "processedTitleNumbers": [],
            "failedTitles": [],
            "currentTitle": None,
            "lastProcessedTitle": None,
            "titlesOrder": titles_order or [],
            "startedAt": now if status == JobStatus.IN_PROGRESS else None,
            "completedAt": None,
            "lastError": None,
            "triggeredBy": triggered_by.value,
            "metadata": metadata or {},
            "createdAt": now,
        }
        self.refresh_rows[row["_id"]] = row
        return copy.deepcopy(row)

    async def get_refresh_progress(self, progress_id: Any) -> Optional[Dict[str, Any]]:
        row = self.refresh_rows.get(progress_id)
        return copy.deepcopy(row) if row else None

    async def update_refresh_progress(self, progress_id: Any, fields: Dict[str, Any]) -> None:
        self.refresh_rows[progress_id].update(copy.deepcopy(fields))

    async def find_active_refresh(self, refresh_type: RefreshType) -> Optional[Dict[str, Any]]:
        active = [
            r
            for r in self.refresh_rows.values()
            if r["type"] == refresh_type.value
            and r["status"] in (JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value)
        ]
        active.sort(key=lambda r: r["createdAt"], reverse=True)
        return copy.deepcopy(active[0]) if active else None

    async def set_refresh_current_title(self, progress_id: Any, number: int, name: str) -> None:
        self.refresh_rows[progress_id]["currentTitle"] = {
            "number": number,
            "name": name,
            "startedAt": utcnow(),
        }

    async def mark_refresh_title_processed(self, progress_id: Any, number: int) -> Dict[str, Any]:
        row = self.refresh_rows[progress_id]
        if number not in row["processedTitleNumbers"]:
            row["processedTitleNumbers"].append(number)
            row["processedTitles"] += 1
        row.update({"lastProcessedTitle": number, "currentTitle": None})
        if (
            row["status"] != JobStatus.COMPLETED.value
            and row["totalTitles"] > 0
            and row["processedTitles"] >= row["totalTitles"]
        ):
            row.update({"status": JobStatus.COMPLETED.value, "completedAt": utcnow()})
        return copy.deepcopy(row)

    async def mark_refresh_title_failed(
        self, progress_id: Any, number: int, name: str, error: str
    ) -> None:
        row = self.refresh_rows[progress_id]
        row["failedTitles"].append(
            {"number": number, "name": name, "error": error, "failedAt": utcnow()}
        )
        row.update({"lastError": error, "currentTitle": None})

    async def fail_interrupted_single_title_jobs(self, reason: str) -> int:
        count = 0
        for row in self.refresh_rows.values():
            if (
                row["type"] == RefreshType.SINGLE_TITLE.value
                and row["status"] == JobStatus.IN_PROGRESS.value
            ):
                row.update(
                    {
                        "status": JobStatus.FAILED.value,
                        "lastError": reason,
                        "completedAt": utcnow(),
                        "currentTitle": None,
                    }
                )
                count += 1
        return count

    async def latest_refresh_progress(self) -> Optional[Dict[str, Any]]:
        rows = sorted(self.refresh_rows.values(), key=lambda r: r["createdAt"])
        return copy.deepcopy(rows[-1]) if rows else None

    async def refresh_in_progress(self) -> bool:
        return any(r["status"] == JobStatus.IN_PROGRESS.value for r in self.refresh_rows.values())

    async def find_oldest_pending_trigger(self) -> Optional[Dict[str, Any]]:
        pending = [
            r
            for r in self.refresh_rows.values()
            if r["status"] == JobStatus.PENDING.value
            and r["triggeredBy"] in (TriggeredBy.MANUAL.value, TriggeredBy.MANUAL_SINGLE.value)
        ]
        pending.sort(key=lambda r: r["createdAt"])
        return dict(pending[0]) if pending else None

    async def promote_refresh_trigger(self, progress_id: Any) -> Optional[Dict[str, Any]]:
        row = self.refresh_rows.get(progress_id)
        if row is None or row["status"] != JobStatus.PENDING.value:
            return None
        row.update({"status": JobStatus.IN_PROGRESS.value, "startedAt": utcnow()})
        return dict(row)

    # -- index rebuild progress -------------------------------------------------------

    async def create_rebuild_progress(self) -> Dict[str, Any]:
        now = utcnow()
        row = {
            "_id": ObjectId(),
            "status": "pending",
            "totalDocuments": 0,
            "processedDocuments": 0,
            "indexedDocuments": 0,
            "failedDocuments": 0,
            "currentTitle": None,
            "startTime": None,
            "endTime": None,
            "error": None,
            "operations": {
                step: {"completed": False, "error": None}
                for step in ("deleteIndex", "createIndex", "indexDocuments")
            },
            "createdAt": now,
        }
        self.rebuild_rows[row["_id"]] = row
        return copy.deepcopy(row)

    async def get_rebuild_progress(self, progress_id: Any) -> Optional[Dict[str, Any]]:
        row = self.rebuild_rows.get(progress_id)
        return copy.deepcopy(row) if row else None

    async def latest_rebuild_progress(self) -> Optional[Dict[str, Any]]:
        rows = sorted(self.rebuild_rows.values(), key=lambda r: r["createdAt"])
        return copy.deepcopy(rows[-1]) if rows else None

    async def update_rebuild_progress(
        self,
        progress_id: Any,
        fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None,
    ) -> None:
        row = self.rebuild_rows[progress_id]
        for key, value in (fields or {}).items():
            _set_path(row, key, value)
        for key, value in (increments or {}).items():
            row[key] = row.get(key, 0) + value

    # -- legacy analysis triggers -----------------------------------------------------

    async def delete_stale_analysis_triggers(self, older_than: datetime) -> int:
        before = len(self.analysis_triggers)
        self.analysis_triggers = [
            t
            for t in self.analysis_triggers
            if not (t["status"] == "pending" and t["createdAt"] < older_than)
        ]
        return before - len(self.analysis_triggers)

    async def complete_oldest_manual_analysis_trigger(self, note: str) -> Optional[Dict[str, Any]]:
        pending = sorted(
            (
                t
                for t in self.analysis_triggers
                if t["status"] == "pending" and t.get("triggeredBy") == "manual"
            ),
            key=lambda t: t["createdAt"],
        )
        if not pending:
            return None
        row = pending[0]
        row.update({"status": "completed", "endTime": utcnow(), "error": note})
        return dict(row)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def analyzer_config() -> AnalyzerConfig:
    """Configuration with an LLM key and no pacing delays."""
    return AnalyzerConfig(
        llm={"api_key": "test-key", "max_retries": 1},
        analysis={
            "rate_limit_rpm": 600,
            "stop_timeout": 10.0,
            "control_poll_interval": 0.05,
            "version_request_delay": 0.0,
        },
    )
