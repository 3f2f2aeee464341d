"""
MongoDB document store client.

Typed operations over the title, document, analytics, settings and
progress collections. Each service process, and each analytics worker
thread, owns one ``DocumentStore`` with its own connection pool.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import bson
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import (
    BulkWriteError,
    ConnectionFailure,
    DuplicateKeyError,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from ..models.config_models import MongoConfig
from ..models.errors import DocumentStoreError
from ..models.record_models import (
    JobStatus,
    RebuildStatus,
    RefreshType,
    ThreadType,
    TriggeredBy,
    default_thread_row,
    utcnow,
)
from .blob_store import BlobStore

logger = logging.getLogger(__name__)

# Collection names shared with the read API
TITLES = "titles"
DOCUMENTS = "documents"
METRICS = "metrics"
VERSION_HISTORIES = "versionhistories"
SECTION_ANALYSES = "sectionanalyses"
ANALYSIS_THREADS = "analysisthreads"
REFRESH_PROGRESS = "refreshprogresses"
INDEX_REBUILDS = "indexrebuildprogresses"
ANALYSIS_PROGRESS = "analysisprogresses"
SETTINGS = "settings"

MAX_BATCH_BYTES = 15 * 1024 * 1024


@dataclass
class InsertReport:
    """Outcome of a batched document insert."""

    inserted_ids: List[ObjectId] = field(default_factory=list)
    failed: int = 0
    degraded_batches: int = 0

    @property
    def inserted(self) -> int:
        return len(self.inserted_ids)


def _stamped(fields: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    stamped = dict(fields)
    stamped["updatedAt"] = now or utcnow()
    return stamped


class DocumentStore:
    """Async MongoDB client wrapper with the pipeline's typed operations."""

    def __init__(self, config: MongoConfig, create_indexes: bool = True):
        """
        Args:
            config: Connection settings
            create_indexes: Whether ``connect`` ensures collection indexes.
                Worker-owned stores pass False.
        """
        self.config = config
        self.create_indexes = create_indexes
        self.client: Optional[AsyncMongoClient] = None
        self.db: Any = None
        self.blobs: Optional[BlobStore] = None
        self._connected = False

    async def connect(self) -> None:
        """
        Connect and verify the server, retrying a fixed number of times.

        Raises:
            DocumentStoreError: When every attempt fails
        """
        if self._connected:
            return

        attempts = self.config.connect_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            client = AsyncMongoClient(
                self.config.uri,
                maxPoolSize=self.config.max_pool_size,
                serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
                socketTimeoutMS=self.config.socket_timeout_ms,
                tz_aware=True,
            )
            try:
                await client.admin.command("ping")
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                last_error = e
                await client.close()
                logger.warning(f"MongoDB connection attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.config.connect_retry_delay)
                continue

            self.client = client
            self.db = (
                client[self.config.database]
                if self.config.database
                else client.get_default_database(default="ecfr")
            )
            self.blobs = BlobStore(self.db, self.config.blob_bucket)
            self._connected = True
            logger.info(f"Connected to MongoDB database '{self.db.name}'")

            if self.create_indexes:
                await self.ensure_indexes()
            return

        raise DocumentStoreError(
            f"Could not connect to MongoDB after {attempts} attempts: {last_error}"
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
        self.client = None
        self.db = None
        self.blobs = None
        self._connected = False
        logger.debug("MongoDB connection closed")

    async def __aenter__(self) -> "DocumentStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _collection(self, name: str) -> Any:
        if self.db is None:
            raise DocumentStoreError("DocumentStore is not connected")
        return self.db[name]

    async def ensure_indexes(self) -> None:
        """Create the indexes the pipeline and read API rely on."""
        try:
            titles = self._collection(TITLES)
            await titles.create_index([("number", ASCENDING)], unique=True)
            await titles.create_index([("lastDownloaded", ASCENDING)])
            await titles.create_index([("upToDateAsOf", ASCENDING)])

            documents = self._collection(DOCUMENTS)
            await documents.create_index([("titleNumber", ASCENDING), ("type", ASCENDING)])
            await documents.create_index(
                [("titleNumber", ASCENDING), ("identifier", ASCENDING)], unique=True
            )

            await self._collection(METRICS).create_index(
                [("titleNumber", ASCENDING), ("analysisDate", DESCENDING)]
            )
            await self._collection(VERSION_HISTORIES).create_index(
                [("titleNumber", ASCENDING)], unique=True
            )
            await self._collection(SECTION_ANALYSES).create_index(
                [("documentId", ASCENDING)], unique=True
            )
            await self._collection(ANALYSIS_THREADS).create_index(
                [("threadType", ASCENDING)], unique=True
            )
            await self._collection(SETTINGS).create_index([("key", ASCENDING)], unique=True)
            await self._collection(REFRESH_PROGRESS).create_index(
                [("status", ASCENDING), ("createdAt", ASCENDING)]
            )
        except PyMongoError as e:
            raise DocumentStoreError(f"Failed to create indexes: {e}") from e

        logger.info("MongoDB indexes ensured")

    # -- titles ---------------------------------------------------------------

    async def get_title(self, number: int) -> Optional[Dict[str, Any]]:
        return await self._collection(TITLES).find_one(
            {"number": number}, {"xmlContent": 0}
        )

    async def upsert_title(self, number: int, fields: Dict[str, Any]) -> None:
        now = utcnow()
        await self._collection(TITLES).update_one(
            {"number": number},
            {"$set": _stamped(fields, now), "$setOnInsert": {"createdAt": now}},
            upsert=True,
        )

    async def list_titles(self) -> List[Dict[str, Any]]:
        """Stored titles ascending by number, without embedded XML."""
        cursor = self._collection(TITLES).find({}, {"xmlContent": 0}).sort("number", ASCENDING)
        return await cursor.to_list(None)

    async def mark_title_analyzed(self, number: int, when: datetime) -> None:
        await self._collection(TITLES).update_one(
            {"number": number}, {"$set": _stamped({"lastAnalyzed": when})}
        )

    # -- documents ------------------------------------------------------------

    async def delete_documents_for_title(self, title_number: int) -> int:
        result = await self._collection(DOCUMENTS).delete_many({"titleNumber": title_number})
        return result.deleted_count

    async def insert_documents(
        self,
        documents: List[Dict[str, Any]],
        batch_size: int = 50,
        max_batch_bytes: int = MAX_BATCH_BYTES,
    ) -> InsertReport:
        """
        Insert documents in unordered batches.

        A batch whose BSON size exceeds ``max_batch_bytes`` is inserted one
        record at a time. When an unordered batch reports write errors,
        only the failed records are retried individually; per-record
        failures are logged and skipped.
        """
        report = InsertReport()
        collection = self._collection(DOCUMENTS)
        now = utcnow()

        for doc in documents:
            doc.setdefault("_id", ObjectId())
            doc.setdefault("createdAt", now)
            doc.setdefault("updatedAt", now)

        for start in range(0, len(documents), batch_size):
            batch = documents[start:start + batch_size]
            batch_bytes = sum(len(bson.encode(doc)) for doc in batch)

            if batch_bytes > max_batch_bytes:
                logger.info(
                    f"Batch {start // batch_size + 1} is {batch_bytes} bytes, "
                    f"inserting records individually"
                )
                report.degraded_batches += 1
                await self._insert_individually(batch, report)
                continue

            try:
                await collection.insert_many(batch, ordered=False)
                report.inserted_ids.extend(doc["_id"] for doc in batch)
            except BulkWriteError as e:
                failed_indexes = {err["index"] for err in e.details.get("writeErrors", [])}
                logger.warning(
                    f"Batch insert reported {len(failed_indexes)} write errors, "
                    f"retrying those records individually"
                )
                report.degraded_batches += 1
                report.inserted_ids.extend(
                    doc["_id"] for i, doc in enumerate(batch) if i not in failed_indexes
                )
                await self._insert_individually(
                    [doc for i, doc in enumerate(batch) if i in failed_indexes], report
                )
            except PyMongoError as e:
                logger.warning(f"Batch insert failed ({e}), inserting records individually")
                report.degraded_batches += 1
                await self._insert_individually(batch, report)

        return report

    async def _insert_individually(
        self, documents: Iterable[Dict[str, Any]], report: InsertReport
    ) -> None:
        collection = self._collection(DOCUMENTS)
        for doc in documents:
            try:
                await collection.insert_one(doc)
                report.inserted_ids.append(doc["_id"])
            except DuplicateKeyError as e:
                if "_id_" in str(e):
                    report.inserted_ids.append(doc["_id"])
                else:
                    report.failed += 1
                    logger.error(
                        f"Duplicate document {doc.get('identifier')} "
                        f"for title {doc.get('titleNumber')}"
                    )
            except PyMongoError as e:
                report.failed += 1
                logger.error(
                    f"Failed to insert document {doc.get('identifier')} "
                    f"for title {doc.get('titleNumber')}: {e}"
                )

    async def get_root_title_document(self, title_number: int) -> Optional[Dict[str, Any]]:
        return await self._collection(DOCUMENTS).find_one(
            {"titleNumber": title_number, "type": "title"},
            {"content": 1, "contentGridFS": 1, "identifier": 1, "titleNumber": 1},
        )

    async def load_document_content(self, document: Dict[str, Any]) -> str:
        """Inline content, or the spilled blob when the record references one."""
        blob_id = document.get("contentGridFS")
        if blob_id is not None:
            if self.blobs is None:
                raise DocumentStoreError("DocumentStore is not connected")
            return await self.blobs.download_text(blob_id)
        return document.get("content") or ""

    async def count_documents(self, query: Optional[Dict[str, Any]] = None) -> int:
        return await self._collection(DOCUMENTS).count_documents(query or {})

    async def distinct_title_numbers(self) -> List[int]:
        values = await self._collection(DOCUMENTS).distinct("titleNumber")
        return sorted(v for v in values if v is not None)

    async def iter_document_batches(
        self,
        title_number: int,
        batch_size: int,
        projection: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Stream a title's documents in ``_id`` order, ``batch_size`` at a time."""
        cursor = (
            self._collection(DOCUMENTS)
            .find({"titleNumber": title_number}, projection)
            .sort("_id", ASCENDING)
            .batch_size(batch_size)
        )
        batch: List[Dict[str, Any]] = []
        async for doc in cursor:
            batch.append(doc)
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    async def fetch_sections(
        self, start_id: Optional[ObjectId] = None, limit: int = 6
    ) -> List[Dict[str, Any]]:
        """Up to ``limit`` section documents with ``_id >= start_id``, ascending by ``_id``."""
        query: Dict[str, Any] = {"type": "section"}
        if start_id is not None:
            query["_id"] = {"$gte": start_id}
        projection = {
            "_id": 1,
            "titleNumber": 1,
            "identifier": 1,
            "heading": 1,
            "content": 1,
            "contentGridFS": 1,
        }
        cursor = (
            self._collection(DOCUMENTS).find(query, projection).sort("_id", ASCENDING).limit(limit)
        )
        return await cursor.to_list(None)

    async def count_sections(self) -> int:
        return await self.count_documents({"type": "section"})

    # -- analytics ------------------------------------------------------------

    async def insert_metric(self, title_number: int, metrics: Dict[str, Any], when: datetime) -> Any:
        row = {
            "titleNumber": title_number,
            "analysisDate": when,
            "metrics": metrics,
            "createdAt": when,
            "updatedAt": when,
        }
        result = await self._collection(METRICS).insert_one(row)
        return result.inserted_id

    async def upsert_daily_age_distribution(
        self,
        title_number: int,
        distribution: Dict[str, int],
        when: datetime,
        day_start: datetime,
    ) -> bool:
        """
        Set today's age histogram, creating a Metric row when none exists yet.

        Returns:
            True when an existing row was updated
        """
        collection = self._collection(METRICS)
        existing = await collection.find_one(
            {"titleNumber": title_number, "analysisDate": {"$gte": day_start}},
            sort=[("analysisDate", DESCENDING)],
        )
        if existing is not None:
            await collection.update_one(
                {"_id": existing["_id"]},
                {
                    "$set": _stamped(
                        {
                            "metrics.regulationAgeDistribution": distribution,
                            "analysisDate": when,
                        },
                        when,
                    )
                },
            )
            return True

        await self.insert_metric(title_number, {"regulationAgeDistribution": distribution}, when)
        return False

    async def get_version_history(self, title_number: int) -> Optional[Dict[str, Any]]:
        return await self._collection(VERSION_HISTORIES).find_one({"titleNumber": title_number})

    async def upsert_version_history(
        self, title_number: int, versions: List[Dict[str, Any]], when: datetime
    ) -> None:
        await self._collection(VERSION_HISTORIES).update_one(
            {"titleNumber": title_number},
            {
                "$set": _stamped({"versions": versions, "lastUpdated": when}, when),
                "$setOnInsert": {"createdAt": when},
            },
            upsert=True,
        )

    async def section_analysis_exists(self, document_id: ObjectId, version: str) -> bool:
        row = await self._collection(SECTION_ANALYSES).find_one(
            {"documentId": document_id, "analysisVersion": version}, {"_id": 1}
        )
        return row is not None

    async def upsert_section_analysis(
        self, document_id: ObjectId, fields: Dict[str, Any]
    ) -> None:
        now = utcnow()
        await self._collection(SECTION_ANALYSES).update_one(
            {"documentId": document_id},
            {"$set": _stamped(fields, now), "$setOnInsert": {"createdAt": now}},
            upsert=True,
        )

    async def get_setting(self, key: str, default: Any = None) -> Any:
        row = await self._collection(SETTINGS).find_one({"key": key})
        if row is None:
            return default
        return row.get("value", default)

    # -- analysis threads -----------------------------------------------------

    async def seed_thread_rows(self, thread_types: Iterable[ThreadType]) -> None:
        """Insert a stopped row for each thread type that has none yet."""
        collection = self._collection(ANALYSIS_THREADS)
        now = utcnow()
        for thread_type in thread_types:
            defaults = default_thread_row(thread_type)
            defaults["createdAt"] = now
            await collection.update_one(
                {"threadType": thread_type.value},
                {"$setOnInsert": defaults, "$set": {"updatedAt": now}},
                upsert=True,
            )

    async def get_thread(self, thread_type: ThreadType) -> Optional[Dict[str, Any]]:
        return await self._collection(ANALYSIS_THREADS).find_one(
            {"threadType": thread_type.value}
        )

    async def list_threads(self) -> List[Dict[str, Any]]:
        cursor = self._collection(ANALYSIS_THREADS).find({}).sort("threadType", ASCENDING)
        return await cursor.to_list(None)

    async def update_thread(
        self,
        thread_type: ThreadType,
        fields: Dict[str, Any],
        expected_status: Optional[Iterable[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Set fields on a thread row.

        Args:
            expected_status: When given, only update if the row's status is one of these

        Returns:
            The updated row, or None when the status guard did not match
        """
        query: Dict[str, Any] = {"threadType": thread_type.value}
        if expected_status is not None:
            query["status"] = {"$in": list(expected_status)}
        return await self._collection(ANALYSIS_THREADS).find_one_and_update(
            query,
            {"$set": _stamped(fields)},
            return_document=ReturnDocument.AFTER,
        )

    async def get_thread_status(self, thread_type: ThreadType) -> Optional[str]:
        row = await self._collection(ANALYSIS_THREADS).find_one(
            {"threadType": thread_type.value}, {"status": 1}
        )
        return row.get("status") if row else None

    # -- refresh progress -----------------------------------------------------

    async def find_active_refresh(self, refresh_type: RefreshType) -> Optional[Dict[str, Any]]:
        return await self._collection(REFRESH_PROGRESS).find_one(
            {
                "type": refresh_type.value,
                "status": {"$in": [JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value]},
            },
            sort=[("createdAt", DESCENDING)],
        )

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
        row: Dict[str, Any] = {
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
            "updatedAt": now,
        }
        result = await self._collection(REFRESH_PROGRESS).insert_one(row)
        row["_id"] = result.inserted_id
        return row

    async def get_refresh_progress(self, progress_id: Any) -> Optional[Dict[str, Any]]:
        return await self._collection(REFRESH_PROGRESS).find_one({"_id": progress_id})

    async def update_refresh_progress(self, progress_id: Any, fields: Dict[str, Any]) -> None:
        await self._collection(REFRESH_PROGRESS).update_one(
            {"_id": progress_id}, {"$set": _stamped(fields)}
        )

    async def set_refresh_current_title(self, progress_id: Any, number: int, name: str) -> None:
        await self.update_refresh_progress(
            progress_id,
            {"currentTitle": {"number": number, "name": name, "startedAt": utcnow()}},
        )

    async def mark_refresh_title_processed(self, progress_id: Any, number: int) -> Dict[str, Any]:
        """
        Record a processed title and complete the job when every title is done.

        The counter only moves when the number is new to
        ``processedTitleNumbers``, so re-processing never double counts.

        Returns:
            The row after the update
        """
        collection = self._collection(REFRESH_PROGRESS)
        now = utcnow()
        await collection.update_one(
            {"_id": progress_id, "processedTitleNumbers": {"$ne": number}},
            {
                "$inc": {"processedTitles": 1},
                "$addToSet": {"processedTitleNumbers": number},
            },
        )
        row = await collection.find_one_and_update(
            {"_id": progress_id},
            {"$set": {"lastProcessedTitle": number, "currentTitle": None, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if row is None:
            raise DocumentStoreError(f"RefreshProgress {progress_id} disappeared")

        if (
            row.get("status") != JobStatus.COMPLETED.value
            and row.get("totalTitles", 0) > 0
            and row.get("processedTitles", 0) >= row["totalTitles"]
        ):
            row = await collection.find_one_and_update(
                {"_id": progress_id},
                {
                    "$set": {
                        "status": JobStatus.COMPLETED.value,
                        "completedAt": now,
                        "updatedAt": now,
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
        return row

    async def mark_refresh_title_failed(
        self, progress_id: Any, number: int, name: str, error: str
    ) -> None:
        now = utcnow()
        await self._collection(REFRESH_PROGRESS).update_one(
            {"_id": progress_id},
            {
                "$push": {
                    "failedTitles": {
                        "number": number,
                        "name": name,
                        "error": error,
                        "failedAt": now,
                    }
                },
                "$set": {"lastError": error, "currentTitle": None, "updatedAt": now},
            },
        )

    async def refresh_in_progress(self) -> bool:
        row = await self._collection(REFRESH_PROGRESS).find_one(
            {"status": JobStatus.IN_PROGRESS.value}, {"_id": 1}
        )
        return row is not None

    async def find_oldest_pending_trigger(self) -> Optional[Dict[str, Any]]:
        return await self._collection(REFRESH_PROGRESS).find_one(
            {
                "status": JobStatus.PENDING.value,
                "triggeredBy": {
                    "$in": [TriggeredBy.MANUAL.value, TriggeredBy.MANUAL_SINGLE.value]
                },
            },
            sort=[("createdAt", ASCENDING)],
        )

    async def promote_refresh_trigger(self, progress_id: Any) -> Optional[Dict[str, Any]]:
        """Move a pending trigger to in_progress; None if it was no longer pending."""
        now = utcnow()
        return await self._collection(REFRESH_PROGRESS).find_one_and_update(
            {"_id": progress_id, "status": JobStatus.PENDING.value},
            {"$set": {"status": JobStatus.IN_PROGRESS.value, "startedAt": now, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def fail_interrupted_single_title_jobs(self, reason: str) -> int:
        """Fail single-title jobs left in_progress; they are never resumed."""
        now = utcnow()
        result = await self._collection(REFRESH_PROGRESS).update_many(
            {"type": RefreshType.SINGLE_TITLE.value, "status": JobStatus.IN_PROGRESS.value},
            {
                "$set": {
                    "status": JobStatus.FAILED.value,
                    "lastError": reason,
                    "completedAt": now,
                    "currentTitle": None,
                    "updatedAt": now,
                }
            },
        )
        return result.modified_count

    async def latest_refresh_progress(self) -> Optional[Dict[str, Any]]:
        return await self._collection(REFRESH_PROGRESS).find_one(
            {}, sort=[("createdAt", DESCENDING)]
        )

    # -- index rebuild progress ----------------------------------------------

    async def create_rebuild_progress(self) -> Dict[str, Any]:
        now = utcnow()
        row: Dict[str, Any] = {
            "status": RebuildStatus.PENDING.value,
            "totalDocuments": 0,
            "processedDocuments": 0,
            "indexedDocuments": 0,
            "failedDocuments": 0,
            "currentTitle": None,
            "startTime": None,
            "endTime": None,
            "error": None,
            "operations": {
                "deleteIndex": {"completed": False, "error": None},
                "createIndex": {"completed": False, "error": None},
                "indexDocuments": {"completed": False, "error": None},
            },
            "createdAt": now,
            "updatedAt": now,
        }
        result = await self._collection(INDEX_REBUILDS).insert_one(row)
        row["_id"] = result.inserted_id
        return row

    async def get_rebuild_progress(self, progress_id: Any) -> Optional[Dict[str, Any]]:
        return await self._collection(INDEX_REBUILDS).find_one({"_id": progress_id})

    async def latest_rebuild_progress(self) -> Optional[Dict[str, Any]]:
        return await self._collection(INDEX_REBUILDS).find_one(
            {}, sort=[("createdAt", DESCENDING)]
        )

    async def update_rebuild_progress(
        self,
        progress_id: Any,
        fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None,
    ) -> None:
        update: Dict[str, Any] = {"$set": _stamped(fields or {})}
        if increments:
            update["$inc"] = increments
        await self._collection(INDEX_REBUILDS).update_one({"_id": progress_id}, update)

    # -- legacy analysis triggers ---------------------------------------------

    async def delete_stale_analysis_triggers(self, older_than: datetime) -> int:
        result = await self._collection(ANALYSIS_PROGRESS).delete_many(
            {"status": JobStatus.PENDING.value, "createdAt": {"$lt": older_than}}
        )
        return result.deleted_count

    async def complete_oldest_manual_analysis_trigger(self, note: str) -> Optional[Dict[str, Any]]:
        now = utcnow()
        return await self._collection(ANALYSIS_PROGRESS).find_one_and_update(
            {"status": JobStatus.PENDING.value, "triggeredBy": TriggeredBy.MANUAL.value},
            {
                "$set": {
                    "status": JobStatus.COMPLETED.value,
                    "endTime": now,
                    "error": note,
                    "updatedAt": now,
                }
            },
            sort=[("createdAt", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
