"""
Title Refresher

Drives RefreshProgress jobs: downloads each title's XML, stores the
(compressed) snapshot on the Title row, replaces the title's documents and
re-indexes them for search. Jobs resume from ``processedTitleNumbers`` after
a crash, and a failure on one title never aborts the job.
"""

import asyncio
import base64
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..core.compression_engine import CompressionEngine
from ..core.dates import parse_date
from ..core.xml_parser import TitleXMLParser
from ..integration.ecfr_client import EcfrClient
from ..models.config_models import RefreshConfig, SearchConfig
from ..models.errors import SearchIndexError, TitleValidationError, XMLParseError
from ..models.record_models import (
    JobStatus,
    RefreshJob,
    RefreshType,
    TitleInfo,
    TriggeredBy,
    utcnow,
)
from ..storage.document_store import DocumentStore
from ..storage.search_index import SearchIndex, to_search_document

logger = logging.getLogger(__name__)

MAX_TITLE_RECORD_BYTES = 16 * 1024 * 1024
# Field name, quotes and framing around the embedded XML
_TITLE_RECORD_OVERHEAD = len('{"xmlContent":""}')

MIN_TITLE_NUMBER = 1
MAX_TITLE_NUMBER = 50


def base64_length(size: int) -> int:
    return 4 * ((size + 2) // 3)


def is_title_unchanged(title: TitleInfo, stored: Optional[Dict[str, Any]]) -> bool:
    """
    True when the stored snapshot is at least as new as the upstream issue.

    A missing upstream issue date or a title never downloaded counts as
    changed.
    """
    if stored is None or title.latest_issue_date is None:
        return False
    last_downloaded = parse_date(stored.get("lastDownloaded"))
    if last_downloaded is None:
        return False
    return title.latest_issue_date <= last_downloaded


def describe_progress(row: Optional[Dict[str, Any]]) -> str:
    """One-line summary of a RefreshProgress row for logs and the CLI."""
    if not row:
        return "no refresh jobs recorded"
    failed = row.get("failedTitles") or []
    summary = (
        f"{row.get('type')} refresh ({row.get('triggeredBy')}) {row.get('status')}: "
        f"{row.get('processedTitles', 0)}/{row.get('totalTitles', 0)} titles"
    )
    if failed:
        summary += f", failed titles {sorted({f.get('number') for f in failed})}"
    current = row.get("currentTitle")
    if current:
        summary += f", working on title {current.get('number')}"
    return summary


class TitleRefresher:
    """Downloads, parses, stores and indexes CFR titles."""

    def __init__(
        self,
        store: DocumentStore,
        search: SearchIndex,
        client: EcfrClient,
        config: Optional[RefreshConfig] = None,
        search_config: Optional[SearchConfig] = None,
        compression: Optional[CompressionEngine] = None,
        parser: Optional[TitleXMLParser] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.search = search
        self.client = client
        self.config = config or RefreshConfig()
        self.search_config = search_config or SearchConfig()
        self.compression = compression or CompressionEngine()
        self.parser = parser
        self._sleep = sleep

        self.stats = {
            "titles_downloaded": 0,
            "titles_skipped": 0,
            "titles_failed": 0,
            "documents_inserted": 0,
            "documents_indexed": 0,
        }

    def _get_parser(self) -> TitleXMLParser:
        if self.parser is None:
            self.parser = TitleXMLParser(self.store.blobs)
        return self.parser

    # -- jobs -----------------------------------------------------------------

    async def initial_download(
        self,
        progress: Optional[Dict[str, Any]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Drive an ``initial`` job over every non-reserved title."""
        return await self._run_job(RefreshType.INITIAL, progress, stop_event)

    async def refresh(
        self,
        progress: Optional[Dict[str, Any]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Drive a ``refresh`` job; unchanged titles are skipped but count as processed.

        Args:
            progress: Already promoted trigger row, if any
            stop_event: Checked between titles; once set the job returns after
                the current title and its row stays ``in_progress`` for the next run
        """
        return await self._run_job(RefreshType.REFRESH, progress, stop_event)

    async def refresh_single_title(
        self, number: int, progress: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Force-download one title regardless of freshness.

        Args:
            number: Title number, 1-50
            progress: Already promoted trigger row, if any

        Returns:
            ``{"success": True, "title": {...}}``

        Raises:
            TitleValidationError: Number out of range, unknown upstream or reserved
            Exception: Any pipeline failure, after it is recorded on the row
        """
        if not MIN_TITLE_NUMBER <= number <= MAX_TITLE_NUMBER:
            raise TitleValidationError(
                f"Invalid title number {number}. Must be between "
                f"{MIN_TITLE_NUMBER} and {MAX_TITLE_NUMBER}."
            )

        titles = await self.client.fetch_titles()
        title = next((t for t in titles if t.number == number), None)
        if title is None:
            raise TitleValidationError(f"Title {number} not found in eCFR system")
        if title.reserved:
            raise TitleValidationError(
                f"Title {number} is marked as reserved and cannot be refreshed"
            )

        if progress is None:
            progress = await self.store.create_refresh_progress(
                RefreshType.SINGLE_TITLE,
                TriggeredBy.MANUAL_SINGLE,
                status=JobStatus.IN_PROGRESS,
                titles_order=[number],
                total_titles=1,
                metadata={"targetTitle": number},
            )
        else:
            await self.store.update_refresh_progress(
                progress["_id"], {"totalTitles": 1, "titlesOrder": [number]}
            )

        progress_id = progress["_id"]
        await self.store.set_refresh_current_title(progress_id, number, title.name)
        logger.info(f"Manual refresh of title {number}, downloading regardless of issue date")

        try:
            await self.download_title(title, force=True)
        except Exception as e:
            self.stats["titles_failed"] += 1
            await self.store.mark_refresh_title_failed(progress_id, number, title.name, str(e))
            await self.store.update_refresh_progress(
                progress_id, {"status": JobStatus.FAILED.value, "completedAt": utcnow()}
            )
            logger.error(f"Failed to refresh title {number}: {e}")
            raise

        await self.store.mark_refresh_title_processed(progress_id, number)
        logger.info(f"Successfully refreshed title {number}")
        return {
            "success": True,
            "title": {
                "number": number,
                "name": title.name,
                "upToDateAsOf": title.up_to_date_as_of,
            },
        }

    async def _acquire_progress(self, refresh_type: RefreshType) -> Dict[str, Any]:
        """Resume the unfinished job of this type, or open a new scheduled one."""
        row = await self.store.find_active_refresh(refresh_type)
        if row is not None:
            return row
        return await self.store.create_refresh_progress(refresh_type, TriggeredBy.SCHEDULED)

    async def _run_job(
        self,
        refresh_type: RefreshType,
        progress: Optional[Dict[str, Any]],
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        row = progress or await self._acquire_progress(refresh_type)
        progress_id = row["_id"]
        logger.info(f"Starting {refresh_type.value} job {progress_id}")

        try:
            titles = await self.client.fetch_titles()
        except Exception as e:
            logger.error(f"{refresh_type.value} job {progress_id} failed: {e}")
            await self.store.update_refresh_progress(
                progress_id, {"status": JobStatus.FAILED.value, "lastError": str(e)}
            )
            raise

        active = [t for t in titles if not t.reserved]
        if row.get("status") == JobStatus.PENDING.value or not row.get("totalTitles"):
            fields: Dict[str, Any] = {
                "status": JobStatus.IN_PROGRESS.value,
                "totalTitles": len(active),
                "titlesOrder": sorted(t.number for t in active),
            }
            if not row.get("startedAt"):
                fields["startedAt"] = utcnow()
            await self.store.update_refresh_progress(progress_id, fields)
            row.update(fields)

        job = RefreshJob.from_document(row)
        if job.processed_titles:
            logger.info(
                f"Resuming {refresh_type.value} job: {job.processed_titles}/"
                f"{job.total_titles} titles already processed"
            )

        await self._process_titles(job, job.remaining_titles(titles), stop_event)

        final = await self.store.get_refresh_progress(progress_id) or row
        if final.get("status") == JobStatus.COMPLETED.value:
            logger.info(
                f"{refresh_type.value} job completed: {final.get('processedTitles')} titles"
            )
        else:
            logger.warning(f"{refresh_type.value} job incomplete: {describe_progress(final)}")
        return final

    async def _process_titles(
        self,
        job: RefreshJob,
        remaining: List[TitleInfo],
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        retry_after = timedelta(minutes=self.config.retry_failed_after_minutes)

        for title in remaining:
            if stop_event is not None and stop_event.is_set():
                logger.info(
                    f"Stop requested, leaving job {job.id} before title {title.number}"
                )
                break

            if not job.should_retry_title(title.number, retry_after):
                logger.info(
                    f"Skipping title {title.number}: failed less than "
                    f"{self.config.retry_failed_after_minutes} minutes ago"
                )
                continue

            await self.store.set_refresh_current_title(job.id, title.number, title.name)
            logger.info(
                f"Processing title {title.number} "
                f"({len(job.processed_title_numbers) + 1}/{job.total_titles})"
            )

            try:
                stored = None if job.forces_download else await self.store.get_title(title.number)
                if stored is not None and is_title_unchanged(title, stored):
                    logger.info(f"Skipping title {title.number}: no changes since last download")
                    self.stats["titles_skipped"] += 1
                else:
                    await self.download_title(title, force=job.forces_download)

                await self.store.mark_refresh_title_processed(job.id, title.number)
                job.processed_title_numbers.add(title.number)
                await self._sleep(self.config.delay_between_titles)

            except Exception as e:
                self.stats["titles_failed"] += 1
                logger.error(f"Failed to process title {title.number}: {e}")
                await self.store.mark_refresh_title_failed(job.id, title.number, title.name, str(e))
                job.failed_titles.append(
                    {
                        "number": title.number,
                        "name": title.name,
                        "error": str(e),
                        "failedAt": utcnow(),
                    }
                )
                await self._sleep(self.config.delay_after_failure)

    # -- per-title pipeline -----------------------------------------------------

    async def download_title(self, title: TitleInfo, force: bool = False) -> Dict[str, Any]:
        """
        Download, store, parse and index one title.

        Returns:
            Summary with document counts
        """
        number = title.number
        start_time = time.time()
        logger.info(f"Downloading title {number}: {title.name}{' (forced)' if force else ''}")

        raw = await self.client.download_title_xml(number)
        payload = await self.compression.prepare_xml(raw)

        documents: List[Dict[str, Any]] = []
        try:
            parsed = await self._get_parser().parse(raw, number)
            documents = parsed.documents
        except XMLParseError as e:
            logger.error(f"Failed to parse title {number}, saving it without documents: {e}")
        del raw

        await self._save_title(title, payload)

        deleted = await self.store.delete_documents_for_title(number)
        logger.info(f"Deleted {deleted} existing documents of title {number}")

        report = await self.store.insert_documents(
            documents, batch_size=self.config.insert_batch_size
        )
        self.stats["documents_inserted"] += report.inserted
        if report.failed:
            logger.warning(f"{report.failed} documents of title {number} could not be inserted")

        indexed = await self._index_documents(title, documents, set(report.inserted_ids))

        # Stamped last so an interrupted replace is downloaded again
        await self.store.upsert_title(number, {"lastDownloaded": utcnow()})

        self.stats["titles_downloaded"] += 1
        elapsed = time.time() - start_time
        logger.info(
            f"Processed title {number} in {elapsed:.1f}s: {report.inserted} documents stored, "
            f"{indexed} indexed"
        )
        return {
            "titleNumber": number,
            "documents": len(documents),
            "inserted": report.inserted,
            "failed": report.failed,
            "indexed": indexed,
        }

    async def _save_title(self, title: TitleInfo, payload: Any) -> None:
        """Store the snapshot; ``lastDownloaded`` stays unset until the documents are replaced."""
        record_size = base64_length(len(payload.data)) + _TITLE_RECORD_OVERHEAD
        fields = title.to_title_fields()
        fields.update(
            {
                "checksum": payload.checksum,
                "lastDownloaded": None,
                "isCompressed": payload.is_compressed,
            }
        )

        if record_size > MAX_TITLE_RECORD_BYTES:
            logger.warning(
                f"Title {title.number} record would be {record_size / (1024 * 1024):.1f}MB, "
                f"saving without XML content"
            )
            fields.update({"xmlContent": None, "isOversized": True})
        else:
            fields.update(
                {
                    "xmlContent": base64.b64encode(payload.data).decode("ascii"),
                    "isOversized": False,
                }
            )

        await self.store.upsert_title(title.number, fields)

    async def _index_documents(
        self, title: TitleInfo, documents: List[Dict[str, Any]], inserted_ids: Set[Any]
    ) -> int:
        """Replace the title's search records; search failures are logged, not raised."""
        records = [
            (str(doc["_id"]), to_search_document(doc, title.name))
            for doc in documents
            if doc.get("_id") in inserted_ids
        ]

        indexed = 0
        try:
            await self.search.delete_title(title.number)
            batch_size = self.search_config.bulk_batch_size
            for start in range(0, len(records), batch_size):
                ok, _ = await self.search.bulk_index(records[start:start + batch_size])
                indexed += ok
        except SearchIndexError as e:
            logger.error(f"Search indexing of title {title.number} failed: {e}")

        self.stats["documents_indexed"] += indexed
        return indexed

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.stats)
        stats["compression"] = self.compression.get_stats()
        stats["client"] = self.client.get_metrics()
        return stats
