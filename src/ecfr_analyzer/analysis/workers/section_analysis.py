"""
section_analysis worker: LLM summary and scores for every section.

Sections are read in ascending ``_id`` order one page at a time. A page
holds one batch plus the first section of the next batch, whose id becomes
the checkpoint once the batch is stored, so a resumed run starts exactly at
the first section not yet processed.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from ...integration.llm_client import LLMClient
from ...models.errors import LLMClientError, WorkerStopped
from ...models.record_models import ThreadType, utcnow
from ..section_scoring import SCORING_TEMPERATURE, SectionScorer
from .base import BaseWorker

logger = logging.getLogger(__name__)

ANALYZED = "analyzed"
SKIPPED = "skipped"
FAILED = "failed"


class InvalidResumePoint(ValueError):
    """Stored lastSectionId has an unrecognized shape."""

    pass


def parse_resume_id(value: Any) -> Optional[ObjectId]:
    """
    Interpret a stored ``lastSectionId``.

    Accepts an ObjectId, its hex string, or a document-like mapping with an
    ``_id``. Anything else, binary payloads included, is rejected.

    Raises:
        InvalidResumePoint: If the value cannot be read as a section id
    """
    if value is None:
        return None
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str):
        if ObjectId.is_valid(value):
            return ObjectId(value)
        raise InvalidResumePoint(f"Invalid lastSectionId string {value!r}")
    if isinstance(value, dict) and "_id" in value:
        inner = value["_id"]
        if isinstance(inner, ObjectId):
            return inner
        if isinstance(inner, str) and ObjectId.is_valid(inner):
            return ObjectId(inner)
    raise InvalidResumePoint(f"Unrecognized lastSectionId of type {type(value).__name__}")


class SectionAnalysisWorker(BaseWorker):
    """Scores sections in concurrent batches, paced by the LLM rate limit."""

    thread_type = ThreadType.SECTION_ANALYSIS

    def __init__(self, *args: Any, llm: Optional[LLMClient] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.analysis_config = self.config.analysis
        self.batch_size = self.analysis_config.batch_size
        self.batch_delay = 60.0 / self.analysis_config.rate_limit_rpm
        self.llm = llm
        self._owns_llm = llm is None
        self.scorer: Optional[SectionScorer] = None
        self.skipped = 0

    def resume_point(self, resume: Optional[Dict[str, Any]]) -> Tuple[Optional[ObjectId], int]:
        """(first section id, sections already done); unreadable checkpoints reset to the start."""
        if not isinstance(resume, dict):
            return None, 0
        index = resume.get("lastSectionIndex")
        index = index if isinstance(index, int) and index >= 0 else 0
        try:
            start_id = parse_resume_id(resume.get("lastSectionId"))
        except InvalidResumePoint as e:
            logger.error(f"{e}; restarting section analysis from the beginning")
            self.publish(
                {
                    "type": "progress",
                    "data": {"resumeData": {"lastSectionIndex": 0, "lastSectionId": None}},
                }
            )
            return None, 0
        if start_id is None:
            return None, 0
        return start_id, index

    async def run(self, resume: Optional[Dict[str, Any]]) -> None:
        if not self.config.section_analysis_enabled and self.llm is None:
            raise LLMClientError("GROK_API_KEY not configured; section analysis is disabled")

        if self.llm is None:
            self.llm = LLMClient(
                self.config.llm, requests_per_minute=self.analysis_config.rate_limit_rpm
            )
        self.scorer = SectionScorer(self.llm, self.analysis_config, self.config.llm.max_tokens)

        try:
            await self._run_batches(resume)
        finally:
            if self._owns_llm:
                await self.llm.close()

    async def _run_batches(self, resume: Optional[Dict[str, Any]]) -> None:
        start_id, done = self.resume_point(resume)
        total = await self.store.count_sections()
        if start_id is not None:
            logger.info(f"Resuming section analysis at {start_id} ({done}/{total} done)")
        self.report_progress(done, total)

        while True:
            page = await self.store.fetch_sections(start_id, limit=self.batch_size + 1)
            if not page:
                break

            batch = page[: self.batch_size]
            next_section = page[self.batch_size] if len(page) > self.batch_size else None

            await self.checkpoint()
            await self._process_batch(batch)
            done += len(batch)

            next_id = next_section["_id"] if next_section is not None else None
            self.report_progress(
                done,
                max(total, done),
                resumeData={
                    "lastSectionIndex": done,
                    "lastSectionId": str(next_id) if next_id is not None else None,
                },
                statistics=self.statistics(),
            )

            if next_id is None:
                break
            start_id = next_id
            await self.pause(self.batch_delay)

        logger.info(
            f"Section analysis finished: {self.processed} analyzed, {self.skipped} skipped, "
            f"{self.failed} failed"
        )

    async def _process_batch(self, batch: List[Dict[str, Any]]) -> None:
        outcomes = await asyncio.gather(*(self._analyze_section(s) for s in batch))
        for outcome in outcomes:
            if outcome == ANALYZED:
                self.processed += 1
            elif outcome == SKIPPED:
                self.skipped += 1
            else:
                self.failed += 1

    async def _analyze_section(self, section: Dict[str, Any]) -> str:
        identifier = section.get("identifier") or str(section["_id"])
        try:
            if not self.restart and await self.store.section_analysis_exists(
                section["_id"], self.analysis_config.analysis_version
            ):
                return SKIPPED

            self.report_item(
                {
                    "titleNumber": section.get("titleNumber"),
                    "description": f"Analyzing section {identifier}",
                }
            )
            content = await self.store.load_document_content(section)
            scores = await self.scorer.score(section, content)
            if scores is None:
                return SKIPPED

            fields = {
                "documentId": section["_id"],
                "titleNumber": section.get("titleNumber"),
                "sectionIdentifier": section.get("identifier"),
                "analysisDate": utcnow(),
                "analysisVersion": self.analysis_config.analysis_version,
                "metadata": {
                    "model": self.config.llm.model,
                    "temperature": SCORING_TEMPERATURE,
                },
            }
            fields.update(scores.to_analysis_fields())
            await self.store.upsert_section_analysis(section["_id"], fields)
            return ANALYZED
        except WorkerStopped:
            raise
        except Exception as e:
            logger.error(f"Failed to analyze section {identifier}: {e}")
            return FAILED

    def statistics(self) -> Dict[str, Any]:
        stats = super().statistics()
        stats["itemsSkipped"] = self.skipped
        return stats
