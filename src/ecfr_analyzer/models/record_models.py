"""
Persisted record models for titles, documents, analytics and job progress.

Rows are stored as plain dictionaries in MongoDB with camelCase keys; the
dataclasses here wrap the rows the pipeline reasons about and the enums pin
every status value that is written to the database.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..core.dates import parse_upstream_date


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class DocumentType(Enum):
    """Node kinds of the CFR hierarchy."""

    TITLE = "title"
    SUBTITLE = "subtitle"
    CHAPTER = "chapter"
    SUBCHAPTER = "subchapter"
    PART = "part"
    SUBPART = "subpart"
    SUBJECT_GROUP = "subjectgroup"
    SECTION = "section"
    APPENDIX = "appendix"


# divN element -> document type
DIV_DOCUMENT_TYPES: Dict[str, DocumentType] = {
    "div2": DocumentType.SUBTITLE,
    "div3": DocumentType.CHAPTER,
    "div4": DocumentType.SUBCHAPTER,
    "div5": DocumentType.PART,
    "div6": DocumentType.SUBPART,
    "div7": DocumentType.SUBJECT_GROUP,
    "div8": DocumentType.SECTION,
    "div9": DocumentType.APPENDIX,
}

# document type -> hierarchy coordinate carried by its descendants
HIERARCHY_FIELDS: Dict[DocumentType, str] = {
    DocumentType.SUBTITLE: "subtitle",
    DocumentType.CHAPTER: "chapter",
    DocumentType.SUBCHAPTER: "subchapter",
    DocumentType.PART: "part",
    DocumentType.SUBPART: "subpart",
    DocumentType.SUBJECT_GROUP: "subjectGroup",
    DocumentType.SECTION: "section",
}

HIERARCHY_KEYS: List[str] = list(HIERARCHY_FIELDS.values())


class ThreadType(Enum):
    """Analytics worker kinds."""

    TEXT_METRICS = "text_metrics"
    AGE_DISTRIBUTION = "age_distribution"
    VERSION_HISTORY = "version_history"
    SECTION_ANALYSIS = "section_analysis"


class ThreadStatus(Enum):
    """AnalysisThread lifecycle states."""

    STOPPED = "stopped"
    PENDING_START = "pending_start"
    RUNNING = "running"
    PENDING_STOP = "pending_stop"
    PENDING_RESTART = "pending_restart"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses a worker treats as a stop request at its checkpoints
STOP_REQUEST_STATUSES = {ThreadStatus.PENDING_STOP.value, ThreadStatus.PENDING_RESTART.value}


class RefreshType(Enum):
    """Kinds of refresh jobs."""

    INITIAL = "initial"
    REFRESH = "refresh"
    SINGLE_TITLE = "single_title"


class JobStatus(Enum):
    """RefreshProgress / AnalysisProgress states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RebuildStatus(Enum):
    """IndexRebuildProgress states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggeredBy(Enum):
    """Origin of a refresh job."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    MANUAL_SINGLE = "manual_single"


AGE_BUCKETS: List[str] = [
    "lessThan1Year",
    "oneToFiveYears",
    "fiveToTenYears",
    "tenToTwentyYears",
    "moreThanTwentyYears",
]


def empty_age_distribution() -> Dict[str, int]:
    return {bucket: 0 for bucket in AGE_BUCKETS}


@dataclass
class TitleInfo:
    """One entry of the upstream title registry."""

    number: int
    name: str
    reserved: bool = False
    latest_amended_on: Optional[datetime] = None
    latest_issue_date: Optional[datetime] = None
    up_to_date_as_of: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TitleInfo":
        """Build from a `titles.json` entry."""
        return cls(
            number=int(data["number"]),
            name=data.get("name") or f"Title {data['number']}",
            reserved=bool(data.get("reserved", False)),
            latest_amended_on=parse_upstream_date(data.get("latest_amended_on")),
            latest_issue_date=parse_upstream_date(data.get("latest_issue_date")),
            up_to_date_as_of=parse_upstream_date(data.get("up_to_date_as_of")),
        )

    def to_title_fields(self) -> Dict[str, Any]:
        """Registry fields persisted on the Title row."""
        return {
            "number": self.number,
            "name": self.name,
            "reserved": self.reserved,
            "latestAmendedOn": self.latest_amended_on,
            "latestIssueDate": self.latest_issue_date,
            "upToDateAsOf": self.up_to_date_as_of,
        }


@dataclass
class RefreshJob:
    """
    In-memory view of a RefreshProgress row.

    The row itself is mutated through the document store with atomic
    updates; this view answers the scheduling questions of a running job.
    """

    id: Any
    type: RefreshType
    status: JobStatus
    triggered_by: TriggeredBy
    total_titles: int = 0
    processed_titles: int = 0
    processed_title_numbers: Set[int] = field(default_factory=set)
    failed_titles: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, row: Dict[str, Any]) -> "RefreshJob":
        return cls(
            id=row["_id"],
            type=RefreshType(row.get("type", RefreshType.REFRESH.value)),
            status=JobStatus(row.get("status", JobStatus.PENDING.value)),
            triggered_by=TriggeredBy(row.get("triggeredBy", TriggeredBy.SCHEDULED.value)),
            total_titles=row.get("totalTitles", 0),
            processed_titles=row.get("processedTitles", 0),
            processed_title_numbers=set(row.get("processedTitleNumbers") or []),
            failed_titles=list(row.get("failedTitles") or []),
            metadata=dict(row.get("metadata") or {}),
            started_at=row.get("startedAt"),
        )

    @property
    def forces_download(self) -> bool:
        """Single-title jobs bypass change detection."""
        return (
            self.type == RefreshType.SINGLE_TITLE
            or self.triggered_by == TriggeredBy.MANUAL_SINGLE
        )

    def remaining_titles(self, titles: List[TitleInfo]) -> List[TitleInfo]:
        """Non-reserved titles not yet processed, ascending by number."""
        return sorted(
            (
                t
                for t in titles
                if not t.reserved and t.number not in self.processed_title_numbers
            ),
            key=lambda t: t.number,
        )

    def last_failure(self, number: int) -> Optional[Dict[str, Any]]:
        failures = [f for f in self.failed_titles if f.get("number") == number]
        return failures[-1] if failures else None

    def should_retry_title(
        self,
        number: int,
        retry_after: timedelta = timedelta(minutes=30),
        now: Optional[datetime] = None,
    ) -> bool:
        """A failed title becomes eligible again once `retry_after` has passed."""
        failure = self.last_failure(number)
        if failure is None:
            return True
        failed_at = failure.get("failedAt")
        if failed_at is None:
            return True
        if failed_at.tzinfo is None:
            failed_at = failed_at.replace(tzinfo=timezone.utc)
        return (now or utcnow()) - failed_at > retry_after


def default_thread_row(thread_type: ThreadType) -> Dict[str, Any]:
    """Initial AnalysisThread fields applied on first insert."""
    return {
        "threadType": thread_type.value,
        "status": ThreadStatus.STOPPED.value,
        "progress": {"current": 0, "total": 0, "percentage": 0},
        "currentItem": None,
        "statistics": {"itemsProcessed": 0, "itemsFailed": 0, "averageTimePerItem": 0},
        "resumeData": None,
        "error": None,
    }
