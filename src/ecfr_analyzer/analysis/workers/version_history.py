"""
version_history worker: mirrors each title's upstream version timeline.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ...core.dates import parse_date
from ...integration.ecfr_client import EcfrClient
from ...models.record_models import ThreadType, utcnow
from .base import TitleWorker

logger = logging.getLogger(__name__)


def normalize_versions(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop removed or undated entries and keep the fields the read API shows."""
    versions = []
    for entry in entries:
        if entry.get("removed"):
            continue
        date = parse_date(entry.get("amendment_date"))
        if date is None:
            continue
        versions.append(
            {
                "date": date,
                "identifier": entry.get("identifier") or "",
                "name": entry.get("name") or "",
                "part": entry.get("part") or "",
                "type": entry.get("type") or "",
            }
        )
    return versions


class VersionHistoryWorker(TitleWorker):
    """Fetches and upserts VersionHistory rows, pausing between titles."""

    thread_type = ThreadType.VERSION_HISTORY
    description = "Fetching version history from eCFR API"

    def __init__(self, *args: Any, client: Optional[EcfrClient] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.client = client
        self._owns_client = client is None
        self.delay_between_titles = self.config.analysis.version_request_delay

    async def prepare(self) -> None:
        if self.client is None:
            self.client = EcfrClient(self.config.refresh)
        await self.client.initialize()

    async def run(self, resume: Optional[Dict[str, Any]]) -> None:
        try:
            await super().run(resume)
        finally:
            if self._owns_client and self.client is not None:
                await self.client.close()

    async def process_title(self, title: Dict[str, Any]) -> None:
        number = title["number"]
        entries = await self.client.fetch_versions(number)
        versions = normalize_versions(entries)
        await self.store.upsert_version_history(number, versions, utcnow())
        logger.info(f"Stored {len(versions)} of {len(entries)} versions for title {number}")
