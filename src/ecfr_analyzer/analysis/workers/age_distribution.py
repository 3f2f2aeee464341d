"""
age_distribution worker: histogram of amendment ages per title.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from ...core.dates import parse_date, start_of_day
from ...models.record_models import AGE_BUCKETS, ThreadType, empty_age_distribution, utcnow
from .base import TitleWorker

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365
# Upper bounds in years for every bucket but the last
_BUCKET_LIMITS = [1, 5, 10, 20]


def age_bucket(age_years: float) -> str:
    for limit, bucket in zip(_BUCKET_LIMITS, AGE_BUCKETS):
        if age_years < limit:
            return bucket
    return AGE_BUCKETS[-1]


def age_distribution(
    versions: Iterable[Dict[str, Any]], now: Optional[datetime] = None
) -> Dict[str, int]:
    """Count dated versions by age; undated versions are ignored."""
    now = now or utcnow()
    distribution = empty_age_distribution()
    for version in versions:
        date = parse_date(version.get("date"))
        if date is None:
            continue
        age_years = (now - date).total_seconds() / (DAYS_PER_YEAR * 24 * 3600)
        distribution[age_bucket(age_years)] += 1
    return distribution


class AgeDistributionWorker(TitleWorker):
    """Sets today's Metric histogram, or appends a Metric when there is none today."""

    thread_type = ThreadType.AGE_DISTRIBUTION
    description = "Analyzing regulation ages"

    async def process_title(self, title: Dict[str, Any]) -> None:
        number = title["number"]
        history = await self.store.get_version_history(number)
        versions = (history or {}).get("versions") or []
        if not versions:
            logger.debug(f"No version history for title {number}")
            return

        now = utcnow()
        distribution = age_distribution(versions, now)
        updated = await self.store.upsert_daily_age_distribution(
            number, distribution, now, start_of_day(now)
        )
        action = "Updated" if updated else "Created"
        logger.info(f"{action} age distribution for title {number}")
