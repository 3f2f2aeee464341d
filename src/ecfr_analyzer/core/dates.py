"""
Date parsing for upstream registry values and XML date elements.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

from dateutil import parser as dtp

logger = logging.getLogger(__name__)

# "Jan. 3, 2024 (see note)" -> "Jan. 3, 2024"
_TRAILING_ANNOTATION = re.compile(r"\s*\([^)]*\)\s*$")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value: Any) -> Optional[datetime]:
    """
    Parse a date found in CFR XML or API payloads.

    A trailing parenthesized annotation is stripped first. Values that
    cannot be interpreted as a date yield None.

    Returns:
        Timezone-aware UTC datetime or None
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    text = _TRAILING_ANNOTATION.sub("", str(value)).strip()
    if not text:
        return None

    try:
        return _as_utc(dtp.parse(text))
    except (ValueError, OverflowError) as e:
        logger.debug(f"Unparseable date {text!r}: {e}")
        return None


def parse_upstream_date(value: Any) -> Optional[datetime]:
    """Registry dates are ISO `YYYY-MM-DD` strings or null."""
    return parse_date(value)


def start_of_day(moment: datetime) -> datetime:
    """Midnight of the given moment's day."""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)
