"""
Input validation utilities for CLI commands
"""

from typing import List, Optional, Tuple

import click

from ...ingestion.title_refresher import MAX_TITLE_NUMBER, MIN_TITLE_NUMBER
from ...models.record_models import ThreadType

ALL_THREADS = "all"
THREAD_CHOICES = [t.value for t in ThreadType] + [ALL_THREADS]


def validate_title_number(number: int) -> Tuple[bool, Optional[str]]:
    """
    Validate a CFR title number

    Returns:
        (is_valid, error_message)
    """
    if number < MIN_TITLE_NUMBER or number > MAX_TITLE_NUMBER:
        return False, f"Title number must be between {MIN_TITLE_NUMBER} and {MAX_TITLE_NUMBER}"
    return True, None


def title_number_callback(ctx: click.Context, param: click.Parameter, value: int) -> int:
    is_valid, error = validate_title_number(value)
    if not is_valid:
        raise click.BadParameter(error or "invalid title number")
    return value


def resolve_thread_types(name: str) -> List[ThreadType]:
    """Thread types selected by a CLI argument; ``all`` selects every type"""
    if name == ALL_THREADS:
        return list(ThreadType)
    return [ThreadType(name)]
