"""
Error classification for retry decisions on upstream and LLM calls.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import httpx

from ..models.errors import (
    LLMResponseError,
    LLMServerError,
    UpstreamNotFoundError,
    UpstreamServerError,
    XMLParseError,
)

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorCategory(Enum):
    """Error categories used for retry decisions and failure records."""

    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NOT_FOUND = "not_found"
    AUTHENTICATION = "authentication"
    PARSE_ERROR = "parse_error"
    INVALID_RESPONSE = "invalid_response"
    UNKNOWN = "unknown"


@dataclass
class ErrorPattern:
    """Pattern for matching and classifying errors."""

    error_types: Tuple[type, ...]
    status_codes: Tuple[int, ...]
    category: ErrorCategory
    severity: ErrorSeverity
    transient: bool

    def matches(self, error: BaseException) -> bool:
        """Check if error matches this pattern."""
        status = _status_code(error)
        if status is not None and self.status_codes:
            return status in self.status_codes
        return bool(self.error_types) and isinstance(error, self.error_types)


@dataclass
class ErrorClassification:
    category: ErrorCategory
    severity: ErrorSeverity
    transient: bool


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return getattr(error, "status_code", None)


_SERVER_STATUSES = tuple(range(500, 600))

_PATTERNS: List[ErrorPattern] = [
    ErrorPattern((), (429,), ErrorCategory.RATE_LIMITED, ErrorSeverity.MEDIUM, True),
    ErrorPattern((), (401, 403), ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH, False),
    ErrorPattern(
        (UpstreamNotFoundError,), (404, 410), ErrorCategory.NOT_FOUND, ErrorSeverity.HIGH, False
    ),
    ErrorPattern(
        (UpstreamServerError, LLMServerError),
        _SERVER_STATUSES,
        ErrorCategory.SERVER_ERROR,
        ErrorSeverity.MEDIUM,
        True,
    ),
    ErrorPattern(
        (httpx.TimeoutException, asyncio.TimeoutError),
        (),
        ErrorCategory.TIMEOUT,
        ErrorSeverity.MEDIUM,
        True,
    ),
    ErrorPattern(
        (httpx.TransportError, ConnectionError),
        (),
        ErrorCategory.NETWORK_ERROR,
        ErrorSeverity.MEDIUM,
        True,
    ),
    ErrorPattern((XMLParseError,), (), ErrorCategory.PARSE_ERROR, ErrorSeverity.HIGH, False),
    ErrorPattern(
        (LLMResponseError, ValueError),
        (),
        ErrorCategory.INVALID_RESPONSE,
        ErrorSeverity.MEDIUM,
        False,
    ),
]


class ErrorClassifier:
    """Classifies errors and keeps per-category counters."""

    def __init__(self) -> None:
        self.error_patterns = list(_PATTERNS)
        self.error_statistics: Dict[str, int] = {}

    def classify(self, error: BaseException) -> ErrorClassification:
        for pattern in self.error_patterns:
            if pattern.matches(error):
                result = ErrorClassification(pattern.category, pattern.severity, pattern.transient)
                break
        else:
            result = ErrorClassification(ErrorCategory.UNKNOWN, ErrorSeverity.MEDIUM, False)

        key = result.category.value
        self.error_statistics[key] = self.error_statistics.get(key, 0) + 1
        return result


_default_classifier = ErrorClassifier()


def is_transient_error(error: BaseException) -> bool:
    """Predicate for tenacity: retry network, timeout, 5xx and 429 failures."""
    transient = _default_classifier.classify(error).transient
    if transient:
        logger.debug(f"Transient error, will retry: {type(error).__name__}: {error}")
    return transient


def classify_error(error: BaseException) -> ErrorCategory:
    return _default_classifier.classify(error).category
