"""
Exception hierarchy shared across the ingest and analytics pipeline.
"""

from typing import Optional


class StoreError(Exception):
    """Base exception for document and blob store failures."""

    pass


class DocumentStoreError(StoreError):
    """Raised when a MongoDB operation cannot be completed."""

    pass


class BlobStoreError(StoreError):
    """Raised when a GridFS operation cannot be completed."""

    pass


class SearchIndexError(Exception):
    """Raised when the search engine rejects an index operation."""

    pass


class UpstreamError(Exception):
    """Base exception for eCFR / govinfo HTTP failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamNotFoundError(UpstreamError):
    """Upstream resource does not exist."""

    pass


class UpstreamServerError(UpstreamError):
    """Upstream returned a 5xx or 429 response."""

    pass


class LLMClientError(Exception):
    """Base exception for LLM endpoint failures."""

    pass


class LLMResponseError(LLMClientError):
    """The LLM replied but the body carried no usable text."""

    pass


class LLMServerError(LLMClientError):
    """Transient LLM endpoint failure (5xx, 429, transport)."""

    pass


class RateLimitError(LLMClientError):
    """Rate limiter could not grant a slot in time."""

    pass


class XMLParseError(Exception):
    """Title XML is malformed or lacks the expected structure."""

    pass


class RefreshError(Exception):
    """Base exception for title refresh jobs."""

    pass


class TitleValidationError(RefreshError):
    """Requested title number is out of range, unknown, or reserved."""

    pass


class ThreadManagerError(Exception):
    """Raised for invalid analysis thread operations."""

    pass


class WorkerStopped(Exception):
    """Raised inside a worker when a stop request is observed at a checkpoint."""

    pass
