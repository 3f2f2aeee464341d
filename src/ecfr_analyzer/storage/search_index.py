"""
Elasticsearch full-text index of CFR documents.

Holds a thin projection of each document (hierarchy coordinates, heading,
content, dates and counts) keyed by the MongoDB id.
"""

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from elasticsearch import ApiError, AsyncElasticsearch, TransportError
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch.helpers import async_bulk
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..models.config_models import SearchConfig
from ..models.errors import SearchIndexError
from ..models.record_models import HIERARCHY_KEYS

logger = logging.getLogger(__name__)

ES_ERRORS = (ApiError, TransportError)

INDEX_MAPPING: Dict[str, Any] = {
    "properties": {
        "titleNumber": {"type": "integer"},
        "titleName": {"type": "text", "fields": {"keyword": {"type": "keyword"}}},
        "documentType": {"type": "keyword"},
        "type": {"type": "keyword"},
        "identifier": {"type": "keyword"},
        "node": {"type": "keyword"},
        "subtitle": {"type": "keyword"},
        "chapter": {"type": "keyword"},
        "subchapter": {"type": "keyword"},
        "part": {"type": "keyword"},
        "subpart": {"type": "keyword"},
        "subjectGroup": {"type": "keyword"},
        "section": {"type": "keyword"},
        "heading": {"type": "text", "fields": {"keyword": {"type": "keyword"}}},
        "content": {"type": "text"},
        "authority": {"type": "text"},
        "source": {"type": "text"},
        "hierarchy": {"type": "text"},
        "effectiveDate": {"type": "date"},
        "amendmentDate": {"type": "date"},
        "lastModified": {"type": "date"},
        "citationsCount": {"type": "integer"},
        "editorialNotesCount": {"type": "integer"},
        "imagesCount": {"type": "integer"},
    }
}

# Fields read from MongoDB when projecting documents for the index
SEARCH_SOURCE_PROJECTION: Dict[str, int] = {
    "structuredContent": 0,
    "formattedContent": 0,
}


def hierarchy_label(document: Dict[str, Any]) -> str:
    """'Title 7 > Part 100 > Section 100.1'."""
    label = f"Title {document.get('titleNumber')}"
    if document.get("part"):
        label += f" > Part {document['part']}"
    if document.get("section"):
        label += f" > Section {document['section']}"
    return label


def to_search_document(document: Dict[str, Any], title_name: Optional[str]) -> Dict[str, Any]:
    """Project a stored document to its search record; structured content is never indexed."""
    record: Dict[str, Any] = {
        "titleNumber": document.get("titleNumber"),
        "titleName": title_name,
        "documentType": document.get("type"),
        "type": document.get("type"),
        "identifier": document.get("identifier"),
        "node": document.get("node"),
    }
    for key in HIERARCHY_KEYS:
        record[key] = document.get(key)
    record.update(
        {
            "heading": document.get("heading"),
            "authority": document.get("authority"),
            "source": document.get("source"),
            "content": document.get("content"),
            "hierarchy": hierarchy_label(document),
            "effectiveDate": document.get("effectiveDate"),
            "amendmentDate": document.get("amendmentDate"),
            "lastModified": document.get("lastModified"),
            "citationsCount": len(document.get("citations") or []),
            "editorialNotesCount": len(document.get("editorialNotes") or []),
            "imagesCount": len(document.get("images") or []),
        }
    )
    return record


class SearchIndex:
    """Async Elasticsearch client for the document index."""

    def __init__(self, config: SearchConfig):
        self.config = config
        self.index_name = config.index_name
        self.client: Optional[AsyncElasticsearch] = None
        self._initialized = False

        self._metrics = {
            "bulk_requests": 0,
            "documents_indexed": 0,
            "documents_failed": 0,
            "bulk_time": 0.0,
        }

    async def initialize(self) -> None:
        """Create the client and verify the cluster is reachable."""
        if self._initialized:
            return

        logger.info(f"Connecting to Elasticsearch at {self.config.host}")
        self.client = AsyncElasticsearch(
            hosts=[self.config.host], request_timeout=self.config.request_timeout
        )
        try:
            await self._verify_connection()
        except ES_ERRORS as e:
            await self.client.close()
            self.client = None
            raise SearchIndexError(f"Elasticsearch unreachable at {self.config.host}: {e}") from e

        self._initialized = True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type(ESConnectionError),
        reraise=True,
    )
    async def _verify_connection(self) -> None:
        info = await self._client.info()
        logger.info(f"Elasticsearch {info['version']['number']} connected")

    async def cleanup(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None
        self._initialized = False
        logger.debug("Elasticsearch client closed")

    async def __aenter__(self) -> "SearchIndex":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()

    @property
    def _client(self) -> AsyncElasticsearch:
        if self.client is None:
            raise SearchIndexError("SearchIndex is not initialized")
        return self.client

    async def index_exists(self) -> bool:
        try:
            return bool(await self._client.indices.exists(index=self.index_name))
        except ES_ERRORS as e:
            raise SearchIndexError(f"Failed to query index {self.index_name}: {e}") from e

    async def create_index(self) -> None:
        try:
            await self._client.indices.create(index=self.index_name, mappings=INDEX_MAPPING)
        except ES_ERRORS as e:
            raise SearchIndexError(f"Failed to create index {self.index_name}: {e}") from e
        logger.info(f"Created search index {self.index_name}")

    async def delete_index(self) -> bool:
        """Delete the index if it exists; returns whether anything was deleted."""
        if not await self.index_exists():
            return False
        try:
            await self._client.indices.delete(index=self.index_name)
        except ES_ERRORS as e:
            raise SearchIndexError(f"Failed to delete index {self.index_name}: {e}") from e
        logger.info(f"Deleted search index {self.index_name}")
        return True

    async def ensure_index(self) -> None:
        if not await self.index_exists():
            await self.create_index()

    async def delete_title(self, title_number: int) -> int:
        if not await self.index_exists():
            return 0
        try:
            response = await self._client.delete_by_query(
                index=self.index_name, query={"term": {"titleNumber": title_number}}, refresh=True
            )
        except ES_ERRORS as e:
            raise SearchIndexError(f"Failed to delete title {title_number} records: {e}") from e
        return int(response.get("deleted", 0))

    async def bulk_index(
        self, records: Iterable[Tuple[str, Dict[str, Any]]], refresh: bool = True
    ) -> Tuple[int, int]:
        """
        Index ``(id, record)`` pairs.

        Returns:
            (indexed, failed) counts; per-item errors are logged, not raised
        """
        actions: List[Dict[str, Any]] = [
            {"_op_type": "index", "_index": self.index_name, "_id": doc_id, "_source": record}
            for doc_id, record in records
        ]
        if not actions:
            return 0, 0

        start_time = time.time()
        try:
            indexed, errors = await async_bulk(
                self._client, actions, raise_on_error=False, refresh=refresh
            )
        except ES_ERRORS as e:
            self._metrics["documents_failed"] += len(actions)
            raise SearchIndexError(f"Bulk index request failed: {e}") from e

        failed = len(errors) if isinstance(errors, list) else int(errors)
        if failed:
            sample = errors[:3] if isinstance(errors, list) else errors
            logger.error(f"Bulk indexing reported {failed} item errors, e.g. {sample}")

        self._metrics["bulk_requests"] += 1
        self._metrics["documents_indexed"] += indexed
        self._metrics["documents_failed"] += failed
        self._metrics["bulk_time"] += time.time() - start_time
        return indexed, failed

    def get_metrics(self) -> Dict[str, Any]:
        return dict(self._metrics)
