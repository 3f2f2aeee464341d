"""
Persistence clients: MongoDB documents, GridFS blobs and the Elasticsearch index.
"""

from .blob_store import BlobStore
from .document_store import DocumentStore
from .search_index import SearchIndex

__all__ = ["BlobStore", "DocumentStore", "SearchIndex"]
