"""
GridFS blob store for document fields that exceed the record size limit.
"""

import hashlib
import logging
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from gridfs import AsyncGridFSBucket
from gridfs.errors import NoFile
from pymongo.errors import PyMongoError

from ..models.errors import BlobStoreError

logger = logging.getLogger(__name__)

BlobId = Union[ObjectId, str]


def _as_object_id(file_id: BlobId) -> ObjectId:
    if isinstance(file_id, ObjectId):
        return file_id
    try:
        return ObjectId(str(file_id))
    except (InvalidId, TypeError) as e:
        raise BlobStoreError(f"Invalid blob id: {file_id!r}") from e


class BlobStore:
    """Stores and retrieves opaque byte streams by id."""

    def __init__(self, database: Any, bucket_name: str = "documents"):
        self.bucket_name = bucket_name
        self._bucket = AsyncGridFSBucket(database, bucket_name=bucket_name)
        self.stats = {"uploads": 0, "downloads": 0, "bytes_uploaded": 0, "deletes": 0}

    async def upload(
        self, filename: str, data: bytes, metadata: Optional[Dict[str, Any]] = None
    ) -> ObjectId:
        """
        Upload bytes as a new blob.

        Args:
            filename: Descriptive file name, e.g. ``{title}_{identifier}_content``
            data: Payload
            metadata: Stored alongside the file; a sha256 digest is added

        Returns:
            Blob id
        """
        file_metadata = dict(metadata or {})
        file_metadata["sha256"] = hashlib.sha256(data).hexdigest()
        file_metadata["size"] = len(data)

        try:
            file_id = await self._bucket.upload_from_stream(
                filename, data, metadata=file_metadata
            )
        except PyMongoError as e:
            raise BlobStoreError(f"Failed to upload {filename}: {e}") from e

        self.stats["uploads"] += 1
        self.stats["bytes_uploaded"] += len(data)
        logger.debug(f"Stored blob {filename} ({len(data)} bytes) as {file_id}")
        return file_id

    async def download(self, file_id: BlobId) -> bytes:
        """Fetch the full payload of a blob."""
        oid = _as_object_id(file_id)
        try:
            grid_out = await self._bucket.open_download_stream(oid)
            data = await grid_out.read()
        except NoFile as e:
            raise BlobStoreError(f"Blob {oid} not found in bucket {self.bucket_name}") from e
        except PyMongoError as e:
            raise BlobStoreError(f"Failed to download blob {oid}: {e}") from e

        self.stats["downloads"] += 1
        return data

    async def download_text(self, file_id: BlobId) -> str:
        return (await self.download(file_id)).decode("utf-8")

    async def delete(self, file_id: BlobId) -> None:
        oid = _as_object_id(file_id)
        try:
            await self._bucket.delete(oid)
        except NoFile:
            logger.warning(f"Blob {oid} already deleted")
            return
        except PyMongoError as e:
            raise BlobStoreError(f"Failed to delete blob {oid}: {e}") from e
        self.stats["deletes"] += 1

    async def verify(self, file_id: BlobId, expected_sha256: str) -> bool:
        """Re-fetch a blob and compare its digest."""
        data = await self.download(file_id)
        return hashlib.sha256(data).hexdigest() == expected_sha256
