"""
Tests for BlobStore against a mocked GridFS bucket.
"""

import hashlib
from unittest.mock import AsyncMock, patch

import pytest
from bson import ObjectId
from gridfs.errors import NoFile
from pymongo.errors import AutoReconnect

from ecfr_analyzer.models.errors import BlobStoreError
from ecfr_analyzer.storage.blob_store import BlobStore


class FakeGridOut:
    def __init__(self, data):
        self.data = data

    async def read(self):
        return self.data


class FakeBucket:
    """In-memory stand-in for AsyncGridFSBucket."""

    def __init__(self):
        self.files = {}

    async def upload_from_stream(self, filename, data, metadata=None):
        file_id = ObjectId()
        self.files[file_id] = {"filename": filename, "data": data, "metadata": metadata}
        return file_id

    async def open_download_stream(self, file_id):
        if file_id not in self.files:
            raise NoFile(f"no file in gridfs with _id {file_id!r}")
        return FakeGridOut(self.files[file_id]["data"])

    async def delete(self, file_id):
        if self.files.pop(file_id, None) is None:
            raise NoFile(f"no file could be deleted because none matched {file_id}")


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def blob_store(bucket):
    with patch(
        "ecfr_analyzer.storage.blob_store.AsyncGridFSBucket", return_value=bucket
    ) as bucket_class:
        store = BlobStore(database=object(), bucket_name="documents")
        assert bucket_class.call_args.kwargs["bucket_name"] == "documents"
        yield store


class TestBlobRoundTrip:
    """Test upload, download and digest verification."""

    @pytest.mark.asyncio
    async def test_upload_records_digest(self, blob_store, bucket):
        data = "Section 1.1 text".encode("utf-8")

        file_id = await blob_store.upload(
            "7_section_1_1_content", data, {"titleNumber": 7, "field": "content"}
        )

        metadata = bucket.files[file_id]["metadata"]
        assert metadata["sha256"] == hashlib.sha256(data).hexdigest()
        assert metadata["size"] == len(data)
        assert metadata["titleNumber"] == 7
        assert blob_store.stats["uploads"] == 1
        assert blob_store.stats["bytes_uploaded"] == len(data)

    @pytest.mark.asyncio
    async def test_download_matches_upload(self, blob_store, bucket):
        text = "Anti-dumping duties § 351.1 " * 1000
        data = text.encode("utf-8")
        file_id = await blob_store.upload("7_part_351_content", data)
        digest = bucket.files[file_id]["metadata"]["sha256"]

        assert await blob_store.download(file_id) == data
        assert await blob_store.download_text(str(file_id)) == text
        assert await blob_store.verify(file_id, digest) is True
        assert await blob_store.verify(file_id, hashlib.sha256(b"other").hexdigest()) is False

    @pytest.mark.asyncio
    async def test_missing_blob(self, blob_store):
        with pytest.raises(BlobStoreError, match="not found"):
            await blob_store.download(ObjectId())

    @pytest.mark.asyncio
    async def test_invalid_id(self, blob_store):
        with pytest.raises(BlobStoreError, match="Invalid blob id"):
            await blob_store.download("not-an-object-id")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, blob_store, bucket):
        file_id = await blob_store.upload("7_section_1_1_content", b"text")

        await blob_store.delete(file_id)
        await blob_store.delete(file_id)

        assert file_id not in bucket.files
        assert blob_store.stats["deletes"] == 1

    @pytest.mark.asyncio
    async def test_upload_failure(self, blob_store, bucket):
        bucket.upload_from_stream = AsyncMock(side_effect=AutoReconnect("connection reset"))

        with pytest.raises(BlobStoreError, match="Failed to upload"):
            await blob_store.upload("7_section_1_1_content", b"text")
        assert blob_store.stats["uploads"] == 0
