"""
Compression and checksum utilities for downloaded title XML.
"""

import asyncio
import gzip
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Payloads above this size are stored uncompressed
MAX_COMPRESSIBLE_BYTES = 500 * 1024 * 1024


class CompressionError(Exception):
    """Raised when compressed data cannot be processed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


@dataclass
class StoredPayload:
    """XML bytes as they will be persisted, plus their provenance."""

    data: bytes
    is_compressed: bool
    original_size: int
    checksum: str

    @property
    def stored_size(self) -> int:
        return len(self.data)


def sha256_hex(data: bytes) -> str:
    """Hex SHA-256 digest."""
    return hashlib.sha256(data).hexdigest()


class CompressionEngine:
    """gzip compression with size limits and running statistics."""

    def __init__(
        self, default_level: int = 6, max_compressible_bytes: int = MAX_COMPRESSIBLE_BYTES
    ):
        self.default_level = default_level
        self.max_compressible_bytes = max_compressible_bytes
        self.compression_stats = {
            "total_operations": 0,
            "skipped_oversized": 0,
            "failures": 0,
            "total_original_bytes": 0,
            "total_compressed_bytes": 0,
            "total_compression_time": 0.0,
        }

    async def prepare_xml(self, raw: bytes) -> StoredPayload:
        """
        Checksum and compress downloaded XML for storage.

        Payloads larger than the compressible limit are kept raw, and a
        compression failure also falls back to the raw bytes.

        Args:
            raw: XML exactly as downloaded

        Returns:
            StoredPayload describing the bytes to persist
        """
        original_size = len(raw)
        checksum = await asyncio.get_running_loop().run_in_executor(None, sha256_hex, raw)

        if original_size > self.max_compressible_bytes:
            self.compression_stats["skipped_oversized"] += 1
            logger.info(
                f"XML is {original_size / (1024 * 1024):.1f}MB, storing uncompressed"
            )
            return StoredPayload(raw, False, original_size, checksum)

        start_time = time.time()
        try:
            level = self.default_level
            compressed = await asyncio.get_running_loop().run_in_executor(
                None, lambda: gzip.compress(raw, compresslevel=level)
            )
        except (OSError, MemoryError, ValueError) as e:
            self.compression_stats["failures"] += 1
            logger.warning(f"Compression failed, storing raw XML: {e}")
            return StoredPayload(raw, False, original_size, checksum)

        elapsed = time.time() - start_time
        self._update_stats(original_size, len(compressed), elapsed)

        logger.debug(
            f"Compressed {original_size} -> {len(compressed)} bytes in {elapsed:.3f}s"
        )
        return StoredPayload(compressed, True, original_size, checksum)

    async def restore_xml(self, data: bytes, is_compressed: bool) -> bytes:
        """Inverse of prepare_xml."""
        if not is_compressed:
            return data
        try:
            return await asyncio.get_running_loop().run_in_executor(
                None, gzip.decompress, data
            )
        except (OSError, EOFError) as e:
            raise CompressionError(f"Invalid gzip data: {e}", operation="restore_xml") from e

    def _update_stats(self, original: int, compressed: int, elapsed: float) -> None:
        self.compression_stats["total_operations"] += 1
        self.compression_stats["total_original_bytes"] += original
        self.compression_stats["total_compressed_bytes"] += compressed
        self.compression_stats["total_compression_time"] += elapsed

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.compression_stats)
        total_original = stats["total_original_bytes"]
        stats["average_ratio"] = (
            1 - stats["total_compressed_bytes"] / total_original if total_original else 0.0
        )
        return stats
