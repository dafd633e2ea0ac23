"""Utility modules for blob-dedup."""

from blob_dedup.utils.checksum import ChecksumComputer, ContentDigest

__all__ = [
    "ChecksumComputer",
    "ContentDigest",
]
