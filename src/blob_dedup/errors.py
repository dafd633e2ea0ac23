"""Exception types raised by blob-dedup."""

from __future__ import annotations

from uuid import UUID


class BlobDedupError(Exception):
    """Base exception for blob-dedup operations."""


class UploadReadError(BlobDedupError):
    """The upload's byte stream could not be read.

    This is an I/O failure, not a deduplication failure: the attach is
    aborted and nothing is persisted.
    """


class MalformedUploadError(BlobDedupError):
    """No checksum could be established for an upload."""


class UnknownServiceError(BlobDedupError):
    """An upload targeted a storage service that is not configured."""

    def __init__(self, service_name: str) -> None:
        super().__init__(f"Unknown storage service: {service_name}")
        self.service_name = service_name


class BlobNotFoundError(BlobDedupError):
    """A blob referenced by id does not exist."""

    def __init__(self, blob_id: UUID) -> None:
        super().__init__(f"Blob not found: {blob_id}")
        self.blob_id = blob_id
