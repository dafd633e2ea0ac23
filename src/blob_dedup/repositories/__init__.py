"""Record access for blobs and attachments."""

from blob_dedup.repositories.attachments import AttachmentRepository
from blob_dedup.repositories.blobs import BlobRepository, DuplicateGroupKey

__all__ = [
    "AttachmentRepository",
    "BlobRepository",
    "DuplicateGroupKey",
]
