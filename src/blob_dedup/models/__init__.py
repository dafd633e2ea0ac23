"""Database models for blob-dedup."""

from blob_dedup.models.attachment import Attachment
from blob_dedup.models.base import Base
from blob_dedup.models.blob import Blob, generate_key

__all__ = [
    "Attachment",
    "Base",
    "Blob",
    "generate_key",
]
