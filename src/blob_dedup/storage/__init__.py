"""Storage services holding blob bytes."""

from blob_dedup.storage.base import BlobStore
from blob_dedup.storage.disk import DiskService
from blob_dedup.storage.registry import ServiceRegistry, build_registry

__all__ = [
    "BlobStore",
    "DiskService",
    "ServiceRegistry",
    "build_registry",
]
