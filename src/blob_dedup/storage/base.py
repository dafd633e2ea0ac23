"""Storage service interface.

A service persists bytes under an opaque key. It knows nothing about
checksums, blobs or attachments.
"""

from __future__ import annotations

from typing import BinaryIO, Protocol, runtime_checkable


@runtime_checkable
class BlobStore(Protocol):
    """A named physical storage backend (local disk, a cloud bucket, ...)."""

    @property
    def name(self) -> str: ...

    async def upload(self, key: str, io: BinaryIO) -> None:
        """Store the remaining content of ``io`` under ``key``."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the bytes stored under ``key``. Missing keys are not an error."""
        ...

    async def exists(self, key: str) -> bool: ...
