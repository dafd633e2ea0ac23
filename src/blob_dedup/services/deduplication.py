"""Deduplication engine: decide whether an upload reuses an existing blob.

Three upload shapes route through the same decision:

- ``build_after_upload``: bytes are read during the request; the
  checksum is computed here. A new blob is returned unsaved.
- ``create_before_direct_upload``: the client uploads straight to the
  storage service later and supplies the checksum now. A new blob row is
  saved immediately so the upload can be authorized against its key.
- ``create_after_upload``: build, then upload bytes and save.

All of them call ``resolve_blob``, which applies the policy check and the
(checksum, service_name) lookup. None of them touch reference_count;
only creating an Attachment does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO
from uuid import uuid4

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from blob_dedup.errors import MalformedUploadError
from blob_dedup.models.blob import Blob, generate_key
from blob_dedup.policy import AttachmentContext, PolicyStore
from blob_dedup.repositories.blobs import BlobRepository
from blob_dedup.storage.registry import ServiceRegistry
from blob_dedup.utils.checksum import ChecksumComputer

logger = logging.getLogger(__name__)


@dataclass
class UploadSpec:
    """Everything known about an upload before a blob is chosen.

    Either ``io`` (bytes to read) or ``checksum`` + ``byte_size`` (direct
    upload) must be given.
    """

    filename: str
    io: BinaryIO | None = None
    checksum: str | None = None
    byte_size: int | None = None
    content_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    service_name: str | None = None
    key: str | None = None


def _short(checksum: str | None) -> str:
    return f"{checksum[:12]}..." if checksum else "<none>"


class DeduplicationEngine:
    """Resolves uploads to blobs, reusing identical content on the same service.

    Usage:
        async with async_session_factory() as session:
            engine = DeduplicationEngine(session, policy, registry)
            blob = await engine.create_after_upload(
                UploadSpec(filename="a.png", io=f), AttachmentContext.of("User", 1, "avatar")
            )
            await AttachmentRepository(session, policy).attach(context, blob)
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: PolicyStore,
        registry: ServiceRegistry,
        *,
        checksums: ChecksumComputer | None = None,
    ) -> None:
        self._session = session
        self._policy = policy
        self._registry = registry
        self._checksums = checksums or ChecksumComputer()
        self._blobs = BlobRepository(session)

    def service_name_for(self, upload: UploadSpec, context: AttachmentContext | None) -> str:
        """Explicit service, else the slot's declared service, else the default.

        Raises:
            UnknownServiceError: If the resulting name is not configured.
        """
        name = upload.service_name
        if name is None and context is not None:
            slot = self._policy.slot(context.owner_type, context.name)
            if slot is not None:
                name = slot.service_name
        return self._registry.get(name).name

    # -------------------------------------------------------------------------
    # The decision
    # -------------------------------------------------------------------------

    async def resolve_blob(
        self,
        upload: UploadSpec,
        context: AttachmentContext | None = None,
    ) -> Blob:
        """Return an existing blob for identical content, or a new unsaved one.

        If the upload carries no checksum, the bytes are read to compute
        one. A checksum supplied by the caller is trusted as is. ``upload``
        itself is not modified.

        Raises:
            UploadReadError: If the upload stream cannot be read.
            MalformedUploadError: If no checksum can be established.
        """
        checksum, byte_size = upload.checksum, upload.byte_size
        if checksum is None:
            if upload.io is None:
                raise MalformedUploadError(
                    f"Upload {upload.filename!r} has neither content nor a checksum"
                )
            digest = self._checksums.compute(upload.io)
            checksum = digest.checksum
            if byte_size is None:
                byte_size = digest.byte_size
        if not checksum:
            raise MalformedUploadError(f"Upload {upload.filename!r} has an empty checksum")
        if byte_size is None:
            raise MalformedUploadError(f"Upload {upload.filename!r} has no byte size")

        service_name = self.service_name_for(upload, context)
        should_dedup = self._policy.should_deduplicate(context)
        logger.debug(
            "Resolving %s (checksum=%s, service=%s, dedup=%s, context=%s)",
            upload.filename,
            _short(checksum),
            service_name,
            should_dedup,
            context,
        )

        if should_dedup:
            existing = await self._blobs.find_by_checksum(checksum, service_name)
            if existing is not None:
                logger.info(
                    "Reusing existing blob %s (checksum=%s, service=%s)",
                    existing.blob_id,
                    _short(checksum),
                    service_name,
                )
                return existing
            logger.debug("No duplicate found for %s", _short(checksum))

        return Blob(
            blob_id=uuid4(),
            key=upload.key or generate_key(),
            filename=upload.filename,
            content_type=upload.content_type,
            metadata_=dict(upload.metadata),
            service_name=service_name,
            byte_size=byte_size,
            checksum=checksum,
            reference_count=0,
        )

    # -------------------------------------------------------------------------
    # Upload shapes
    # -------------------------------------------------------------------------

    async def build_after_upload(
        self,
        upload: UploadSpec,
        context: AttachmentContext | None = None,
    ) -> Blob:
        """Form-style upload: digest the bytes, return a reusable or unsaved blob.

        The stream is rewound after digesting. A new blob still needs its bytes
        sent with ``upload()`` before it is saved.
        """
        if upload.io is None:
            raise MalformedUploadError(f"Upload {upload.filename!r} has no content to read")
        return await self.resolve_blob(upload, context)

    async def create_before_direct_upload(
        self,
        upload: UploadSpec,
        context: AttachmentContext | None = None,
    ) -> Blob:
        """Direct upload: persist a blob row for a client-supplied checksum.

        When an identical blob already exists it is returned and the client
        has nothing to upload.
        """
        if upload.checksum is None or upload.byte_size is None:
            raise MalformedUploadError(
                f"Direct upload {upload.filename!r} requires checksum and byte_size"
            )
        blob = await self.resolve_blob(upload, context)
        if inspect(blob).has_identity:
            return blob

        await self._blobs.add(blob)
        logger.info("Created blob %s for direct upload %s", blob.blob_id, upload.filename)
        return blob

    async def create_after_upload(
        self,
        upload: UploadSpec,
        context: AttachmentContext | None = None,
    ) -> Blob:
        """Programmatic attach: build, then upload bytes and save a new blob."""
        blob = await self.build_after_upload(upload, context)
        if inspect(blob).has_identity:
            return blob

        assert upload.io is not None
        await self.upload(blob, upload.io)
        await self._blobs.add(blob)
        logger.info("Created and saved blob %s for %s", blob.blob_id, upload.filename)
        return blob

    async def upload(self, blob: Blob, io: BinaryIO) -> None:
        """Send bytes for a new blob to its storage service."""
        service = self._registry.get(blob.service_name)
        await service.upload(blob.key, io)
