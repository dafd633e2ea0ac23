"""Purge blobs whose last attachment has been removed."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from blob_dedup.models.attachment import Attachment
from blob_dedup.models.blob import Blob
from blob_dedup.policy import PolicyStore
from blob_dedup.repositories.blobs import BlobRepository
from blob_dedup.storage.registry import ServiceRegistry

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Evaluates a blob after one of its attachments is destroyed.

    Runs after the counter decrement. Only slots that are deduplicated
    are managed, and only while auto_purge_orphans is on; anything else is
    left to the orphan sweep.

    Usage:
        lifecycle = LifecycleManager(session, policy, registry)
        attachments = AttachmentRepository(session, policy, lifecycle=lifecycle)
        await attachments.detach(attachment)
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: PolicyStore,
        registry: ServiceRegistry,
    ) -> None:
        self._session = session
        self._policy = policy
        self._registry = registry
        self._blobs = BlobRepository(session)

    async def on_attachment_removed(self, attachment: Attachment) -> bool:
        """Purge the attachment's blob if nothing references it any more.

        Returns:
            True if the blob was purged.
        """
        if not self._policy.manages_lifecycle(attachment.owner_type, attachment.name):
            return False

        blob_id = attachment.blob_id
        logger.debug("Checking if blob %s should be purged (attachment destroyed)", blob_id)

        reference_count = await self._blobs.reference_count(blob_id)
        if reference_count is None:
            logger.debug("Blob %s no longer exists", blob_id)
            return False

        if reference_count > 0:
            logger.debug("Keeping blob %s (%d reference(s) left)", blob_id, reference_count)
            return False

        blob = await self._blobs.get(blob_id)
        if blob is None:
            return False
        logger.info("Purging orphaned blob %s (reference_count=%d)", blob_id, reference_count)
        return await self.purge(blob)

    async def purge(self, blob: Blob) -> bool:
        """Delete stored bytes, then the record.

        If the bytes cannot be deleted the failure is logged and the record
        is kept, so a later sweep can retry; the record is never dropped
        while its bytes may still be stored.

        Returns:
            True if both bytes and record were removed.
        """
        # Bytes go before the caller commits. If that commit later fails the
        # record survives without bytes; the reverse order could leave stored
        # bytes with no record pointing at them.
        try:
            service = self._registry.get(blob.service_name)
            await service.delete(blob.key)
        except Exception:
            logger.exception(
                "Failed to delete bytes of blob %s (key=%s, service=%s); keeping record",
                blob.blob_id,
                blob.key,
                blob.service_name,
            )
            return False

        await self._blobs.delete(blob.blob_id)
        logger.debug("Deleted blob record %s", blob.blob_id)
        return True
