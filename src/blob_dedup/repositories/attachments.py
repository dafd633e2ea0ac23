"""Attachment records and the counter maintenance they trigger.

Creating an attachment is the only event that increments a blob's
reference_count, and deleting one is the only event that decrements it.
Resolving a blob never touches the counter. Moving existing attachments
between blobs (``relink``) is a reassignment and does not go through
either path.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from blob_dedup.models.attachment import Attachment
from blob_dedup.models.blob import Blob
from blob_dedup.policy import AttachmentContext, PolicyStore
from blob_dedup.repositories.blobs import BlobRepository

if TYPE_CHECKING:
    from blob_dedup.services.lifecycle import LifecycleManager

logger = logging.getLogger(__name__)


class AttachmentRepository:
    """Creates and removes attachments, keeping reference counts exact.

    Usage:
        async with async_session_factory() as session:
            attachments = AttachmentRepository(session, policy, lifecycle=lifecycle)
            attachment = await attachments.attach(context, blob)
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: PolicyStore,
        *,
        lifecycle: LifecycleManager | None = None,
    ) -> None:
        self._session = session
        self._policy = policy
        self._lifecycle = lifecycle
        self._blobs = BlobRepository(session)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, attachment_id: UUID) -> Attachment | None:
        return await self._session.get(Attachment, attachment_id)

    async def find(self, context: AttachmentContext) -> Sequence[Attachment]:
        """Attachments in one owner's slot, oldest first."""
        stmt = (
            select(Attachment)
            .where(
                Attachment.owner_type == context.owner_type,
                Attachment.owner_id == context.owner_id,
                Attachment.name == context.name,
            )
            .order_by(Attachment.created_at, Attachment.attachment_id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_for_blob(self, blob_id: UUID) -> int:
        stmt = select(func.count()).select_from(Attachment).where(Attachment.blob_id == blob_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    # -------------------------------------------------------------------------
    # Attach / detach
    # -------------------------------------------------------------------------

    async def attach(self, context: AttachmentContext, blob: Blob) -> Attachment:
        """Link ``blob`` into the owner's slot and count the new reference.

        A blob that has not been persisted yet is saved first. Attaching the
        same blob to the same slot twice returns the existing attachment
        without counting it again. On a single-valued slot any attachment to
        a different blob is detached first.
        """
        if not inspect(blob).has_identity:
            await self._blobs.add(blob)

        existing = await self.find(context)
        for attachment in existing:
            if attachment.blob_id == blob.blob_id:
                logger.debug(
                    "Blob %s already attached to %s#%s(%s)",
                    blob.blob_id,
                    context.owner_type,
                    context.name,
                    context.owner_id,
                )
                return attachment

        slot = self._policy.slot(context.owner_type, context.name)
        if existing and not (slot and slot.multiple):
            for attachment in existing:
                logger.debug(
                    "Replacing attachment %s on single slot %s#%s",
                    attachment.attachment_id,
                    context.owner_type,
                    context.name,
                )
                await self.detach(attachment)

        attachment = Attachment(
            attachment_id=uuid4(),
            name=context.name,
            owner_type=context.owner_type,
            owner_id=context.owner_id,
            blob_id=blob.blob_id,
        )
        self._session.add(attachment)
        await self._session.flush()
        await self._blobs.increment_reference_count(blob.blob_id)

        logger.debug(
            "Attached blob %s to %s#%s(%s)",
            blob.blob_id,
            context.owner_type,
            context.name,
            context.owner_id,
        )
        return attachment

    async def detach(self, attachment: Attachment) -> bool:
        """Delete an attachment, uncount it, then evaluate its blob for purge.

        The decrement is applied before the lifecycle check so the check
        sees the post-removal counter.

        Returns:
            True if the blob was purged as a result.
        """
        stmt = delete(Attachment).where(Attachment.attachment_id == attachment.attachment_id)
        result = await self._session.execute(stmt)
        if not result.rowcount:  # type: ignore[attr-defined]
            logger.debug("Attachment %s already removed", attachment.attachment_id)
            return False

        await self._blobs.decrement_reference_count(attachment.blob_id)

        if self._lifecycle is None:
            return False
        return await self._lifecycle.on_attachment_removed(attachment)

    async def detach_all(self, context: AttachmentContext) -> int:
        """Detach every attachment in a slot. Returns the number of purged blobs."""
        purged = 0
        for attachment in await self.find(context):
            if await self.detach(attachment):
                purged += 1
        return purged

    # -------------------------------------------------------------------------
    # Bulk reassignment (merge path)
    # -------------------------------------------------------------------------

    async def drop_conflicting(self, from_blob_id: UUID, to_blob_id: UUID) -> int:
        """Delete attachments of ``from_blob_id`` that ``to_blob_id`` already covers.

        If an owner's slot holds both blobs, re-pointing would violate the
        (owner_type, owner_id, name, blob_id) unique constraint. Those rows
        are redundant and are removed instead of moved.

        Returns:
            Number of attachments deleted.
        """
        keeper = aliased(Attachment)
        covered = (
            select(Attachment.attachment_id)
            .join(
                keeper,
                (keeper.owner_type == Attachment.owner_type)
                & (keeper.owner_id == Attachment.owner_id)
                & (keeper.name == Attachment.name),
            )
            .where(Attachment.blob_id == from_blob_id, keeper.blob_id == to_blob_id)
        )
        conflicting = list((await self._session.execute(covered)).scalars().all())
        if not conflicting:
            return 0

        stmt = (
            delete(Attachment)
            .where(Attachment.attachment_id.in_(conflicting))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def relink(self, from_blob_id: UUID, to_blob_id: UUID) -> int:
        """Re-point every attachment of one blob at another in a single UPDATE.

        No counter is touched; the caller accounts for the moved references.

        Returns:
            Number of attachments moved.
        """
        stmt = (
            update(Attachment)
            .where(Attachment.blob_id == from_blob_id)
            .values(blob_id=to_blob_id)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0  # type: ignore[attr-defined]
