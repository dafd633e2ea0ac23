"""Blob record access and reference counter maintenance.

Every change to ``reference_count`` goes through a single UPDATE
statement evaluated by the database (``reference_count + n``). Nothing
here reads the counter, computes a new value and writes it back, so
concurrent attach/detach calls cannot lose updates.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, case, delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from blob_dedup.models.attachment import Attachment
from blob_dedup.models.blob import Blob, generate_key


@dataclass(frozen=True)
class DuplicateGroupKey:
    """A (checksum, service_name) pair shared by more than one blob."""

    checksum: str
    service_name: str
    blob_count: int


class BlobRepository:
    """CRUD over blob rows plus atomic counter updates.

    Usage:
        async with AsyncSession(engine) as session:
            blobs = BlobRepository(session)
            blob = await blobs.find_by_checksum(checksum, "local")
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, blob_id: UUID) -> Blob | None:
        return await self._session.get(Blob, blob_id)

    async def get_by_key(self, key: str) -> Blob | None:
        result = await self._session.execute(select(Blob).where(Blob.key == key))
        return result.scalar_one_or_none()

    async def find_by_checksum(self, checksum: str, service_name: str) -> Blob | None:
        """Find the blob to reuse for this content on this service.

        When duplicates exist the oldest row wins, which is also the row the
        reconciliation job keeps.
        """
        stmt = (
            select(Blob)
            .where(Blob.checksum == checksum, Blob.service_name == service_name)
            .order_by(Blob.created_at, Blob.blob_id)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_checksum(self, checksum: str, service_name: str) -> Sequence[Blob]:
        """All blobs sharing (checksum, service_name), oldest first."""
        stmt = (
            select(Blob)
            .where(Blob.checksum == checksum, Blob.service_name == service_name)
            .order_by(Blob.created_at, Blob.blob_id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def reference_count(self, blob_id: UUID) -> int | None:
        """Current counter value as stored in the database.

        Returns None if the blob does not exist.
        """
        stmt = select(Blob.reference_count).where(Blob.blob_id == blob_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def duplicate_groups(self) -> list[DuplicateGroupKey]:
        """(checksum, service_name) pairs held by more than one blob.

        Blobs without a checksum are never grouped. Largest groups first.
        """
        blob_count = func.count(Blob.blob_id).label("blob_count")
        stmt = (
            select(Blob.checksum, Blob.service_name, blob_count)
            .where(Blob.checksum.is_not(None))
            .group_by(Blob.checksum, Blob.service_name)
            .having(func.count(Blob.blob_id) > 1)
            .order_by(blob_count.desc(), Blob.checksum)
        )
        result = await self._session.execute(stmt)
        return [
            DuplicateGroupKey(
                checksum=row.checksum, service_name=row.service_name, blob_count=row.blob_count
            )
            for row in result
        ]

    async def count(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(Blob))
        return result.scalar_one()

    async def ids(self) -> list[UUID]:
        stmt = select(Blob.blob_id).order_by(Blob.created_at, Blob.blob_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def orphans(self, *, created_before: datetime) -> Sequence[Blob]:
        """Blobs with no attachments and a non-positive counter."""
        stmt = (
            select(Blob)
            .where(
                Blob.reference_count <= 0,
                Blob.created_at < created_before,
                ~exists().where(Attachment.blob_id == Blob.blob_id),
            )
            .order_by(Blob.created_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def add(self, blob: Blob) -> Blob:
        """Persist a transient blob (assigning id and key if missing)."""
        if blob.blob_id is None:
            blob.blob_id = uuid4()
        if not blob.key:
            blob.key = generate_key()
        if blob.reference_count is None:
            blob.reference_count = 0
        if blob.metadata_ is None:
            blob.metadata_ = {}
        self._session.add(blob)
        await self._session.flush()
        return blob

    async def create(
        self,
        *,
        filename: str,
        service_name: str,
        byte_size: int,
        checksum: str | None = None,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        key: str | None = None,
        created_at: datetime | None = None,
    ) -> Blob:
        blob = Blob(
            blob_id=uuid4(),
            key=key or generate_key(),
            filename=filename,
            content_type=content_type,
            metadata_=metadata or {},
            service_name=service_name,
            byte_size=byte_size,
            checksum=checksum,
            reference_count=0,
        )
        if created_at is not None:
            blob.created_at = created_at
        return await self.add(blob)

    async def increment_reference_count(self, blob_id: UUID, by: int = 1) -> None:
        """Atomically add ``by`` to the counter."""
        if by == 0:
            return
        stmt = (
            update(Blob)
            .where(Blob.blob_id == blob_id)
            .values(reference_count=Blob.reference_count + by)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._refresh_loaded(blob_id)

    async def decrement_reference_count(self, blob_id: UUID, by: int = 1) -> None:
        """Atomically subtract ``by`` from the counter, never going below zero."""
        stmt = (
            update(Blob)
            .where(Blob.blob_id == blob_id)
            .values(
                reference_count=case(
                    (Blob.reference_count > by, Blob.reference_count - by),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._refresh_loaded(blob_id)

    async def delete(self, blob_id: UUID) -> bool:
        """Delete the blob row only. Stored bytes are left untouched.

        Returns:
            True if a row was deleted.
        """
        stmt = delete(Blob).where(Blob.blob_id == blob_id)
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def backfill_reference_counts(self, blob_ids: Sequence[UUID] | None = None) -> int:
        """Set reference_count to the real attachment count where they differ.

        Runs as one correlated UPDATE, so the count is taken and written by
        the database in a single statement.

        Args:
            blob_ids: Restrict to these blobs (all blobs when None).

        Returns:
            Number of blobs whose counter was corrected.
        """
        actual = (
            select(func.count(Attachment.attachment_id))
            .where(Attachment.blob_id == Blob.blob_id)
            .correlate(Blob)
            .scalar_subquery()
        )
        conditions = [Blob.reference_count != actual]
        if blob_ids is not None:
            if not blob_ids:
                return 0
            conditions.append(Blob.blob_id.in_(blob_ids))

        stmt = (
            update(Blob)
            .where(and_(*conditions))
            .values(reference_count=actual)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if blob_ids is not None:
            for blob_id in blob_ids:
                await self._refresh_loaded(blob_id)
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def _refresh_loaded(self, blob_id: UUID) -> None:
        """Re-read the counter of an in-session copy after a SQL-side update."""
        blob = self._session.identity_map.get(self._session.identity_key(Blob, blob_id))
        if blob is not None:
            await self._session.refresh(blob, ["reference_count"])
