"""Attachment model linking an owner's named slot to a Blob."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from blob_dedup.models.base import Base
from blob_dedup.models.blob import utcnow

if TYPE_CHECKING:
    from blob_dedup.models.blob import Blob


class Attachment(Base):
    """A reference from (owner_type, owner_id, name) to a Blob.

    The owner is polymorphic: owner_type is the declaring type's name and
    owner_id its identifier rendered as a string. Creating or deleting an
    attachment is what moves the blob's reference_count.
    """

    __tablename__ = "attachments"
    __table_args__ = (
        UniqueConstraint(
            "owner_type", "owner_id", "name", "blob_id", name="uq_attachments_owner_name_blob"
        ),
    )

    attachment_id: Mapped[UUID] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    owner_type: Mapped[str] = mapped_column(String(255))
    owner_id: Mapped[str] = mapped_column(String(255))
    blob_id: Mapped[UUID] = mapped_column(ForeignKey("blobs.blob_id"), index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    # Relationships
    blob: Mapped[Blob] = relationship(back_populates="attachments")
