"""Blob model: one physically stored file, shared by its attachments."""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from blob_dedup.models.base import Base

if TYPE_CHECKING:
    from blob_dedup.models.attachment import Attachment

KEY_ALPHABET = string.ascii_lowercase + string.digits
KEY_LENGTH = 28


def generate_key() -> str:
    """Generate a random storage key (lowercase base36, 28 chars).

    The key addresses the bytes inside a storage service and is
    unrelated to the content checksum.
    """
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Blob(Base):
    """A stored file, deduplicated on (checksum, service_name).

    The (checksum, service_name) pair is deliberately NOT unique: two
    concurrent uploads of the same content can both miss the lookup and
    create a row each. The reconciliation job merges such duplicates.

    reference_count mirrors the number of Attachment rows pointing here
    and is only ever changed with single atomic UPDATE statements.
    """

    __tablename__ = "blobs"
    __table_args__ = (Index("ix_blobs_checksum_service", "checksum", "service_name"),)

    blob_id: Mapped[UUID] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(String(255), unique=True)
    filename: Mapped[str] = mapped_column(String(1024))
    content_type: Mapped[str | None] = mapped_column(String(255))
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON().with_variant(JSONB(), "postgresql"), default=dict
    )
    service_name: Mapped[str] = mapped_column(String(255))
    byte_size: Mapped[int] = mapped_column(BigInteger)
    checksum: Mapped[str | None] = mapped_column(String(255))
    reference_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    # Relationships
    attachments: Mapped[list[Attachment]] = relationship(back_populates="blob")

    def __repr__(self) -> str:
        return (
            f"Blob(blob_id={self.blob_id}, key={self.key!r}, service={self.service_name!r}, "
            f"refs={self.reference_count})"
        )
