"""Operational routines: duplicate report, counter backfill, orphan sweep."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from blob_dedup.policy import PolicyStore
from blob_dedup.repositories.blobs import BlobRepository
from blob_dedup.services.lifecycle import LifecycleManager
from blob_dedup.storage.registry import ServiceRegistry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class DuplicateGroup:
    """One set of blobs sharing (checksum, service_name)."""

    checksum: str
    service_name: str
    filename: str
    byte_size: int
    keeper_id: UUID
    duplicate_ids: list[UUID]

    @property
    def blob_count(self) -> int:
        return len(self.duplicate_ids) + 1

    @property
    def wasted_bytes(self) -> int:
        return self.byte_size * len(self.duplicate_ids)


@dataclass
class DuplicateReport:
    groups: list[DuplicateGroup] = field(default_factory=list)

    @property
    def total_duplicate_blobs(self) -> int:
        return sum(len(group.duplicate_ids) for group in self.groups)

    @property
    def wasted_bytes(self) -> int:
        return sum(group.wasted_bytes for group in self.groups)


@dataclass
class BackfillResult:
    total: int = 0
    updated: int = 0


async def report_duplicates(session: AsyncSession) -> DuplicateReport:
    """List duplicate groups, largest first, with the keeper each would merge into."""
    blobs = BlobRepository(session)
    report = DuplicateReport()

    for key in await blobs.duplicate_groups():
        members = await blobs.list_by_checksum(key.checksum, key.service_name)
        if len(members) < 2:
            continue
        keeper = members[0]
        report.groups.append(
            DuplicateGroup(
                checksum=key.checksum,
                service_name=key.service_name,
                filename=keeper.filename,
                byte_size=keeper.byte_size,
                keeper_id=keeper.blob_id,
                duplicate_ids=[blob.blob_id for blob in members[1:]],
            )
        )

    return report


async def backfill_reference_counts(
    session: AsyncSession,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    progress: Callable[[int, int], None] | None = None,
) -> BackfillResult:
    """Recompute every blob's reference_count from its actual attachments.

    Blobs are processed in batches; each batch is one correlated UPDATE
    touching only the drifted rows. ``progress(processed, total)`` is called
    after each batch. The caller commits.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    blobs = BlobRepository(session)
    blob_ids = await blobs.ids()
    result = BackfillResult(total=len(blob_ids))

    for start in range(0, len(blob_ids), batch_size):
        batch = blob_ids[start : start + batch_size]
        result.updated += await blobs.backfill_reference_counts(batch)
        if progress is not None:
            progress(min(start + batch_size, result.total), result.total)

    logger.info(
        "Backfilled reference counts: %d blob(s) checked, %d corrected",
        result.total,
        result.updated,
    )
    return result


async def purge_orphans(
    session: AsyncSession,
    policy: PolicyStore,
    registry: ServiceRegistry,
    *,
    older_than: timedelta,
) -> int:
    """Purge unreferenced blobs created more than ``older_than`` ago.

    Catches blobs that were resolved but never attached (cancelled uploads,
    abandoned direct uploads) and blobs of slots whose lifecycle is not
    managed. The grace period keeps in-flight direct uploads safe.

    Returns:
        Number of blobs purged. Blobs whose bytes could not be deleted are
        kept and not counted.
    """
    cutoff = datetime.now(timezone.utc) - older_than
    lifecycle = LifecycleManager(session, policy, registry)

    purged = 0
    for blob in await BlobRepository(session).orphans(created_before=cutoff):
        logger.info("Purging unreferenced blob %s (created %s)", blob.blob_id, blob.created_at)
        if await lifecycle.purge(blob):
            purged += 1
    return purged
