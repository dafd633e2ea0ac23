"""Reconciliation: merge duplicate blobs that slipped past the upload check.

Two uploads of the same content can both miss the (checksum, service)
lookup and each create a blob. This job finds such groups and folds every
duplicate into the oldest blob of its group (the keeper):

1. Attachments of the duplicate that the keeper already covers for the
   same owner slot are dropped.
2. The remaining attachments are re-pointed at the keeper in one UPDATE.
3. The moved count is added to the keeper's counter in one UPDATE.
4. The duplicate's record is deleted. Its bytes are not touched: they
   are identical to the keeper's.

Each duplicate is merged in its own transaction. A failure rolls that
transaction back, is logged, and leaves the duplicate for the next run.
The job takes no global lock; running it again (or concurrently) only
finds whatever is still duplicated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from blob_dedup.errors import BlobNotFoundError
from blob_dedup.policy import PolicyStore
from blob_dedup.policy import policy as default_policy
from blob_dedup.repositories.attachments import AttachmentRepository
from blob_dedup.repositories.blobs import BlobRepository, DuplicateGroupKey

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """Result of folding one duplicate into its keeper."""

    keeper_id: UUID
    duplicate_id: UUID
    attachments_moved: int = 0
    attachments_dropped: int = 0


@dataclass
class ReconciliationResult:
    """Aggregate counts of a reconciliation run."""

    groups_found: int = 0
    duplicates_merged: int = 0
    duplicates_failed: int = 0
    attachments_moved: int = 0
    attachments_dropped: int = 0


def _short(checksum: str) -> str:
    return f"{checksum[:12]}..."


class ReconciliationJob:
    """Finds and merges duplicate blobs across the whole database.

    Usage:
        job = ReconciliationJob(async_session_factory)
        result = await job.run()
        result.duplicates_merged
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        policy: PolicyStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy or default_policy

    async def run(self) -> ReconciliationResult:
        """Scan for duplicate groups and merge each one.

        Never raises for an individual merge failure; those are reported in
        ``duplicates_failed``.
        """
        logger.info("Starting sanity check: scanning for duplicate blobs")
        result = ReconciliationResult()

        async with self._session_factory() as session:
            groups = await BlobRepository(session).duplicate_groups()

        if not groups:
            logger.info("No duplicate blobs found")
            return result

        result.groups_found = len(groups)
        logger.info("Found %d group(s) with duplicates", len(groups))

        for group in groups:
            await self._process_group(group, result)

        logger.info(
            "Sanity check complete: merged %d duplicate blob(s), %d failed",
            result.duplicates_merged,
            result.duplicates_failed,
        )
        return result

    async def _process_group(self, group: DuplicateGroupKey, result: ReconciliationResult) -> None:
        async with self._session_factory() as session:
            members = await BlobRepository(session).list_by_checksum(
                group.checksum, group.service_name
            )
            member_ids = [blob.blob_id for blob in members]

        if len(member_ids) < 2:
            # Merged by a concurrent run since the scan
            logger.debug("Group %s no longer has duplicates", _short(group.checksum))
            return

        keeper_id, duplicate_ids = member_ids[0], member_ids[1:]
        logger.info(
            "Merging %d duplicate(s) into blob %s (checksum=%s, service=%s)",
            len(duplicate_ids),
            keeper_id,
            _short(group.checksum),
            group.service_name,
        )

        for duplicate_id in duplicate_ids:
            try:
                outcome = await self.merge_duplicate(keeper_id, duplicate_id)
            except Exception:
                result.duplicates_failed += 1
                logger.exception("Error merging blob %s into %s", duplicate_id, keeper_id)
                continue

            result.duplicates_merged += 1
            result.attachments_moved += outcome.attachments_moved
            result.attachments_dropped += outcome.attachments_dropped

    async def merge_duplicate(self, keeper_id: UUID, duplicate_id: UUID) -> MergeOutcome:
        """Fold one duplicate into the keeper inside a single transaction.

        Raises:
            BlobNotFoundError: If the duplicate was deleted since the scan.
            Exception: Whatever the database raised. The transaction is
                rolled back and the duplicate is left as it was.
        """
        outcome = MergeOutcome(keeper_id=keeper_id, duplicate_id=duplicate_id)

        async with self._session_factory() as session, session.begin():
            blobs = BlobRepository(session)
            attachments = AttachmentRepository(session, self._policy)

            outcome.attachments_dropped = await attachments.drop_conflicting(
                duplicate_id, keeper_id
            )
            outcome.attachments_moved = await attachments.relink(duplicate_id, keeper_id)
            await blobs.increment_reference_count(keeper_id, outcome.attachments_moved)
            if not await blobs.delete(duplicate_id):
                raise BlobNotFoundError(duplicate_id)

        logger.info(
            "Merged blob %s (%d attachment(s) moved, %d dropped) into %s",
            duplicate_id,
            outcome.attachments_moved,
            outcome.attachments_dropped,
            keeper_id,
        )
        return outcome
