"""Tests for the duplicate report, counter backfill and orphan sweep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from blob_dedup.policy import PolicyStore
from blob_dedup.repositories import BlobRepository
from blob_dedup.services import backfill_reference_counts, purge_orphans, report_duplicates
from blob_dedup.storage import ServiceRegistry

from conftest import MakeAttachment, MakeBlob, MemoryService

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestReportDuplicates:
    async def test_empty_database(self, db_session: AsyncSession) -> None:
        report = await report_duplicates(db_session)

        assert report.groups == []
        assert report.wasted_bytes == 0

    async def test_groups_with_keeper_and_waste(
        self, db_session: AsyncSession, make_blob: MakeBlob
    ) -> None:
        blobs = BlobRepository(db_session)
        content = b"x" * 1000
        keeper = await blobs.add(make_blob(content=content, filename="k.bin", created_at=T0))
        dup1 = await blobs.add(make_blob(content=content, created_at=T0 + timedelta(hours=1)))
        dup2 = await blobs.add(make_blob(content=content, created_at=T0 + timedelta(hours=2)))
        await blobs.add(make_blob(content=b"unique"))

        report = await report_duplicates(db_session)

        assert len(report.groups) == 1
        group = report.groups[0]
        assert group.keeper_id == keeper.blob_id
        assert group.duplicate_ids == [dup1.blob_id, dup2.blob_id]
        assert group.filename == "k.bin"
        assert group.blob_count == 3
        assert group.wasted_bytes == 2000
        assert report.total_duplicate_blobs == 2
        assert report.wasted_bytes == 2000

    async def test_report_changes_nothing(
        self, db_session: AsyncSession, make_blob: MakeBlob
    ) -> None:
        blobs = BlobRepository(db_session)
        await blobs.add(make_blob(created_at=T0))
        await blobs.add(make_blob(created_at=T0 + timedelta(hours=1)))

        await report_duplicates(db_session)

        assert await blobs.count() == 2


class TestBackfill:
    async def test_corrects_drift(
        self,
        db_session: AsyncSession,
        make_blob: MakeBlob,
        make_attachment: MakeAttachment,
    ) -> None:
        blobs = BlobRepository(db_session)
        under = await blobs.add(make_blob(content=b"a", reference_count=0))
        over = await blobs.add(make_blob(content=b"b", reference_count=9))
        exact = await blobs.add(make_blob(content=b"c", reference_count=1))
        db_session.add_all(
            [
                make_attachment(blob_id=under.blob_id),
                make_attachment(blob_id=under.blob_id),
                make_attachment(blob_id=exact.blob_id),
            ]
        )
        await db_session.flush()

        result = await backfill_reference_counts(db_session, batch_size=2)

        assert result.total == 3
        assert result.updated == 2
        assert await blobs.reference_count(under.blob_id) == 2
        assert await blobs.reference_count(over.blob_id) == 0
        assert await blobs.reference_count(exact.blob_id) == 1

    async def test_reports_progress_per_batch(
        self, db_session: AsyncSession, make_blob: MakeBlob
    ) -> None:
        blobs = BlobRepository(db_session)
        for i in range(5):
            await blobs.add(make_blob(content=bytes([i])))
        calls: list[tuple[int, int]] = []

        await backfill_reference_counts(
            db_session, batch_size=2, progress=lambda done, total: calls.append((done, total))
        )

        assert calls == [(2, 5), (4, 5), (5, 5)]

    async def test_rejects_non_positive_batch(self, db_session: AsyncSession) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            await backfill_reference_counts(db_session, batch_size=0)


class TestPurgeOrphans:
    async def test_purges_only_old_unreferenced_blobs(
        self,
        db_session: AsyncSession,
        policy: PolicyStore,
        registry: ServiceRegistry,
        local_service: MemoryService,
        make_blob: MakeBlob,
        make_attachment: MakeAttachment,
    ) -> None:
        blobs = BlobRepository(db_session)
        now = datetime.now(timezone.utc)
        stale = await blobs.add(make_blob(content=b"stale", created_at=now - timedelta(days=2)))
        fresh = await blobs.add(make_blob(content=b"fresh", created_at=now))
        used = await blobs.add(
            make_blob(content=b"used", reference_count=1, created_at=now - timedelta(days=2))
        )
        db_session.add(make_attachment(blob_id=used.blob_id))
        await db_session.flush()
        for blob in (stale, fresh, used):
            local_service.objects[blob.key] = b"..."
        stale_id, stale_key = stale.blob_id, stale.key

        purged = await purge_orphans(
            db_session, policy, registry, older_than=timedelta(hours=24)
        )

        assert purged == 1
        assert local_service.deleted == [stale_key]
        assert await blobs.get(stale_id) is None
        assert await blobs.get(fresh.blob_id) is fresh
        assert await blobs.get(used.blob_id) is used

    async def test_failed_delete_is_not_counted(
        self,
        db_session: AsyncSession,
        policy: PolicyStore,
        registry: ServiceRegistry,
        local_service: MemoryService,
        make_blob: MakeBlob,
    ) -> None:
        blobs = BlobRepository(db_session)
        orphan = await blobs.add(make_blob(created_at=T0))
        local_service.fail_deletes = True

        purged = await purge_orphans(db_session, policy, registry, older_than=timedelta(0))

        assert purged == 0
        assert await blobs.get(orphan.blob_id) is orphan
