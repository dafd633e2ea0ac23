"""Tests for the operational CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from typer.testing import CliRunner

from blob_dedup import cli
from blob_dedup.db import init_db, session_factory_for
from blob_dedup.models import Blob
from blob_dedup.repositories import BlobRepository

from conftest import MakeAttachment, MakeBlob

runner = CliRunner()

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def cli_db(
    monkeypatch: pytest.MonkeyPatch, database_url: str, tmp_path: Path
) -> Generator[async_sessionmaker[AsyncSession], None, None]:
    """Point the CLI at a throwaway SQLite database.

    Every command runs its own event loop, so connections are not pooled.
    """
    engine = create_async_engine(database_url, poolclass=NullPool)
    factory = session_factory_for(engine)

    async def _init_db() -> None:
        await init_db(engine)

    asyncio.run(_init_db())
    monkeypatch.setattr(cli, "async_session_factory", factory)
    monkeypatch.setattr(cli, "init_db", _init_db)
    monkeypatch.setattr(cli.settings, "storage_root", tmp_path / "storage")
    yield factory
    asyncio.run(engine.dispose())


def _seed(factory: async_sessionmaker[AsyncSession], *objects: object) -> None:
    async def _add() -> None:
        async with factory() as session, session.begin():
            for obj in objects:
                session.add(obj)
                await session.flush()

    asyncio.run(_add())


def _reference_count(factory: async_sessionmaker[AsyncSession], blob: Blob) -> int | None:
    async def _read() -> int | None:
        async with factory() as session:
            return await BlobRepository(session).reference_count(blob.blob_id)

    return asyncio.run(_read())


class TestFormatBytes:
    @pytest.mark.parametrize(
        ("size", "expected"),
        [(0, "0 B"), (512, "512 B"), (2048, "2.00 KB"), (5 * 1024**3, "5.00 GB")],
    )
    def test_format(self, size: int, expected: str) -> None:
        assert cli.format_bytes(size) == expected


class TestReportDuplicates:
    def test_no_duplicates(self, cli_db: async_sessionmaker[AsyncSession]) -> None:
        result = runner.invoke(cli.app, ["report-duplicates"])

        assert result.exit_code == 0, result.output
        assert "No duplicate blobs found!" in result.output

    def test_reports_waste(
        self, cli_db: async_sessionmaker[AsyncSession], make_blob: MakeBlob
    ) -> None:
        content = b"z" * 1024
        _seed(
            cli_db,
            *(make_blob(content=content, created_at=T0 + timedelta(minutes=i)) for i in range(3)),
        )

        result = runner.invoke(cli.app, ["report-duplicates"])

        assert result.exit_code == 0, result.output
        assert "Total duplicate groups: 1" in result.output
        assert "Total duplicate blobs: 2" in result.output
        assert "Wasted storage: 2.00 KB" in result.output


class TestCleanupAll:
    def test_merges_duplicates(
        self,
        cli_db: async_sessionmaker[AsyncSession],
        make_blob: MakeBlob,
        make_attachment: MakeAttachment,
    ) -> None:
        keeper = make_blob(reference_count=1, created_at=T0)
        duplicate = make_blob(reference_count=1, created_at=T0 + timedelta(minutes=1))
        _seed(
            cli_db,
            keeper,
            duplicate,
            make_attachment(blob_id=keeper.blob_id, owner_id="1"),
            make_attachment(blob_id=duplicate.blob_id, owner_id="2"),
        )

        result = runner.invoke(cli.app, ["cleanup-all"])

        assert result.exit_code == 0, result.output
        assert "Duplicate groups found: 1" in result.output
        assert "Blobs merged: 1" in result.output
        assert "Attachments moved: 1" in result.output
        assert _reference_count(cli_db, keeper) == 2
        assert _reference_count(cli_db, duplicate) is None


class TestBackfill:
    def test_backfill_reports_progress(
        self,
        cli_db: async_sessionmaker[AsyncSession],
        make_blob: MakeBlob,
        make_attachment: MakeAttachment,
    ) -> None:
        drifted = make_blob(content=b"a", reference_count=5)
        _seed(
            cli_db,
            drifted,
            make_blob(content=b"b"),
            make_blob(content=b"c"),
            make_attachment(blob_id=drifted.blob_id),
        )

        result = runner.invoke(cli.app, ["backfill-reference-count", "--batch-size", "2"])

        assert result.exit_code == 0, result.output
        assert "Processed 2/3 blobs" in result.output
        assert "Processed 3/3 blobs" in result.output
        assert "Total blobs: 3" in result.output
        assert "Updated: 1" in result.output
        assert _reference_count(cli_db, drifted) == 1

    def test_rejects_bad_batch_size(self, cli_db: async_sessionmaker[AsyncSession]) -> None:
        result = runner.invoke(cli.app, ["backfill-reference-count", "--batch-size", "0"])

        assert result.exit_code == 1
        assert "must be positive" in result.output


class TestPurgeOrphans:
    def test_purges_stale_orphans(
        self, cli_db: async_sessionmaker[AsyncSession], make_blob: MakeBlob
    ) -> None:
        now = datetime.now(timezone.utc)
        stale = make_blob(content=b"stale", created_at=now - timedelta(days=3))
        fresh = make_blob(content=b"fresh", created_at=now)
        _seed(cli_db, stale, fresh)

        result = runner.invoke(cli.app, ["purge-orphans", "--older-than-hours", "24"])

        assert result.exit_code == 0, result.output
        assert "Purged 1 orphaned blob(s)" in result.output
        assert _reference_count(cli_db, stale) is None
        assert _reference_count(cli_db, fresh) == 0


class TestShowBlob:
    def test_invalid_uuid(self, cli_db: async_sessionmaker[AsyncSession]) -> None:
        result = runner.invoke(cli.app, ["show-blob", "not-a-uuid"])

        assert result.exit_code == 1
        assert "Invalid UUID" in result.output

    def test_missing_blob(self, cli_db: async_sessionmaker[AsyncSession]) -> None:
        result = runner.invoke(cli.app, ["show-blob", "00000000-0000-0000-0000-000000000000"])

        assert result.exit_code == 1
        assert "Blob not found" in result.output

    def test_flags_drift(
        self, cli_db: async_sessionmaker[AsyncSession], make_blob: MakeBlob
    ) -> None:
        blob = make_blob(reference_count=2)
        _seed(cli_db, blob)

        result = runner.invoke(cli.app, ["show-blob", str(blob.blob_id)])

        assert result.exit_code == 0, result.output
        assert blob.key in result.output
        assert "reference_count drift" in result.output


def test_stats(cli_db: async_sessionmaker[AsyncSession], make_blob: MakeBlob) -> None:
    _seed(cli_db, make_blob())

    result = runner.invoke(cli.app, ["stats"])

    assert result.exit_code == 0, result.output
    assert "Blobs" in result.output
