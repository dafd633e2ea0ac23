"""Shared pytest fixtures for blob-dedup tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from blob_dedup.db import session_factory_for
from blob_dedup.models import Attachment, Base, Blob, generate_key
from blob_dedup.policy import DedupConfiguration, PolicyStore
from blob_dedup.repositories import AttachmentRepository
from blob_dedup.services import DeduplicationEngine, LifecycleManager
from blob_dedup.storage import ServiceRegistry
from blob_dedup.utils import ChecksumComputer

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


class MemoryService:
    """In-memory storage service recording uploads and deletes."""

    def __init__(self, name: str) -> None:
        self._name = name
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_deletes = False

    @property
    def name(self) -> str:
        return self._name

    async def upload(self, key: str, io: BinaryIO) -> None:
        self.objects[key] = io.read()

    async def delete(self, key: str) -> None:
        if self.fail_deletes:
            raise OSError(f"simulated delete failure for {key}")
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def exists(self, key: str) -> bool:
        return key in self.objects


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """A fresh SQLite database file per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'blob_dedup_test.db'}"


@pytest.fixture
async def test_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with all tables."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return session_factory_for(test_engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session with transaction rollback.

    Each test gets its own transaction that is rolled back at the end.
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
            await session.rollback()


# -----------------------------------------------------------------------------
# Policy, storage and service wiring
# -----------------------------------------------------------------------------


@pytest.fixture
def policy() -> PolicyStore:
    """A policy with the default configuration and three declared owner types.

    User#avatar        single, default policy
    User#documents     multiple, default policy
    Product#photo      single, deduplication disabled
    """
    store = PolicyStore(DedupConfiguration())
    store.has_one_attached("User", "avatar")
    store.has_many_attached("User", "documents")
    store.has_one_attached("Product", "photo", deduplicate=False)
    return store


@pytest.fixture
def local_service() -> MemoryService:
    return MemoryService("local")


@pytest.fixture
def s3_service() -> MemoryService:
    return MemoryService("s3")


@pytest.fixture
def registry(local_service: MemoryService, s3_service: MemoryService) -> ServiceRegistry:
    return ServiceRegistry([local_service, s3_service], default="local")


@pytest.fixture
def checksums() -> ChecksumComputer:
    return ChecksumComputer()


@pytest.fixture
def dedup_engine(
    db_session: AsyncSession, policy: PolicyStore, registry: ServiceRegistry
) -> DeduplicationEngine:
    return DeduplicationEngine(db_session, policy, registry)


@pytest.fixture
def lifecycle(
    db_session: AsyncSession, policy: PolicyStore, registry: ServiceRegistry
) -> LifecycleManager:
    return LifecycleManager(db_session, policy, registry)


@pytest.fixture
def attachments(
    db_session: AsyncSession, policy: PolicyStore, lifecycle: LifecycleManager
) -> AttachmentRepository:
    return AttachmentRepository(db_session, policy, lifecycle=lifecycle)


# -----------------------------------------------------------------------------
# Factories
# -----------------------------------------------------------------------------

MakeBlob = Callable[..., Blob]
MakeAttachment = Callable[..., Attachment]


@pytest.fixture
def make_blob(checksums: ChecksumComputer) -> MakeBlob:
    """Factory fixture for creating Blob instances (not added to a session)."""

    def _make(
        *,
        blob_id: UUID | None = None,
        content: bytes = b"test content",
        checksum: str | None = None,
        filename: str = "test.txt",
        service_name: str = "local",
        reference_count: int = 0,
        created_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Blob:
        digest = checksums.compute_bytes(content)
        return Blob(
            blob_id=blob_id or uuid4(),
            key=generate_key(),
            filename=filename,
            content_type="text/plain",
            metadata_=metadata or {},
            service_name=service_name,
            byte_size=digest.byte_size,
            checksum=checksum if checksum is not None else digest.checksum,
            reference_count=reference_count,
            created_at=created_at or datetime.now(timezone.utc),
        )

    return _make


@pytest.fixture
def make_attachment() -> MakeAttachment:
    """Factory fixture for creating raw Attachment rows (no counter update)."""

    def _make(
        *,
        blob_id: UUID,
        owner_type: str = "User",
        owner_id: str | None = None,
        name: str = "avatar",
    ) -> Attachment:
        return Attachment(
            attachment_id=uuid4(),
            name=name,
            owner_type=owner_type,
            owner_id=owner_id or str(uuid4()),
            blob_id=blob_id,
        )

    return _make
