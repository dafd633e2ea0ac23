"""Engine, session factory and schema bootstrap for the blob tables."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from blob_dedup.config import settings
from blob_dedup.models import Base


def session_factory_for(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the app, the CLI and the reconciliation job.

    Objects stay readable after commit: results are reported on blobs whose
    transaction has already closed.
    """
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session_factory = session_factory_for(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_factory() as session:
        yield session


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create the blobs and attachments tables if they do not exist."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
