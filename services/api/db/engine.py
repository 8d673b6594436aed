"""
AsyncEngine and session factory construction.

NullPool for Postgres because PgBouncer owns connection pooling; SA should
not maintain its own pool on top.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from services.api.config import settings


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    ``postgresql://`` URLs are rewritten to the asyncpg driver. Any other
    URL (e.g. ``sqlite+aiosqlite://`` for local tooling) is used as given.
    """
    url = database_url or settings.database_url
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return create_async_engine(
            url,
            poolclass=NullPool,
            echo=settings.debug and settings.environment == "development",
        )
    return create_async_engine(url, echo=settings.debug and settings.environment == "development")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: merged records are serialised after commit,
    # a lazy load on a returned connection would fail.
    return async_sessionmaker(engine, expire_on_commit=False)
