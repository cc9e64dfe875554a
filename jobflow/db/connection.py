"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobflow.config import Settings
from jobflow.db.models import Base
from jobflow.db.store import SqlJobStore

logger = logging.getLogger(__name__)


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async database engine.

    Pool sizing only applies to server databases; SQLite URLs get the
    dialect's default pool.

    Args:
        settings: Provides the database URL and pool sizes.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    options: dict[str, object] = {
        "echo": settings.log_level == "DEBUG",
        "pool_pre_ping": True,
    }
    if not settings.database_url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class Database:
    """
    Owns one engine and its session factory.

    Created once per process at startup and closed on shutdown.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = create_session_factory(engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        database = cls(create_engine(settings))
        logger.info("Database connection initialized")
        return database

    def job_store(self) -> SqlJobStore:
        return SqlJobStore(self.session_factory)

    async def create_all(self) -> None:
        """Create tables directly; development and tests only, deployments use Alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a transactional session.

        Yields:
            AsyncSession: Committed on exit, rolled back on error.
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
