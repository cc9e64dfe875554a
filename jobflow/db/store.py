"""
JobStore: persistence port used by the service, reconciler and retry engine.

Write contract
--------------
save(state)
  - conditional on the stored version equalling state.version
  - succeeds → returns the state as stored, version incremented
  - fails    → raises StaleJobStateError (another writer got there first)
               or JobNotFoundError (no such job)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.constants import JobStatus, JobType
from jobflow.db.repository import JobRepository
from jobflow.errors import JobNotFoundError, StaleJobStateError
from jobflow.types.events import utcnow
from jobflow.types.job import JobState, JobStats

logger = logging.getLogger(__name__)


@runtime_checkable
class JobStore(Protocol):
    """
    Authoritative job storage.

    Implementing adapters (built-in):
      - SqlJobStore     : SQLAlchemy async sessions (PostgreSQL, SQLite)
      - InMemoryJobStore: dict + asyncio.Lock, for tests and single-process runs
    """

    async def create(
        self,
        name: str,
        job_type: JobType,
        priority: int,
        payload: dict[str, Any],
        max_retries: int,
    ) -> JobState: ...

    async def get(self, job_id: UUID) -> JobState | None: ...

    async def save(self, state: JobState) -> JobState: ...

    async def list(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobState], int]: ...

    async def search(
        self,
        name: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobState], int]: ...

    async def stats(self) -> JobStats: ...

    async def ping(self) -> bool: ...


class SqlJobStore:
    """JobStore on a SQLAlchemy async session factory; one transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _repository(self) -> AsyncIterator[JobRepository]:
        async with self._session_factory() as session:
            try:
                yield JobRepository(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create(
        self,
        name: str,
        job_type: JobType,
        priority: int,
        payload: dict[str, Any],
        max_retries: int,
    ) -> JobState:
        async with self._repository() as repo:
            job = await repo.create_job(
                name=name,
                job_type=job_type,
                priority=priority,
                payload=payload,
                max_retries=max_retries,
                now=utcnow(),
            )
            return job.to_state()

    async def get(self, job_id: UUID) -> JobState | None:
        async with self._repository() as repo:
            job = await repo.get_job(job_id)
            return job.to_state() if job is not None else None

    async def save(self, state: JobState) -> JobState:
        async with self._repository() as repo:
            job = await repo.update_job(state)
            if job is not None:
                return job.to_state()
            if await repo.get_job(state.id) is None:
                raise JobNotFoundError(state.id)
            raise StaleJobStateError(state.id, state.version)

    async def list(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobState], int]:
        async with self._repository() as repo:
            jobs, total = await repo.list_jobs(status, job_type, limit, offset)
            return [job.to_state() for job in jobs], total

    async def search(
        self,
        name: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobState], int]:
        async with self._repository() as repo:
            jobs, total = await repo.search_jobs(name, limit, offset)
            return [job.to_state() for job in jobs], total

    async def stats(self) -> JobStats:
        async with self._repository() as repo:
            counts = await repo.count_by_status()
            avg_ms = await repo.average_execution_time_ms()
            return JobStats.from_counts(counts, avg_ms)

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True
