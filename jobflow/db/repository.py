"""
Job repository for database operations.
Implements the data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.constants import JobStatus, JobType
from jobflow.db.models import Job
from jobflow.types.job import JobState

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Implements:
    - Job creation
    - Lookup, filtered listing and name search
    - Conditional state writes guarded by the version column
    - Aggregate statistics
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        name: str,
        job_type: JobType,
        priority: int,
        payload: dict[str, Any],
        max_retries: int,
        now: datetime,
    ) -> Job:
        """
        Insert a new PENDING job.

        Args:
            name: Human-readable job name.
            job_type: Job type, selects the handler.
            priority: 1 (lowest) to 10 (highest).
            payload: Opaque handler input.
            max_retries: Retries allowed after the first attempt.
            now: Creation timestamp.

        Returns:
            The created Job.
        """
        job = Job(
            name=name,
            type=job_type,
            status=JobStatus.PENDING,
            priority=priority,
            payload=payload,
            retry_count=0,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
            version=0,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": str(job.id), "job_type": job_type.value},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs, newest first, with optional filtering.

        Args:
            status: Optional status filter.
            job_type: Optional type filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if status is not None:
            filters.append(Job.status == status)
        if job_type is not None:
            filters.append(Job.type == job_type)
        return await self._page(filters, limit, offset)

    async def search_jobs(
        self,
        name: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        Case-insensitive substring search on the job name.

        Returns:
            Tuple of (jobs, total_count).
        """
        return await self._page([Job.name.ilike(f"%{name}%")], limit, offset)

    async def _page(
        self,
        filters: list[Any],
        limit: int,
        offset: int,
    ) -> tuple[Sequence[Job], int]:
        where = and_(*filters) if filters else None

        count_stmt = select(func.count()).select_from(Job)
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit).offset(offset)
        if where is not None:
            count_stmt = count_stmt.where(where)
            stmt = stmt.where(where)

        total = (await self._session.execute(count_stmt)).scalar() or 0
        jobs = (await self._session.execute(stmt)).scalars().all()
        return jobs, total

    async def update_job(self, state: JobState) -> Job | None:
        """
        Write a job state if the stored version still equals state.version.

        Args:
            state: The new state; its version is the one it was derived from.

        Returns:
            The updated Job with version incremented, or None if the row is
            missing or was changed by another writer.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == state.id,
                    Job.version == state.version,
                )
            )
            .values(
                status=state.status,
                retry_count=state.retry_count,
                result=state.result,
                error_message=state.error_message,
                worker_id=state.worker_id,
                updated_at=state.updated_at,
                started_at=state.started_at,
                completed_at=state.completed_at,
                version=Job.version + 1,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is not None:
            logger.debug(
                "Job state written",
                extra={
                    "job_id": str(state.id),
                    "status": state.status.value,
                    "version": job.version,
                },
            )
        return job

    async def count_by_status(self) -> dict[JobStatus, int]:
        stmt = select(Job.status, func.count()).group_by(Job.status)
        result = await self._session.execute(stmt)
        return {JobStatus(status): count for status, count in result.all()}

    async def average_execution_time_ms(self) -> float | None:
        """Average completed_at - started_at over COMPLETED jobs, in milliseconds."""
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            duration_ms = func.extract("epoch", Job.completed_at - Job.started_at) * 1000
        else:
            duration_ms = (
                func.julianday(Job.completed_at) - func.julianday(Job.started_at)
            ) * 86400000.0

        stmt = select(func.avg(duration_ms)).where(
            and_(
                Job.status == JobStatus.COMPLETED,
                Job.started_at.is_not(None),
                Job.completed_at.is_not(None),
            )
        )
        value = (await self._session.execute(stmt)).scalar()
        return float(value) if value is not None else None
