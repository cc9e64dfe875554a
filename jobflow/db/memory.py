"""
InMemoryJobStore: asyncio.Lock-based JobStore for tests and development.

Applies the same version check as SqlJobStore. Safe for multiple concurrent
coroutines in a single event loop. NOT safe across processes or threads.
"""

from __future__ import annotations

import asyncio
import statistics
from dataclasses import replace
from typing import Any
from uuid import UUID, uuid4

from jobflow.constants import JobStatus, JobType
from jobflow.errors import JobNotFoundError, StaleJobStateError
from jobflow.types.events import utcnow
from jobflow.types.job import JobState, JobStats


class InMemoryJobStore:
    """In-process job store keyed by job id."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, JobState] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        name: str,
        job_type: JobType,
        priority: int,
        payload: dict[str, Any],
        max_retries: int,
    ) -> JobState:
        now = utcnow()
        job = JobState(
            id=uuid4(),
            name=name,
            type=job_type,
            status=JobStatus.PENDING,
            priority=priority,
            max_retries=max_retries,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._jobs[job.id] = job
        return job

    async def get(self, job_id: UUID) -> JobState | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def save(self, state: JobState) -> JobState:
        async with self._lock:
            current = self._jobs.get(state.id)
            if current is None:
                raise JobNotFoundError(state.id)
            if current.version != state.version:
                raise StaleJobStateError(state.id, state.version)
            saved = replace(state, version=state.version + 1)
            self._jobs[state.id] = saved
            return saved

    def _newest_first(self) -> list[JobState]:
        return sorted(
            self._jobs.values(),
            key=lambda job: job.created_at or utcnow(),
            reverse=True,
        )

    async def list(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobState], int]:
        async with self._lock:
            matches = [
                job for job in self._newest_first()
                if (status is None or job.status == status)
                and (job_type is None or job.type == job_type)
            ]
        return matches[offset:offset + limit], len(matches)

    async def search(
        self,
        name: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobState], int]:
        needle = name.lower()
        async with self._lock:
            matches = [job for job in self._newest_first() if needle in job.name.lower()]
        return matches[offset:offset + limit], len(matches)

    async def stats(self) -> JobStats:
        async with self._lock:
            jobs = list(self._jobs.values())

        counts: dict[JobStatus, int] = {}
        for job in jobs:
            counts[job.status] = counts.get(job.status, 0) + 1

        durations = [
            job.execution_time_ms
            for job in jobs
            if job.status == JobStatus.COMPLETED and job.execution_time_ms is not None
        ]
        avg_ms = statistics.fmean(durations) if durations else None
        return JobStats.from_counts(counts, avg_ms)

    async def ping(self) -> bool:
        return True
