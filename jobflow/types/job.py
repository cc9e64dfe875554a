"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobflow.constants import TERMINAL_STATUSES, JobStatus, JobType


@dataclass(frozen=True)
class JobState:
    """
    Immutable snapshot of a persisted job.

    Lifecycle functions never mutate a JobState; they return a new one with
    dataclasses.replace. `version` is the store's optimistic concurrency token.
    """

    id: UUID
    name: str
    type: JobType
    status: JobStatus
    priority: int
    max_retries: int
    retry_count: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    worker_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_cancellable(self) -> bool:
        return self.status == JobStatus.PENDING

    @property
    def can_retry(self) -> bool:
        """Check if a failed job has retries left."""
        return self.status == JobStatus.FAILED and self.retry_count < self.max_retries

    @property
    def execution_time_ms(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the opaque payload for the handler.
    """

    job_id: UUID
    job_type: JobType
    name: str
    attempt: int
    max_retries: int
    payload: dict[str, Any]
    worker_id: str

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure of this attempt goes to the dead-letter channel."""
        return self.attempt > self.max_retries

    @property
    def remaining_retries(self) -> int:
        """Get remaining retries after this attempt."""
        return max(0, self.max_retries - (self.attempt - 1))


class JobStats(BaseModel):
    """Counts per status plus the average execution time of completed jobs."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    dead_letter: int = 0
    avg_execution_time_ms: float = 0.0

    @classmethod
    def from_counts(
        cls,
        counts: dict[JobStatus, int],
        avg_execution_time_ms: float | None,
    ) -> "JobStats":
        return cls(
            total=sum(counts.values()),
            pending=counts.get(JobStatus.PENDING, 0),
            running=counts.get(JobStatus.RUNNING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            cancelled=counts.get(JobStatus.CANCELLED, 0),
            dead_letter=counts.get(JobStatus.DEAD_LETTER, 0),
            avg_execution_time_ms=avg_execution_time_ms or 0.0,
        )
