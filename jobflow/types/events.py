"""
Event type definitions for the request, status and dead-letter channels.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobflow.constants import EventType, JobStatus, JobType
from jobflow.types.job import JobState

# Status a job is reported in when an event of the given type is emitted
_EVENT_STATUS: dict[EventType, JobStatus] = {
    EventType.CREATED: JobStatus.PENDING,
    EventType.RETRY: JobStatus.PENDING,
    EventType.STARTED: JobStatus.RUNNING,
    EventType.COMPLETED: JobStatus.COMPLETED,
    EventType.FAILED: JobStatus.FAILED,
    EventType.DEAD_LETTER: JobStatus.DEAD_LETTER,
    EventType.CANCELLED: JobStatus.CANCELLED,
}


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobEvent(BaseModel):
    """
    Event describing a job request or a job status change.

    Carries the full job description so a consumer never needs a side lookup
    to act on it. Always published keyed by job_id.
    """

    job_id: UUID
    name: str
    type: JobType
    status: JobStatus
    event_type: EventType
    priority: int = 5
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    worker_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    available_at: datetime | None = None

    @property
    def key(self) -> str:
        """Partition key: every event of one job lands on the same partition."""
        return str(self.job_id)

    @property
    def is_request(self) -> bool:
        return self.event_type in (EventType.CREATED, EventType.RETRY)

    @classmethod
    def job_request(
        cls,
        job: JobState,
        event_type: EventType = EventType.CREATED,
        available_at: datetime | None = None,
    ) -> "JobEvent":
        """Create a request event asking workers to execute the job."""
        return cls(
            job_id=job.id,
            name=job.name,
            type=job.type,
            status=_EVENT_STATUS[event_type],
            event_type=event_type,
            priority=job.priority,
            payload=job.payload,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            available_at=available_at,
        )

    @classmethod
    def from_job(cls, job: JobState, event_type: EventType) -> "JobEvent":
        """Create a status event describing the stored job."""
        return cls(
            job_id=job.id,
            name=job.name,
            type=job.type,
            status=_EVENT_STATUS[event_type],
            event_type=event_type,
            priority=job.priority,
            payload=job.payload,
            result=job.result,
            error_message=job.error_message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            worker_id=job.worker_id,
        )

    def to_status_update(
        self,
        event_type: EventType,
        worker_id: str,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> "JobEvent":
        """Derive a worker status event from the request event being processed."""
        return self.model_copy(
            update={
                "status": _EVENT_STATUS[event_type],
                "event_type": event_type,
                "worker_id": worker_id,
                "result": result,
                "error_message": error_message,
                "timestamp": utcnow(),
                "available_at": None,
            }
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "JobEvent":
        return cls.model_validate_json(data)
