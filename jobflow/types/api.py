"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from jobflow.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    MAX_JOB_NAME_LENGTH,
    MAX_PRIORITY,
    MAX_RETRIES_LIMIT,
    MIN_PRIORITY,
    JobStatus,
    JobType,
)
from jobflow.types.job import JobState


class CreateJobRequest(BaseModel):
    """Request body for creating a new job."""

    name: str = Field(..., min_length=1, max_length=MAX_JOB_NAME_LENGTH, description="Job name")
    type: JobType = Field(..., description="Job type")
    priority: int = Field(
        default=DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY, description="Job priority"
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES, ge=0, le=MAX_RETRIES_LIMIT, description="Maximum retries"
    )

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Job name is required")
        return value


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    name: str
    type: JobType
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error_message: str | None
    retry_count: int
    max_retries: int
    worker_id: str | None
    created_at: datetime | None
    updated_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    execution_time_ms: float | None

    @classmethod
    def from_state(cls, job: JobState) -> "JobResponse":
        return cls(
            id=job.id,
            name=job.name,
            type=job.type,
            status=job.status,
            priority=job.priority,
            payload=job.payload,
            result=job.result,
            error_message=job.error_message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            worker_id=job.worker_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            execution_time_ms=job.execution_time_ms,
        )


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    idempotency_guard: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
    field_errors: dict[str, str] | None = None
