"""
Type definitions for jobflow.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobflow.types.api import (
    CreateJobRequest,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
)
from jobflow.types.events import JobEvent
from jobflow.types.job import (
    JobContext,
    JobResult,
    JobState,
    JobStats,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "JobResponse",
    "JobListResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobState",
    "JobResult",
    "JobContext",
    "JobStats",
    # Event types
    "JobEvent",
]
