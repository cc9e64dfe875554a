"""
Exception hierarchy for jobflow.

JobFlowError
├── JobValidationError     : malformed submission, rejected before a job exists
├── JobNotFoundError       : job id unknown to the store
├── InvalidTransitionError : operation not legal in the job's current status
├── StaleJobStateError     : optimistic version check lost against another writer
├── JobExecutionError      : a handler failed; recovered through retry/dead-letter
├── UnknownJobTypeError    : no handler registered for a job type (configuration)
├── TransportError         : event channel unavailable or publish failed
└── GuardUnavailableError  : idempotency store unreachable; claim state unknown
"""

from __future__ import annotations

from uuid import UUID


class JobFlowError(Exception):
    """Base class for all jobflow exceptions."""


class JobValidationError(JobFlowError):
    """Raised when a job submission is malformed."""

    def __init__(self, message: str, field_errors: dict[str, str] | None = None) -> None:
        self.field_errors = field_errors or {}
        super().__init__(message)


class JobNotFoundError(JobFlowError):
    """Raised when a job id is not present in the store."""

    def __init__(self, job_id: UUID) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransitionError(JobFlowError):
    """Raised when an operation is requested that the job's status forbids."""

    def __init__(self, job_id: UUID, status: str, operation: str) -> None:
        self.job_id = job_id
        self.status = status
        self.operation = operation
        super().__init__(f"Job {job_id} cannot be {operation} in status: {status}")


class StaleJobStateError(JobFlowError):
    """
    Raised when a conditional write is rejected because the stored version moved.

    The caller should re-read the job and retry, or let the event be redelivered.
    """

    def __init__(self, job_id: UUID, expected_version: int) -> None:
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(f"Job {job_id} changed since version {expected_version}")


class JobExecutionError(JobFlowError):
    """Raised by handlers to report a failed execution attempt."""


class UnknownJobTypeError(JobFlowError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class TransportError(JobFlowError):
    """
    Wraps an underlying event channel failure.

    Attributes
    ----------
    cause : Exception | None
        The original exception from the transport client, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}" if cause is not None else message)


class GuardUnavailableError(JobFlowError):
    """Raised when the idempotency store cannot be reached."""

    def __init__(self, job_id: UUID, cause: Exception) -> None:
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"Idempotency guard unavailable for job {job_id}: {cause}")
