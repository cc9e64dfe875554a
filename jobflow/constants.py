"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (worker started the attempt)
    - RUNNING -> COMPLETED (success)
    - RUNNING -> FAILED (handler failure)
    - FAILED -> PENDING (retry requeued)
    - FAILED -> DEAD_LETTER (retries exhausted)
    - PENDING -> CANCELLED (cancelled before dispatch)
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    DEAD_LETTER = "DEAD_LETTER"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.DEAD_LETTER}
)


class JobType(StrEnum):
    """Kinds of work a job can carry. Each one needs a registered handler."""

    PROCESS_DATA = "PROCESS_DATA"
    SEND_EMAIL = "SEND_EMAIL"
    GENERATE_REPORT = "GENERATE_REPORT"
    SYNC_DATA = "SYNC_DATA"


class EventType(StrEnum):
    """Event types carried on the request, status and dead-letter channels."""

    CREATED = "job.created"
    STARTED = "job.started"
    COMPLETED = "job.completed"
    FAILED = "job.failed"
    RETRY = "job.retry"
    DEAD_LETTER = "job.dead_letter"
    CANCELLED = "job.cancelled"


class IdempotencyState(StrEnum):
    """Values held by an idempotency claim."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Default values
DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
MAX_JOB_NAME_LENGTH = 255

# API constants
API_JOBS_PREFIX = "/api/jobs"

# Metrics names
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_DUPLICATES_SKIPPED = "job_duplicate_deliveries_total"
METRIC_RETRIES_SCHEDULED = "job_retries_scheduled_total"
METRIC_DEAD_LETTERED = "jobs_dead_lettered_total"
METRIC_EVENTS_RECONCILED = "job_events_reconciled_total"
METRIC_STATE_CONFLICTS = "job_state_conflicts_total"
METRIC_STALE_WRITES = "job_stale_writes_total"
METRIC_GUARD_UNAVAILABLE = "idempotency_guard_unavailable_total"
METRIC_POISON_EVENTS = "job_poison_events_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_duration_seconds"
METRIC_IN_FLIGHT = "job_deliveries_in_flight"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RECONCILE_EVENT = "reconcile_event"
SPAN_DECIDE_RETRY = "decide_retry"
