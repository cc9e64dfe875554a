"""
Job state machine.

`transition` is a pure function: it never mutates the JobState it is given and
never touches the store or the channel. Callers persist the returned state
with an optimistic version check.

    PENDING --started--> RUNNING --completed--> COMPLETED
       |                    |
       |                    +--failed--> FAILED --retry--> PENDING
       |                                   |
       +--cancelled--> CANCELLED           +--dead_letter--> DEAD_LETTER
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from jobflow.constants import EventType, JobStatus
from jobflow.errors import InvalidTransitionError
from jobflow.types.job import JobState

logger = logging.getLogger(__name__)

TRANSITIONS: dict[tuple[JobStatus, EventType], JobStatus] = {
    (JobStatus.PENDING, EventType.STARTED): JobStatus.RUNNING,
    (JobStatus.RUNNING, EventType.COMPLETED): JobStatus.COMPLETED,
    (JobStatus.RUNNING, EventType.FAILED): JobStatus.FAILED,
    (JobStatus.FAILED, EventType.RETRY): JobStatus.PENDING,
    (JobStatus.FAILED, EventType.DEAD_LETTER): JobStatus.DEAD_LETTER,
    (JobStatus.PENDING, EventType.CANCELLED): JobStatus.CANCELLED,
}


class TransitionOutcome(StrEnum):
    """How an event was treated by the state machine."""

    APPLIED = "applied"
    NO_OP_TERMINAL = "no_op_terminal"
    NO_OP_STALE = "no_op_stale"


@dataclass(frozen=True)
class Transition:
    """Result of applying one event to one job."""

    state: JobState
    outcome: TransitionOutcome
    previous_status: JobStatus

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


def transition(
    job: JobState,
    event_type: EventType,
    *,
    now: datetime,
    worker_id: str | None = None,
    result: dict[str, Any] | None = None,
    error_message: str | None = None,
    retry_count: int | None = None,
) -> Transition:
    """
    Apply an event to a job and return the resulting state.

    Args:
        job: Current job snapshot.
        event_type: The triggering event.
        now: Timestamp recorded for the transition.
        worker_id: Executor that emitted the event (started/completed/failed).
        result: Handler output (completed).
        error_message: Failure reason (failed), or why a job was closed.
        retry_count: New retry count, already incremented by the retry engine (retry).

    Returns:
        Transition with the new state, or the unchanged state for no-ops.

    Raises:
        InvalidTransitionError: If cancellation is requested for a non-PENDING
            job, or a retry would exceed max_retries.
    """
    if job.is_terminal:
        if event_type == EventType.CANCELLED and job.status != JobStatus.CANCELLED:
            raise InvalidTransitionError(job.id, job.status, "cancelled")
        return Transition(job, TransitionOutcome.NO_OP_TERMINAL, job.status)

    target = TRANSITIONS.get((job.status, event_type))
    if target is None:
        if event_type == EventType.CANCELLED:
            raise InvalidTransitionError(job.id, job.status, "cancelled")
        return Transition(job, TransitionOutcome.NO_OP_STALE, job.status)

    if event_type == EventType.STARTED:
        new_state = replace(
            job,
            status=target,
            worker_id=worker_id,
            started_at=now,
            completed_at=None,
            result=None,
            updated_at=now,
        )
    elif event_type == EventType.COMPLETED:
        new_state = replace(
            job,
            status=target,
            result=result,
            worker_id=worker_id or job.worker_id,
            completed_at=now,
            updated_at=now,
        )
    elif event_type == EventType.FAILED:
        new_state = replace(
            job,
            status=target,
            error_message=error_message,
            worker_id=worker_id or job.worker_id,
            updated_at=now,
        )
    elif event_type == EventType.RETRY:
        new_retry_count = job.retry_count + 1 if retry_count is None else retry_count
        if new_retry_count > job.max_retries:
            raise InvalidTransitionError(job.id, job.status, "retried")
        new_state = replace(
            job,
            status=target,
            retry_count=new_retry_count,
            started_at=None,
            updated_at=now,
        )
    else:
        # DEAD_LETTER and CANCELLED both close the job
        new_state = replace(
            job,
            status=target,
            error_message=error_message or job.error_message,
            completed_at=now,
            updated_at=now,
        )

    return Transition(new_state, TransitionOutcome.APPLIED, job.status)
