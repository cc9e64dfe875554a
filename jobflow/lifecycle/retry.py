"""
Retry / dead-letter decisions for failed jobs.

A failed job is either requeued with exponential backoff or moved to the
dead-letter channel once its retries are exhausted:

    delay = min(base_delay * multiplier ** retry_count, max_delay)

The requeue is published immediately as a request event carrying
`available_at = now + delay`; executors do not run it before that instant,
so the delay survives restarts of the deciding process.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from jobflow.channel.base import EventChannel
from jobflow.config import Settings
from jobflow.constants import SPAN_DECIDE_RETRY, EventType, JobStatus
from jobflow.db.store import JobStore
from jobflow.idempotency.base import IdempotencyGuard
from jobflow.lifecycle.state_machine import transition
from jobflow.observability.metrics import MetricsCollector, get_metrics
from jobflow.observability.tracing import get_tracer
from jobflow.types.events import JobEvent
from jobflow.types.job import JobState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters."""

    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            multiplier=settings.retry_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before the attempt that follows `retry_count` earlier retries."""
        return min(
            self.base_delay_seconds * self.multiplier**retry_count,
            self.max_delay_seconds,
        )


class RetryAction(StrEnum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    retry_count: int
    delay_seconds: float = 0.0


def decide(job: JobState, policy: RetryPolicy) -> RetryDecision:
    """
    Decide what happens to a FAILED job.

    Args:
        job: The failed job.
        policy: Backoff parameters.

    Returns:
        RETRY with the incremented retry count and its delay while
        retry_count < max_retries, DEAD_LETTER otherwise.
    """
    if job.status != JobStatus.FAILED:
        raise ValueError(f"Retry decisions apply to FAILED jobs, got {job.status}")

    if job.can_retry:
        return RetryDecision(
            action=RetryAction.RETRY,
            retry_count=job.retry_count + 1,
            delay_seconds=policy.backoff_seconds(job.retry_count),
        )
    return RetryDecision(action=RetryAction.DEAD_LETTER, retry_count=job.retry_count)


class RetryDecisionEngine:
    """
    Applies retry decisions: guard bookkeeping, event publication and persistence.

    Publication happens before the store write. If the process dies in between,
    the failed status event is redelivered, the job is still FAILED, and the
    decision is made again; the worst case is a duplicate notification, never
    a lost one.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        channel: EventChannel,
        guard: IdempotencyGuard,
        policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._settings = settings
        self._store = store
        self._channel = channel
        self._guard = guard
        self.policy = policy or RetryPolicy.from_settings(settings)
        self._metrics = metrics or get_metrics()

    async def handle_failure(self, job: JobState, now: datetime) -> JobState:
        """
        Requeue or dead-letter a FAILED job.

        Args:
            job: The job as currently stored, in FAILED status.
            now: Decision timestamp.

        Returns:
            The persisted job, PENDING (requeued) or DEAD_LETTER.

        Raises:
            GuardUnavailableError: Claim could not be updated; nothing was published.
            TransportError: The event could not be published; nothing was saved.
            StaleJobStateError: Another writer changed the job first.
        """
        decision = decide(job, self.policy)

        with get_tracer().start_as_current_span(SPAN_DECIDE_RETRY) as span:
            span.set_attribute("job.id", str(job.id))
            span.set_attribute("job.retry_count", job.retry_count)
            span.set_attribute("retry.action", decision.action.value)

            if decision.action == RetryAction.RETRY:
                return await self._requeue(job, decision, now)
            return await self._dead_letter(job, now)

    async def _requeue(self, job: JobState, decision: RetryDecision, now: datetime) -> JobState:
        # Release the claim so the next attempt can acquire it
        await self._guard.mark_failed(job.id, release=True)

        requeued = transition(
            job, EventType.RETRY, now=now, retry_count=decision.retry_count
        ).state
        available_at = now + timedelta(seconds=decision.delay_seconds)
        event = JobEvent.job_request(requeued, EventType.RETRY, available_at=available_at)
        await self._channel.publish(self._settings.topic_requests, event.key, event)

        saved = await self._store.save(requeued)
        self._metrics.record_retry_scheduled(job.type.value)
        logger.info(
            "Retry scheduled",
            extra={
                "job_id": str(job.id),
                "retry_count": decision.retry_count,
                "max_retries": job.max_retries,
                "delay_seconds": decision.delay_seconds,
                "available_at": available_at.isoformat(),
            },
        )
        return saved

    async def _dead_letter(self, job: JobState, now: datetime) -> JobState:
        # Keep the claim so stray duplicates of the last request stay suppressed
        await self._guard.mark_failed(job.id, release=False)

        dead = transition(job, EventType.DEAD_LETTER, now=now).state
        event = JobEvent.from_job(dead, EventType.DEAD_LETTER)
        await self._channel.publish(self._settings.topic_dlq, event.key, event)

        saved = await self._store.save(dead)
        self._metrics.record_dead_lettered(job.type.value)
        logger.warning(
            "Job moved to dead letter",
            extra={
                "job_id": str(job.id),
                "retry_count": job.retry_count,
                "error_message": job.error_message,
            },
        )
        return saved
