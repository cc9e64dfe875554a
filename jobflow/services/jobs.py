"""
Job service: the operations behind the HTTP API.

Creation writes the job and publishes its request event. Cancellation is the
one state change made outside the reconciler; it first takes the job's
idempotency claim so no worker can start it afterwards.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from jobflow.channel.base import EventChannel
from jobflow.config import Settings
from jobflow.constants import SPAN_SUBMIT_JOB, EventType, JobStatus, JobType
from jobflow.db.store import JobStore
from jobflow.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    StaleJobStateError,
    TransportError,
)
from jobflow.idempotency.base import IdempotencyGuard
from jobflow.lifecycle.state_machine import transition
from jobflow.observability.metrics import MetricsCollector, get_metrics
from jobflow.observability.tracing import get_tracer
from jobflow.types.api import CreateJobRequest
from jobflow.types.events import JobEvent, utcnow
from jobflow.types.job import JobState, JobStats

logger = logging.getLogger(__name__)


class JobService:
    """Creates, queries and cancels jobs."""

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        channel: EventChannel,
        guard: IdempotencyGuard,
        metrics: MetricsCollector | None = None,
    ):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.guard = guard
        self.metrics = metrics or get_metrics()

    async def create(self, request: CreateJobRequest | dict[str, Any]) -> JobState:
        """
        Create a PENDING job and publish its request event.

        Args:
            request: Validated request, or a raw mapping to validate.

        Returns:
            The stored job.

        Raises:
            JobValidationError: The request is malformed; nothing was stored.
            TransportError: The request event could not be published. The stored
                job is closed as CANCELLED so it does not linger PENDING.
        """
        if not isinstance(request, CreateJobRequest):
            try:
                request = CreateJobRequest.model_validate(request)
            except ValidationError as e:
                field_errors = {
                    ".".join(str(part) for part in err["loc"]): err["msg"]
                    for err in e.errors()
                }
                raise JobValidationError("Invalid job request", field_errors) from e

        with get_tracer().start_as_current_span(SPAN_SUBMIT_JOB) as span:
            job = await self.store.create(
                name=request.name,
                job_type=request.type,
                priority=request.priority,
                payload=request.payload,
                max_retries=request.max_retries,
            )
            span.set_attribute("job.id", str(job.id))
            span.set_attribute("job.type", job.type.value)

            event = JobEvent.job_request(job)
            try:
                await self.channel.publish(self.settings.topic_requests, event.key, event)
            except TransportError:
                logger.error(
                    "Failed to publish job request",
                    extra={"job_id": str(job.id)},
                    exc_info=True,
                )
                closed = transition(
                    job,
                    EventType.CANCELLED,
                    now=utcnow(),
                    error_message="Job request could not be published",
                ).state
                await self.store.save(closed)
                raise

        self.metrics.record_job_submitted(job.type.value, job.priority)
        logger.info(
            "Job created",
            extra={
                "job_id": str(job.id),
                "job_type": job.type.value,
                "priority": job.priority,
                "max_retries": job.max_retries,
            },
        )
        return job

    async def get(self, job_id: UUID) -> JobState:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[JobState], int]:
        """List jobs newest first. Returns (jobs, total)."""
        return await self.store.list(
            status=status,
            job_type=job_type,
            limit=page_size,
            offset=(page - 1) * page_size,
        )

    async def search(
        self,
        name: str,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[JobState], int]:
        """Case-insensitive search on job names. Returns (jobs, total)."""
        return await self.store.search(name, limit=page_size, offset=(page - 1) * page_size)

    async def stats(self) -> JobStats:
        return await self.store.stats()

    async def cancel(self, job_id: UUID) -> JobState:
        """
        Cancel a job that no worker has picked up yet.

        Steps:
        1. Reject unless the job is PENDING
        2. Take the idempotency claim; if a worker holds it the job is already dispatched
        3. Mark the claim failed so later deliveries of the request are skipped
        4. Store CANCELLED with a version check
        5. Publish a cancelled status event

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: The job is not PENDING or was dispatched meanwhile.
            GuardUnavailableError: The claim could not be taken; nothing changed.
        """
        job = await self.get(job_id)
        if not job.is_cancellable:
            raise InvalidTransitionError(job.id, job.status, "cancelled")

        if not await self.guard.try_acquire(job.id):
            raise InvalidTransitionError(job.id, JobStatus.RUNNING, "cancelled")
        await self.guard.mark_failed(job.id, release=False)

        cancelled = transition(job, EventType.CANCELLED, now=utcnow()).state
        try:
            saved = await self.store.save(cancelled)
        except StaleJobStateError:
            await self.guard.release(job.id)
            current = await self.get(job_id)
            raise InvalidTransitionError(job.id, current.status, "cancelled") from None

        event = JobEvent.from_job(saved, EventType.CANCELLED)
        try:
            await self.channel.publish(self.settings.topic_status, event.key, event)
        except TransportError:
            # The store already holds CANCELLED; the event is a notification only
            logger.warning(
                "Failed to publish cancellation event",
                extra={"job_id": str(job.id)},
                exc_info=True,
            )

        self.metrics.record_job_finished(saved.type.value, saved.status.value)
        logger.info("Job cancelled", extra={"job_id": str(job.id)})
        return saved
