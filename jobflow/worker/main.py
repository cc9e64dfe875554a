"""
Worker process for executing jobs.

The worker consumes request events, claims each job through the idempotency
guard, runs its handler and reports the outcome on the status channel. It
never writes the job store; the status reconciler owns job state.
"""

import asyncio
import logging
import os
import signal
import time

from jobflow.channel import EventConsumer, create_event_channel
from jobflow.channel.base import EventChannel
from jobflow.config import Settings, get_settings
from jobflow.constants import SPAN_EXECUTE_JOB, EventType
from jobflow.errors import GuardUnavailableError, TransportError
from jobflow.idempotency import create_idempotency_guard
from jobflow.idempotency.base import IdempotencyGuard
from jobflow.observability.logging import setup_logging
from jobflow.observability.metrics import MetricsCollector, get_metrics, start_metrics_server
from jobflow.observability.tracing import get_tracer, setup_tracing
from jobflow.types.events import JobEvent, utcnow
from jobflow.types.job import JobContext
from jobflow.worker.handlers import JobDispatcher

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{os.uname().nodename}-{os.getpid()}"


class Worker:
    """
    Job worker consuming the request channel.

    Features:
    - Duplicate suppression through the idempotency guard
    - Consumer-group concurrency (one subscription per slot)
    - Delayed retries honored through the request's available_at
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        settings: Settings,
        channel: EventChannel,
        guard: IdempotencyGuard,
        dispatcher: JobDispatcher | None = None,
        worker_id: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            settings: Topic names, group id and concurrency.
            channel: Event channel for requests and status events.
            guard: Idempotency guard shared by all workers.
            dispatcher: Handler dispatcher; the built-in handlers by default.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            metrics: Metrics collector, the process-wide one by default.
        """
        self.settings = settings
        self.channel = channel
        self.guard = guard
        self.dispatcher = dispatcher or JobDispatcher()
        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self._metrics = metrics or get_metrics()

        self.consumer = EventConsumer(
            channel,
            settings.topic_requests,
            settings.worker_group_id,
            self.handle_request,
            name="worker",
            dlq_topic=settings.topic_dlq,
            concurrency=settings.worker_concurrency,
            max_redeliveries=settings.max_redeliveries,
            redelivery_backoff_seconds=settings.redelivery_backoff_seconds,
            metrics=self._metrics,
        )

    async def start(self) -> None:
        """Consume requests until stop() is called."""
        self.dispatcher.validate()
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.settings.worker_concurrency,
                "job_types": [t.value for t in self.dispatcher.handlers.job_types()],
            },
        )
        await self.consumer.run()
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully, letting in-flight jobs finish."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        await self.consumer.stop()

    async def handle_request(self, event: JobEvent) -> None:
        """
        Execute one request event.

        Returns normally when the event is settled (executed, or skipped as a
        duplicate). Raises when it must be redelivered.
        """
        if not event.is_request:
            logger.warning(
                "Ignoring non-request event on request channel",
                extra={"job_id": event.key, "event_type": event.event_type.value},
            )
            return

        await self._wait_until_available(event)

        if not await self.guard.try_acquire(event.job_id):
            self._metrics.record_duplicate_skipped(event.type.value)
            logger.info(
                "Duplicate delivery skipped",
                extra={"job_id": event.key, "retry_count": event.retry_count},
            )
            return

        try:
            await self._publish_status(event.to_status_update(EventType.STARTED, self.worker_id))
            status_event = await self._execute(event)
            await self._publish_status(status_event)
        except BaseException:
            # Give the claim back so the redelivered request can run
            await self._release_claim(event)
            raise

        if status_event.event_type == EventType.COMPLETED:
            await self._mark_completed(event)

    async def _wait_until_available(self, event: JobEvent) -> None:
        if event.available_at is None:
            return
        delay = (event.available_at - utcnow()).total_seconds()
        if delay > 0:
            logger.debug(
                "Waiting for retry backoff",
                extra={"job_id": event.key, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)

    async def _execute(self, event: JobEvent) -> JobEvent:
        context = JobContext(
            job_id=event.job_id,
            job_type=event.type,
            name=event.name,
            attempt=event.retry_count + 1,
            max_retries=event.max_retries,
            payload=event.payload,
            worker_id=self.worker_id,
        )

        logger.info(
            "Executing job",
            extra={
                "job_id": event.key,
                "job_type": event.type.value,
                "attempt": context.attempt,
            },
        )

        start = time.perf_counter()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job.id", event.key)
            span.set_attribute("job.type", event.type.value)
            span.set_attribute("job.attempt", context.attempt)
            result = await self.dispatcher.dispatch(context)
            span.set_attribute("job.success", result.success)
        duration = time.perf_counter() - start

        outcome = "success" if result.success else "failure"
        self._metrics.record_job_executed(event.type.value, outcome, duration)

        if result.success:
            logger.info(
                "Job completed successfully",
                extra={"job_id": event.key, "duration": f"{duration:.2f}s"},
            )
            return event.to_status_update(
                EventType.COMPLETED, self.worker_id, result=result.output
            )

        logger.warning(
            "Job failed",
            extra={
                "job_id": event.key,
                "error": result.error,
                "attempt": context.attempt,
                "remaining_retries": context.remaining_retries,
                "last_attempt": context.is_last_attempt,
            },
        )
        return event.to_status_update(
            EventType.FAILED,
            self.worker_id,
            error_message=result.error or "Unknown error",
        )

    async def _publish_status(self, event: JobEvent) -> None:
        await self.channel.publish(self.settings.topic_status, event.key, event)

    async def _release_claim(self, event: JobEvent) -> None:
        try:
            await self.guard.release(event.job_id)
        except GuardUnavailableError:
            # The claim expires with its TTL; until then duplicates stay suppressed
            logger.error(
                "Failed to release idempotency claim",
                extra={"job_id": event.key},
                exc_info=True,
            )

    async def _mark_completed(self, event: JobEvent) -> None:
        try:
            await self.guard.mark_completed(event.job_id)
        except GuardUnavailableError:
            # The claim is still "processing", which suppresses duplicates just the same
            self._metrics.record_guard_unavailable("worker")
            logger.warning(
                "Failed to mark idempotency claim completed",
                extra={"job_id": event.key},
                exc_info=True,
            )


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    start_metrics_server(settings.prometheus_port)

    channel = create_event_channel(settings, client_id="jobflow-worker")
    guard = create_idempotency_guard(settings)
    worker = Worker(settings, channel, guard)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    await channel.start()
    try:
        await worker.start()
    except TransportError:
        logger.exception("Worker lost its event channel")
        raise
    finally:
        await channel.stop()
        await guard.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
