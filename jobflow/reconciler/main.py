"""
Status reconciler.

Consumes worker status events and folds them into the authoritative job
store through the state machine. A job that lands in FAILED is handed to the
retry engine in the same step, so FAILED is never a resting state.

Events for one job are processed one at a time: the channel delivers a key's
events in order to a single member, and a per-job lock covers the rest.
Every write is conditional on the job's version; a lost race surfaces as
StaleJobStateError and the event is redelivered against the fresh state.
"""

import asyncio
import logging
import signal

from jobflow.channel import EventConsumer, KafkaEventChannel, create_event_channel
from jobflow.channel.base import EventChannel
from jobflow.config import Settings, get_settings
from jobflow.constants import SPAN_RECONCILE_EVENT, EventType, JobStatus
from jobflow.db import Database
from jobflow.db.store import JobStore
from jobflow.errors import InvalidTransitionError, JobNotFoundError
from jobflow.idempotency import create_idempotency_guard
from jobflow.idempotency.base import IdempotencyGuard
from jobflow.lifecycle import (
    KeyedLock,
    RetryDecisionEngine,
    RetryPolicy,
    TransitionOutcome,
    transition,
)
from jobflow.observability.logging import setup_logging
from jobflow.observability.metrics import MetricsCollector, get_metrics, start_metrics_server
from jobflow.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobflow.types.events import JobEvent, utcnow
from jobflow.types.job import JobState

logger = logging.getLogger(__name__)


class StatusReconciler:
    """
    Applies status events to the job store.

    For each event:
    1. Load the job (unknown job → dead-letter channel)
    2. Run the state machine; terminal and stale events are acknowledged no-ops
    3. Persist the new state with a version check
    4. Requeue or dead-letter the job if it is now FAILED
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
        self.settings = settings
        self.store = store
        self._metrics = metrics or get_metrics()
        self.engine = RetryDecisionEngine(
            settings, store, channel, guard, policy=policy, metrics=self._metrics
        )
        self._locks = KeyedLock()

        self.consumer = EventConsumer(
            channel,
            settings.topic_status,
            settings.reconciler_group_id,
            self.handle_event,
            name="reconciler",
            dlq_topic=settings.topic_dlq,
            concurrency=settings.reconciler_concurrency,
            max_redeliveries=settings.max_redeliveries,
            redelivery_backoff_seconds=settings.redelivery_backoff_seconds,
            metrics=self._metrics,
        )

    async def start(self) -> None:
        """Consume status events until stop() is called."""
        logger.info(
            "Reconciler starting",
            extra={"concurrency": self.settings.reconciler_concurrency},
        )
        await self.consumer.run()
        logger.info("Reconciler stopped")

    async def stop(self) -> None:
        logger.info("Reconciler stopping")
        await self.consumer.stop()

    async def handle_event(self, event: JobEvent) -> None:
        try:
            await self.reconcile(event)
        except InvalidTransitionError as e:
            # Only cancellation raises here, and the cancel already happened elsewhere
            self._metrics.record_event_reconciled(event.event_type.value, "rejected")
            logger.warning(
                "Status event rejected by state machine",
                extra={"job_id": event.key, "event_type": event.event_type.value, "error": str(e)},
            )

    async def reconcile(self, event: JobEvent) -> JobState:
        """
        Apply one status event.

        Returns:
            The job state after the event.

        Raises:
            JobNotFoundError: The event refers to an unknown job.
            StaleJobStateError: Another writer changed the job concurrently.
            GuardUnavailableError, TransportError: The retry engine could not act.
        """
        async with self._locks.hold(event.job_id):
            with get_tracer().start_as_current_span(SPAN_RECONCILE_EVENT) as span:
                span.set_attribute("job.id", event.key)
                span.set_attribute("event.type", event.event_type.value)
                return await self._reconcile(event)

    async def _reconcile(self, event: JobEvent) -> JobState:
        job = await self.store.get(event.job_id)
        if job is None:
            raise JobNotFoundError(event.job_id)

        now = utcnow()

        if event.event_type == EventType.FAILED and job.status == JobStatus.FAILED:
            # A previous run stored FAILED but did not finish the retry decision
            logger.info(
                "Resuming retry decision for failed job",
                extra={"job_id": event.key, "retry_count": job.retry_count},
            )
            self._metrics.record_event_reconciled(event.event_type.value, "resumed")
            return await self.engine.handle_failure(job, now)

        result = transition(
            job,
            event.event_type,
            now=now,
            worker_id=event.worker_id,
            result=event.result,
            error_message=event.error_message,
        )

        if not result.applied:
            self._metrics.record_event_reconciled(event.event_type.value, result.outcome.value)
            # A cancellation echoes back on the status channel after it was stored
            echo = event.event_type == EventType.CANCELLED and job.status == JobStatus.CANCELLED
            if result.outcome == TransitionOutcome.NO_OP_TERMINAL and not echo:
                self._metrics.record_state_conflict()
                logger.warning(
                    "State conflict: status event for terminal job ignored",
                    extra={
                        "job_id": event.key,
                        "event_type": event.event_type.value,
                        "status": job.status.value,
                    },
                )
                return job
            logger.info(
                "Status event ignored",
                extra={
                    "job_id": event.key,
                    "event_type": event.event_type.value,
                    "status": job.status.value,
                    "outcome": result.outcome.value,
                },
            )
            return job

        saved = await self.store.save(result.state)
        self._metrics.record_event_reconciled(event.event_type.value, result.outcome.value)
        logger.info(
            "Job status updated",
            extra={
                "job_id": event.key,
                "from_status": result.previous_status.value,
                "to_status": saved.status.value,
                "worker_id": saved.worker_id,
            },
        )

        if saved.is_terminal:
            self._metrics.record_job_finished(saved.type.value, saved.status.value)

        if saved.status == JobStatus.FAILED:
            return await self.engine.handle_failure(saved, now)
        return saved


async def run_async() -> None:
    """Run the reconciler asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    start_metrics_server(settings.prometheus_port)

    database = Database.from_settings(settings)
    instrument_sqlalchemy(database.engine.sync_engine)
    channel = create_event_channel(settings, client_id="jobflow-reconciler")
    guard = create_idempotency_guard(settings)
    reconciler = StatusReconciler(settings, database.job_store(), channel, guard)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reconciler.stop()))

    await channel.start()
    if isinstance(channel, KafkaEventChannel):
        await channel.ensure_topics()

    try:
        await reconciler.start()
    finally:
        await channel.stop()
        await guard.close()
        await database.close()


def run() -> None:
    """Run the reconciler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
