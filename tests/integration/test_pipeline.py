"""
Integration tests for the full event pipeline.

Runs the job service, workers and the status reconciler together on the
in-process channel and idempotency guard.
"""

import asyncio
from collections.abc import AsyncGenerator
from uuid import UUID

import pytest
import pytest_asyncio

from jobflow.constants import TERMINAL_STATUSES, EventType, JobStatus
from jobflow.db.store import JobStore
from jobflow.reconciler import StatusReconciler
from jobflow.services import JobService
from jobflow.types.events import JobEvent
from jobflow.types.job import JobState
from jobflow.worker import Worker

pytestmark = pytest.mark.integration


async def wait_for_terminal(store: JobStore, job_id: UUID, timeout: float = 5.0) -> JobState:
    async def poll() -> JobState:
        while True:
            job = await store.get(job_id)
            if job is not None and job.status in TERMINAL_STATUSES:
                return job
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout)


async def wait_for_drain(channel, topic: str, group_id: str, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while channel.lag(topic, group_id) > 0:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class Pipeline:
    """A running worker and reconciler sharing one channel, guard and store."""

    def __init__(self, settings, store, channel, guard, metrics):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.guard = guard
        self.metrics = metrics
        self.service = JobService(settings, store, channel, guard, metrics=metrics)
        self.worker = Worker(settings, channel, guard, metrics=metrics)
        self.reconciler = StatusReconciler(settings, store, channel, guard, metrics=metrics)
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self.worker.start()),
            asyncio.create_task(self.reconciler.start()),
        ]
        await asyncio.sleep(0.01)

    async def stop(self) -> None:
        await self.worker.stop()
        await self.reconciler.stop()
        await asyncio.gather(*self._tasks)

    def events(self, topic: str, job_id: UUID) -> list[JobEvent]:
        return [e for e in self.channel.events(topic) if e.job_id == job_id]


@pytest_asyncio.fixture
async def pipeline(test_settings, store, channel, guard, metrics) -> AsyncGenerator[Pipeline]:
    pipeline = Pipeline(test_settings, store, channel, guard, metrics)
    await pipeline.start()
    yield pipeline
    await pipeline.stop()


def job_request(name: str, simulate_failure: bool, max_retries: int = 3) -> dict:
    return {
        "name": name,
        "type": "PROCESS_DATA",
        "payload": {"work_seconds": 0, "simulate_failure": simulate_failure},
        "max_retries": max_retries,
    }


class TestPipeline:
    """End-to-end job lifecycles."""

    @pytest.mark.asyncio
    async def test_successful_job(self, pipeline: Pipeline):
        job = await pipeline.service.create(job_request("ok", simulate_failure=False))

        done = await wait_for_terminal(pipeline.store, job.id)

        assert done.status == JobStatus.COMPLETED
        assert done.worker_id == "test-worker"
        assert done.result["status"] == "success"
        assert done.retry_count == 0
        assert done.execution_time_ms is not None

        statuses = [e.event_type for e in pipeline.events(pipeline.settings.topic_status, job.id)]
        assert statuses == [EventType.STARTED, EventType.COMPLETED]
        assert pipeline.events(pipeline.settings.topic_dlq, job.id) == []

    @pytest.mark.asyncio
    async def test_failing_job_is_retried_then_dead_lettered(self, pipeline: Pipeline):
        job = await pipeline.service.create(
            job_request("always-fails", simulate_failure=True, max_retries=1)
        )

        dead = await wait_for_terminal(pipeline.store, job.id)

        assert dead.status == JobStatus.DEAD_LETTER
        assert dead.retry_count == 1
        assert dead.error_message == "Data processing error: invalid format"

        [dlq_event] = pipeline.events(pipeline.settings.topic_dlq, job.id)
        assert dlq_event.event_type == EventType.DEAD_LETTER
        assert dlq_event.retry_count == 1

        requests = pipeline.events(pipeline.settings.topic_requests, job.id)
        assert [e.event_type for e in requests] == [EventType.CREATED, EventType.RETRY]

        statuses = [e.event_type for e in pipeline.events(pipeline.settings.topic_status, job.id)]
        assert statuses == [
            EventType.STARTED,
            EventType.FAILED,
            EventType.STARTED,
            EventType.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_every_retry_is_used_before_dead_letter(self, pipeline: Pipeline):
        job = await pipeline.service.create(
            job_request("flaky", simulate_failure=True, max_retries=2)
        )

        dead = await wait_for_terminal(pipeline.store, job.id)

        assert dead.status == JobStatus.DEAD_LETTER
        assert dead.retry_count == 2
        retries = pipeline.events(pipeline.settings.topic_requests, job.id)[1:]
        assert [e.retry_count for e in retries] == [1, 2]
        assert all(e.available_at is not None for e in retries)
        assert pipeline.metrics.retries_scheduled.labels(
            job_type="PROCESS_DATA"
        )._value.get() == 2

    @pytest.mark.asyncio
    async def test_zero_retries_dead_letters_first_failure(self, pipeline: Pipeline):
        job = await pipeline.service.create(
            job_request("one-shot", simulate_failure=True, max_retries=0)
        )

        dead = await wait_for_terminal(pipeline.store, job.id)

        assert dead.status == JobStatus.DEAD_LETTER
        assert dead.retry_count == 0
        assert len(pipeline.events(pipeline.settings.topic_dlq, job.id)) == 1

    @pytest.mark.asyncio
    async def test_redelivered_request_is_not_executed_twice(self, pipeline: Pipeline):
        job = await pipeline.service.create(job_request("once", simulate_failure=False))
        done = await wait_for_terminal(pipeline.store, job.id)

        # Same request delivered again, as after a consumer crash before commit
        duplicate = JobEvent.job_request(job)
        await pipeline.channel.publish(pipeline.settings.topic_requests, duplicate.key, duplicate)
        await wait_for_drain(
            pipeline.channel, pipeline.settings.topic_requests, pipeline.settings.worker_group_id
        )
        await wait_for_drain(
            pipeline.channel, pipeline.settings.topic_status, pipeline.settings.reconciler_group_id
        )

        statuses = [e.event_type for e in pipeline.events(pipeline.settings.topic_status, job.id)]
        assert statuses == [EventType.STARTED, EventType.COMPLETED]
        assert await pipeline.store.get(job.id) == done
        assert pipeline.metrics.duplicates_skipped.labels(
            job_type="PROCESS_DATA"
        )._value.get() == 1

    @pytest.mark.asyncio
    async def test_many_jobs_reach_terminal_states(self, pipeline: Pipeline):
        jobs = [
            await pipeline.service.create(
                job_request(f"job-{i}", simulate_failure=i % 3 == 0, max_retries=1)
            )
            for i in range(12)
        ]

        finished = await asyncio.gather(
            *(wait_for_terminal(pipeline.store, job.id, timeout=10.0) for job in jobs)
        )

        for i, job in enumerate(finished):
            expected = JobStatus.DEAD_LETTER if i % 3 == 0 else JobStatus.COMPLETED
            assert job.status == expected
        assert len(pipeline.channel.events(pipeline.settings.topic_dlq)) == 4


class TestCancellation:
    """Cancellation racing against dispatch."""

    @pytest.mark.asyncio
    async def test_cancelled_job_is_never_executed(
        self, test_settings, store, channel, guard, metrics
    ):
        pipeline = Pipeline(test_settings, store, channel, guard, metrics)
        job = await pipeline.service.create(job_request("cancel-me", simulate_failure=False))
        await pipeline.service.cancel(job.id)

        await pipeline.start()
        try:
            await wait_for_drain(channel, test_settings.topic_requests, test_settings.worker_group_id)
            await wait_for_drain(
                channel, test_settings.topic_status, test_settings.reconciler_group_id
            )
        finally:
            await pipeline.stop()

        stored = await store.get(job.id)
        assert stored.status == JobStatus.CANCELLED
        statuses = [e.event_type for e in pipeline.events(test_settings.topic_status, job.id)]
        assert statuses == [EventType.CANCELLED]


class TestSqlPipeline:
    """The same lifecycle against the SQL store."""

    @pytest.mark.asyncio
    async def test_job_completes_with_sql_store(
        self, test_settings, sql_store, channel, guard, metrics
    ):
        pipeline = Pipeline(test_settings, sql_store, channel, guard, metrics)
        await pipeline.start()
        try:
            ok = await pipeline.service.create(job_request("sql-ok", simulate_failure=False))
            failing = await pipeline.service.create(
                job_request("sql-fails", simulate_failure=True, max_retries=1)
            )

            done = await wait_for_terminal(sql_store, ok.id)
            dead = await wait_for_terminal(sql_store, failing.id)
        finally:
            await pipeline.stop()

        assert done.status == JobStatus.COMPLETED
        assert dead.status == JobStatus.DEAD_LETTER
        assert dead.retry_count == 1
        stats = await sql_store.stats()
        assert stats.completed == 1
        assert stats.dead_letter == 1
