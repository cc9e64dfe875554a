"""
Unit tests for retry decisions and the retry engine.
"""

from datetime import timedelta

import pytest

from jobflow.constants import EventType, IdempotencyState, JobStatus, JobType
from jobflow.errors import StaleJobStateError, TransportError
from jobflow.lifecycle import RetryAction, RetryDecisionEngine, RetryPolicy, decide, transition
from jobflow.types.events import utcnow


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_backoff_grows_exponentially(self):
        policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=60.0)

        assert policy.backoff_seconds(0) == 1.0
        assert policy.backoff_seconds(1) == 2.0
        assert policy.backoff_seconds(2) == 4.0
        assert policy.backoff_seconds(3) == 8.0

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=60.0)

        assert policy.backoff_seconds(6) == 60.0
        assert policy.backoff_seconds(20) == 60.0

    def test_from_settings(self, test_settings):
        policy = RetryPolicy.from_settings(test_settings)

        assert policy.base_delay_seconds == test_settings.retry_base_delay_seconds
        assert policy.max_delay_seconds == test_settings.retry_max_delay_seconds


class TestDecide:
    """Tests for the retry/dead-letter decision."""

    def test_retry_while_retries_remain(self, make_job):
        job = make_job(status=JobStatus.FAILED, retry_count=1, max_retries=3)

        decision = decide(job, RetryPolicy())

        assert decision.action == RetryAction.RETRY
        assert decision.retry_count == 2
        assert decision.delay_seconds == 2.0

    def test_dead_letter_when_exhausted(self, make_job):
        job = make_job(status=JobStatus.FAILED, retry_count=3, max_retries=3)

        decision = decide(job, RetryPolicy())

        assert decision.action == RetryAction.DEAD_LETTER
        assert decision.retry_count == 3

    def test_zero_max_retries_dead_letters_first_failure(self, make_job):
        job = make_job(status=JobStatus.FAILED, max_retries=0)

        assert decide(job, RetryPolicy()).action == RetryAction.DEAD_LETTER

    def test_only_failed_jobs(self, make_job):
        with pytest.raises(ValueError):
            decide(make_job(status=JobStatus.RUNNING), RetryPolicy())


class TestRetryDecisionEngine:
    """Tests for applying decisions against the store, channel and guard."""

    @pytest.fixture
    def engine(self, test_settings, store, channel, guard, metrics) -> RetryDecisionEngine:
        return RetryDecisionEngine(test_settings, store, channel, guard, metrics=metrics)

    async def _failed_job(self, store, guard, max_retries: int, retry_count: int = 0):
        job = await store.create(
            name="sync-crm",
            job_type=JobType.SYNC_DATA,
            priority=5,
            payload={"work_seconds": 0},
            max_retries=max_retries,
        )
        if retry_count:
            job = await store.save(
                transition(
                    transition(job, EventType.STARTED, now=utcnow()).state,
                    EventType.FAILED,
                    now=utcnow(),
                ).state
            )
            job = await store.save(
                transition(job, EventType.RETRY, now=utcnow(), retry_count=retry_count).state
            )
        await guard.try_acquire(job.id)
        running = await store.save(
            transition(job, EventType.STARTED, now=utcnow(), worker_id="worker-1").state
        )
        return await store.save(
            transition(running, EventType.FAILED, now=utcnow(), error_message="timeout").state
        )

    @pytest.mark.asyncio
    async def test_requeue_publishes_delayed_request(
        self, engine, test_settings, store, channel, guard, metrics
    ):
        job = await self._failed_job(store, guard, max_retries=2)
        now = utcnow()

        saved = await engine.handle_failure(job, now)

        assert saved.status == JobStatus.PENDING
        assert saved.retry_count == 1
        assert (await store.get(job.id)) == saved

        requests = channel.events(test_settings.topic_requests)
        assert len(requests) == 1
        assert requests[0].event_type == EventType.RETRY
        assert requests[0].retry_count == 1
        assert requests[0].available_at == now + timedelta(
            seconds=engine.policy.backoff_seconds(0)
        )

        assert await guard.get_status(job.id) is None
        assert channel.events(test_settings.topic_dlq) == []
        assert metrics.retries_scheduled.labels(job_type="SYNC_DATA")._value.get() == 1

    @pytest.mark.asyncio
    async def test_exhausted_job_goes_to_dead_letter_channel(
        self, engine, test_settings, store, channel, guard, metrics
    ):
        job = await self._failed_job(store, guard, max_retries=1, retry_count=1)

        saved = await engine.handle_failure(job, utcnow())

        assert saved.status == JobStatus.DEAD_LETTER
        assert saved.retry_count == 1
        assert saved.completed_at is not None

        dlq = channel.events(test_settings.topic_dlq)
        assert len(dlq) == 1
        assert dlq[0].event_type == EventType.DEAD_LETTER
        assert dlq[0].error_message == "timeout"
        assert channel.events(test_settings.topic_status) == []

        assert await guard.get_status(job.id) == IdempotencyState.FAILED
        assert metrics.dead_lettered.labels(job_type="SYNC_DATA")._value.get() == 1

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_job_failed(
        self, engine, store, channel, guard
    ):
        job = await self._failed_job(store, guard, max_retries=2)
        await channel.stop()

        with pytest.raises(TransportError):
            await engine.handle_failure(job, utcnow())

        stored = await store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.version == job.version

    @pytest.mark.asyncio
    async def test_concurrent_writer_detected(self, engine, store, guard):
        job = await self._failed_job(store, guard, max_retries=2)
        await engine.handle_failure(job, utcnow())

        # Second decision from the same stale snapshot
        with pytest.raises(StaleJobStateError):
            await engine.handle_failure(job, utcnow())
