"""
Unit tests for job events and per-key locks.
"""

import asyncio
from datetime import timedelta

import pytest

from jobflow.constants import EventType, JobStatus
from jobflow.lifecycle import KeyedLock
from jobflow.types.events import JobEvent, utcnow


class TestJobEvent:
    """Tests for event construction and encoding."""

    def test_request_event_carries_full_job(self, make_job):
        job = make_job(priority=8, retry_count=1, payload={"region": "eu"})
        available_at = utcnow() + timedelta(seconds=4)

        event = JobEvent.job_request(job, EventType.RETRY, available_at=available_at)

        assert event.key == str(job.id)
        assert event.is_request
        assert event.status == JobStatus.PENDING
        assert event.priority == 8
        assert event.retry_count == 1
        assert event.payload == {"region": "eu"}
        assert JobEvent.from_bytes(event.to_bytes()) == event

    def test_status_update_keeps_job_description(self, make_job):
        request = JobEvent.job_request(make_job(), available_at=utcnow())

        update = request.to_status_update(
            EventType.FAILED, "worker-1", error_message="timeout"
        )

        assert not update.is_request
        assert update.job_id == request.job_id
        assert update.status == JobStatus.FAILED
        assert update.worker_id == "worker-1"
        assert update.error_message == "timeout"
        assert update.available_at is None

    def test_from_job_for_dead_letter(self, make_job):
        job = make_job(status=JobStatus.DEAD_LETTER, error_message="timeout", retry_count=3)

        event = JobEvent.from_job(job, EventType.DEAD_LETTER)

        assert event.status == JobStatus.DEAD_LETTER
        assert event.error_message == "timeout"
        assert event.retry_count == 3


class TestKeyedLock:
    """Tests for per-key locking."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order: list[str] = []

        async def work(name: str) -> None:
            async with locks.hold("job-1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("job-1"):
                await asyncio.wait_for(inside.wait(), 1.0)

        async def other() -> None:
            async with locks.hold("job-2"):
                inside.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_unused_locks_are_dropped(self):
        locks = KeyedLock()

        async with locks.hold("job-1"):
            assert len(locks) == 1

        assert len(locks) == 0
