"""
Unit tests for the idempotency guards.
"""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from jobflow.constants import IdempotencyState
from jobflow.errors import GuardUnavailableError
from jobflow.idempotency import (
    IdempotencyGuard,
    InMemoryIdempotencyGuard,
    RedisIdempotencyGuard,
    create_idempotency_guard,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryIdempotencyGuard:
    """Tests for the in-process guard."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def memory_guard(self, clock: FakeClock) -> InMemoryIdempotencyGuard:
        return InMemoryIdempotencyGuard(ttl_seconds=60, clock=clock)

    @pytest.mark.asyncio
    async def test_first_acquire_wins(self, memory_guard):
        job_id = uuid4()

        assert await memory_guard.try_acquire(job_id) is True
        assert await memory_guard.try_acquire(job_id) is False
        assert await memory_guard.get_status(job_id) == IdempotencyState.PROCESSING

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_single_winner(self, memory_guard):
        job_id = uuid4()

        results = await asyncio.gather(*(memory_guard.try_acquire(job_id) for _ in range(10)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_completed_claim_blocks_duplicates(self, memory_guard):
        job_id = uuid4()
        await memory_guard.try_acquire(job_id)

        await memory_guard.mark_completed(job_id)

        assert await memory_guard.get_status(job_id) == IdempotencyState.COMPLETED
        assert await memory_guard.try_acquire(job_id) is False
        assert await memory_guard.is_processed(job_id) is True

    @pytest.mark.asyncio
    async def test_mark_failed_with_release_allows_retry(self, memory_guard):
        job_id = uuid4()
        await memory_guard.try_acquire(job_id)

        await memory_guard.mark_failed(job_id, release=True)

        assert await memory_guard.get_status(job_id) is None
        assert await memory_guard.try_acquire(job_id) is True

    @pytest.mark.asyncio
    async def test_mark_failed_without_release_keeps_claim(self, memory_guard):
        job_id = uuid4()
        await memory_guard.try_acquire(job_id)

        await memory_guard.mark_failed(job_id)

        assert await memory_guard.get_status(job_id) == IdempotencyState.FAILED
        assert await memory_guard.try_acquire(job_id) is False

    @pytest.mark.asyncio
    async def test_release(self, memory_guard):
        job_id = uuid4()
        await memory_guard.try_acquire(job_id)

        await memory_guard.release(job_id)

        assert await memory_guard.is_processed(job_id) is False

    @pytest.mark.asyncio
    async def test_claim_expires_after_ttl(self, memory_guard, clock):
        job_id = uuid4()
        await memory_guard.try_acquire(job_id)

        clock.now += 59
        assert await memory_guard.try_acquire(job_id) is False

        clock.now += 1
        assert await memory_guard.get_status(job_id) is None
        assert await memory_guard.try_acquire(job_id) is True

    @pytest.mark.asyncio
    async def test_every_write_refreshes_ttl(self, memory_guard, clock):
        job_id = uuid4()
        await memory_guard.try_acquire(job_id)

        clock.now += 50
        await memory_guard.mark_completed(job_id)
        clock.now += 50

        assert await memory_guard.get_status(job_id) == IdempotencyState.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_claims_outlive_in_flight_ttl(self, clock):
        guard = InMemoryIdempotencyGuard(ttl_seconds=60, clock=clock, terminal_ttl_seconds=600)
        cancelled, done = uuid4(), uuid4()
        await guard.try_acquire(cancelled)
        await guard.mark_failed(cancelled, release=False)
        await guard.try_acquire(done)
        await guard.mark_completed(done)

        clock.now += 599
        assert await guard.try_acquire(cancelled) is False
        assert await guard.try_acquire(done) is False

        clock.now += 1
        assert await guard.get_status(cancelled) is None

    def test_satisfies_protocol(self, memory_guard):
        assert isinstance(memory_guard, IdempotencyGuard)


class TestRedisIdempotencyGuard:
    """Tests for the Redis guard against a mocked client."""

    @pytest.fixture
    def client(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def redis_guard(self, client: AsyncMock) -> RedisIdempotencyGuard:
        return RedisIdempotencyGuard(client, ttl_seconds=120, key_prefix="test:")

    @pytest.mark.asyncio
    async def test_try_acquire_uses_set_nx_with_ttl(self, redis_guard, client):
        job_id = uuid4()
        client.set.return_value = True

        assert await redis_guard.try_acquire(job_id) is True

        client.set.assert_awaited_once_with(
            f"test:{job_id}", "processing", nx=True, ex=120
        )

    @pytest.mark.asyncio
    async def test_try_acquire_existing_key(self, redis_guard, client):
        client.set.return_value = None

        assert await redis_guard.try_acquire(uuid4()) is False

    @pytest.mark.asyncio
    async def test_mark_completed_overwrites_with_ttl(self, redis_guard, client):
        job_id = uuid4()

        await redis_guard.mark_completed(job_id)

        client.set.assert_awaited_once_with(f"test:{job_id}", "completed", ex=120)

    @pytest.mark.asyncio
    async def test_terminal_writes_use_terminal_ttl(self, client):
        guard = RedisIdempotencyGuard(
            client, ttl_seconds=120, key_prefix="test:", terminal_ttl_seconds=900
        )
        job_id = uuid4()

        await guard.mark_failed(job_id, release=False)
        await guard.mark_completed(job_id)

        assert [c.kwargs["ex"] for c in client.set.await_args_list] == [900, 900]

    @pytest.mark.asyncio
    async def test_mark_failed_release_deletes_key(self, redis_guard, client):
        job_id = uuid4()

        await redis_guard.mark_failed(job_id, release=True)

        client.delete.assert_awaited_once_with(f"test:{job_id}")
        client.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_status_parses_value(self, redis_guard, client):
        client.get.return_value = "failed"

        assert await redis_guard.get_status(uuid4()) == IdempotencyState.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation",
        ["try_acquire", "mark_completed", "mark_failed", "release", "get_status", "is_processed"],
    )
    async def test_redis_errors_fail_closed(self, redis_guard, client, operation):
        error = RedisConnectionError("connection refused")
        for method in (client.set, client.get, client.delete, client.exists):
            method.side_effect = error
        job_id = uuid4()

        with pytest.raises(GuardUnavailableError) as exc_info:
            await getattr(redis_guard, operation)(job_id)

        assert exc_info.value.job_id == job_id
        assert exc_info.value.cause is error

    @pytest.mark.asyncio
    async def test_ping_reports_unreachable_redis(self, redis_guard, client):
        client.ping.side_effect = RedisConnectionError("connection refused")

        assert await redis_guard.ping() is False

    @pytest.mark.asyncio
    async def test_close_closes_client(self, redis_guard, client):
        await redis_guard.close()

        client.aclose.assert_awaited_once()


def test_factory_selects_backend(test_settings):
    assert isinstance(create_idempotency_guard(test_settings), InMemoryIdempotencyGuard)

    redis_settings = test_settings.model_copy(update={"guard_backend": "redis"})
    assert isinstance(create_idempotency_guard(redis_settings), RedisIdempotencyGuard)
