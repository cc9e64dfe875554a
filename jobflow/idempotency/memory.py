"""
InMemoryIdempotencyGuard: asyncio.Lock-based claims for tests and development.

Claims live in a dict keyed like their Redis counterparts and expire after the
configured TTL, measured with an injectable monotonic clock.

Safe for multiple concurrent coroutines in a single event loop. NOT safe
across processes or threads.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from uuid import UUID

from jobflow.config import Settings
from jobflow.constants import IdempotencyState


class InMemoryIdempotencyGuard:
    """
    In-process idempotency guard.

    Parameters
    ----------
    ttl_seconds          : lifetime of an in-flight claim
    terminal_ttl_seconds : lifetime of a completed or failed claim (defaults to ttl_seconds)
    key_prefix           : prefix prepended to the job id
    clock                : monotonic time source, replaceable in tests
    """

    def __init__(
        self,
        ttl_seconds: int = 86400,
        key_prefix: str = "job:idempotency:",
        clock: Callable[[], float] = time.monotonic,
        terminal_ttl_seconds: int | None = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._terminal_ttl_seconds = terminal_ttl_seconds or ttl_seconds
        self._key_prefix = key_prefix
        self._clock = clock
        self._claims: dict[str, tuple[IdempotencyState, float]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> InMemoryIdempotencyGuard:
        return cls(
            ttl_seconds=settings.idempotency_ttl_seconds,
            key_prefix=settings.idempotency_key_prefix,
            terminal_ttl_seconds=settings.idempotency_terminal_ttl_seconds,
        )

    def _key(self, job_id: UUID) -> str:
        return f"{self._key_prefix}{job_id}"

    def _current(self, key: str) -> IdempotencyState | None:
        entry = self._claims.get(key)
        if entry is None:
            return None
        state, expires_at = entry
        if self._clock() >= expires_at:
            del self._claims[key]
            return None
        return state

    def _write(self, key: str, state: IdempotencyState, ttl_seconds: int) -> None:
        self._claims[key] = (state, self._clock() + ttl_seconds)

    async def try_acquire(self, job_id: UUID) -> bool:
        key = self._key(job_id)
        async with self._lock:
            if self._current(key) is not None:
                return False
            self._write(key, IdempotencyState.PROCESSING, self._ttl_seconds)
            return True

    async def mark_completed(self, job_id: UUID) -> None:
        async with self._lock:
            self._write(self._key(job_id), IdempotencyState.COMPLETED, self._terminal_ttl_seconds)

    async def mark_failed(self, job_id: UUID, release: bool = False) -> None:
        key = self._key(job_id)
        async with self._lock:
            if release:
                self._claims.pop(key, None)
            else:
                self._write(key, IdempotencyState.FAILED, self._terminal_ttl_seconds)

    async def release(self, job_id: UUID) -> None:
        async with self._lock:
            self._claims.pop(self._key(job_id), None)

    async def get_status(self, job_id: UUID) -> IdempotencyState | None:
        async with self._lock:
            return self._current(self._key(job_id))

    async def is_processed(self, job_id: UUID) -> bool:
        return await self.get_status(job_id) is not None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
