"""
IdempotencyGuard: claim a job id before executing it.

A claim is a key in a shared store holding one of the IdempotencyState values.
The first executor to acquire the claim runs the job; every other delivery of
the same request sees the claim and is skipped.

Claim contract
--------------
try_acquire(job_id)
  - atomic set-if-absent with a TTL
  - True  → this caller owns the claim (state "processing")
  - False → a claim already exists (processing, completed or failed)

mark_completed(job_id) / mark_failed(job_id, release)
  - overwrite the claim value, refreshing the TTL
  - mark_failed(release=True) deletes the claim so a retry can acquire it

Every operation raises GuardUnavailableError when the backing store cannot be
reached. Callers must treat that as "claim state unknown" and not execute.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable
from uuid import UUID

from jobflow.constants import IdempotencyState


@runtime_checkable
class IdempotencyGuard(Protocol):
    """
    Interface shared by the Redis-backed and in-memory guards.

    Implementing adapters (built-in):
      - RedisIdempotencyGuard   : SET NX EX on a shared Redis
      - InMemoryIdempotencyGuard: dict + asyncio.Lock, for tests and single-process runs
    """

    async def try_acquire(self, job_id: UUID) -> bool:
        """Claim the job. Returns False if any claim already exists."""
        ...

    async def mark_completed(self, job_id: UUID) -> None:
        """Record a successful execution. Later deliveries stay suppressed."""
        ...

    async def mark_failed(self, job_id: UUID, release: bool = False) -> None:
        """Record a failed execution, deleting the claim when release is True."""
        ...

    async def release(self, job_id: UUID) -> None:
        """Delete the claim unconditionally."""
        ...

    async def get_status(self, job_id: UUID) -> IdempotencyState | None:
        """Return the current claim value, or None if unclaimed."""
        ...

    async def is_processed(self, job_id: UUID) -> bool:
        """True if a claim of any state exists for the job."""
        ...

    async def ping(self) -> bool:
        """True if the backing store answers."""
        ...

    async def close(self) -> None:
        ...
