"""
Idempotency module.
Suppresses duplicate execution of redelivered job requests.
"""

from jobflow.config import Settings
from jobflow.idempotency.base import IdempotencyGuard
from jobflow.idempotency.memory import InMemoryIdempotencyGuard
from jobflow.idempotency.redis_guard import RedisIdempotencyGuard


def create_idempotency_guard(settings: Settings) -> IdempotencyGuard:
    """Build the guard selected by settings.guard_backend."""
    if settings.guard_backend == "memory":
        return InMemoryIdempotencyGuard.from_settings(settings)
    return RedisIdempotencyGuard.from_settings(settings)


__all__ = [
    "IdempotencyGuard",
    "InMemoryIdempotencyGuard",
    "RedisIdempotencyGuard",
    "create_idempotency_guard",
]
