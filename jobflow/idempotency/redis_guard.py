"""
Redis-backed idempotency guard.

Claims are plain string keys `<prefix><job_id>` written with SET NX EX, so the
set-if-absent and the expiry are one atomic command.
"""

import logging
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from jobflow.config import Settings
from jobflow.constants import IdempotencyState
from jobflow.errors import GuardUnavailableError

logger = logging.getLogger(__name__)


class RedisIdempotencyGuard:
    """
    Idempotency guard on a shared Redis instance.

    Every Redis failure surfaces as GuardUnavailableError; the guard never
    guesses a claim state it could not read.
    """

    def __init__(
        self,
        client: Redis,
        ttl_seconds: int = 86400,
        key_prefix: str = "job:idempotency:",
        terminal_ttl_seconds: int | None = None,
    ):
        """
        Initialize the guard.

        Args:
            client: Redis client created with decode_responses=True.
            ttl_seconds: Lifetime of an in-flight claim.
            key_prefix: Prefix prepended to the job id.
            terminal_ttl_seconds: Lifetime of a completed or failed claim;
                defaults to ttl_seconds.
        """
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._terminal_ttl_seconds = terminal_ttl_seconds or ttl_seconds
        self._key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisIdempotencyGuard":
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            client,
            ttl_seconds=settings.idempotency_ttl_seconds,
            key_prefix=settings.idempotency_key_prefix,
            terminal_ttl_seconds=settings.idempotency_terminal_ttl_seconds,
        )

    def _key(self, job_id: UUID) -> str:
        return f"{self._key_prefix}{job_id}"

    async def try_acquire(self, job_id: UUID) -> bool:
        try:
            acquired = await self._client.set(
                self._key(job_id),
                IdempotencyState.PROCESSING.value,
                nx=True,
                ex=self._ttl_seconds,
            )
        except RedisError as e:
            raise GuardUnavailableError(job_id, e) from e

        if acquired:
            logger.debug("Acquired idempotency claim", extra={"job_id": str(job_id)})
            return True

        logger.info("Job already claimed, skipping", extra={"job_id": str(job_id)})
        return False

    async def mark_completed(self, job_id: UUID) -> None:
        try:
            await self._client.set(
                self._key(job_id),
                IdempotencyState.COMPLETED.value,
                ex=self._terminal_ttl_seconds,
            )
        except RedisError as e:
            raise GuardUnavailableError(job_id, e) from e

    async def mark_failed(self, job_id: UUID, release: bool = False) -> None:
        try:
            if release:
                await self._client.delete(self._key(job_id))
            else:
                await self._client.set(
                    self._key(job_id),
                    IdempotencyState.FAILED.value,
                    ex=self._terminal_ttl_seconds,
                )
        except RedisError as e:
            raise GuardUnavailableError(job_id, e) from e

        logger.debug(
            "Marked idempotency claim failed",
            extra={"job_id": str(job_id), "released": release},
        )

    async def release(self, job_id: UUID) -> None:
        try:
            await self._client.delete(self._key(job_id))
        except RedisError as e:
            raise GuardUnavailableError(job_id, e) from e

    async def get_status(self, job_id: UUID) -> IdempotencyState | None:
        try:
            value = await self._client.get(self._key(job_id))
        except RedisError as e:
            raise GuardUnavailableError(job_id, e) from e
        return IdempotencyState(value) if value is not None else None

    async def is_processed(self, job_id: UUID) -> bool:
        try:
            return bool(await self._client.exists(self._key(job_id)))
        except RedisError as e:
            raise GuardUnavailableError(job_id, e) from e

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
