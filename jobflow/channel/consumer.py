"""
Group consumer loop with error classification and dead-letter routing.

EventConsumer runs `concurrency` subscriptions to one channel within one
consumer group and hands each decoded event to a handler coroutine:

- handler returns          → ack
- retriable error          → wait redelivery_backoff_seconds, then nack
- permanent error          → publish the raw record to the dead-letter channel, then ack
- any other error          → nack until max_redeliveries is reached, then dead-letter

If the dead-letter publish itself fails the record is nacked, never acked.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum

from pydantic import ValidationError

from jobflow.channel.base import Delivery, EventChannel
from jobflow.errors import (
    GuardUnavailableError,
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    StaleJobStateError,
    TransportError,
    UnknownJobTypeError,
)
from jobflow.observability.logging import bind_context, clear_context
from jobflow.observability.metrics import MetricsCollector, get_metrics
from jobflow.types.events import JobEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[JobEvent], Awaitable[None]]


class ErrorKind(StrEnum):
    RETRIABLE = "retriable"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


RETRIABLE_ERRORS: tuple[type[Exception], ...] = (
    TransportError,
    GuardUnavailableError,
    StaleJobStateError,
)

PERMANENT_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    JobValidationError,
    JobNotFoundError,
    UnknownJobTypeError,
    InvalidTransitionError,
)


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, RETRIABLE_ERRORS):
        return ErrorKind.RETRIABLE
    if isinstance(error, PERMANENT_ERRORS):
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


class EventConsumer:
    """
    Concurrent consumer-group member for one channel.

    Args:
        channel: Event channel to subscribe to.
        topic: Channel name.
        group_id: Consumer group; members split the partitions.
        handler: Coroutine called once per decoded event.
        name: Component name used in logs and metrics.
        dlq_topic: Dead-letter channel for poison records.
        concurrency: Number of subscriptions run by this process.
        max_redeliveries: Unexpected failures tolerated before dead-lettering.
        redelivery_backoff_seconds: Pause before a record is given back.
        metrics: Metrics collector, the process-wide one by default.
    """

    def __init__(
        self,
        channel: EventChannel,
        topic: str,
        group_id: str,
        handler: EventHandler,
        *,
        name: str,
        dlq_topic: str,
        concurrency: int = 1,
        max_redeliveries: int = 5,
        redelivery_backoff_seconds: float = 1.0,
        metrics: MetricsCollector | None = None,
    ):
        self.channel = channel
        self.topic = topic
        self.group_id = group_id
        self.handler = handler
        self.name = name
        self.dlq_topic = dlq_topic
        self.concurrency = concurrency
        self.max_redeliveries = max_redeliveries
        self.redelivery_backoff_seconds = redelivery_backoff_seconds
        self.metrics = metrics or get_metrics()

        self._running = False
        self._tasks: list[asyncio.Task[None]] = []
        self._busy: set[asyncio.Task[None]] = set()
        self._attempts: dict[tuple[int, int], int] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Consume until stop() is called."""
        if self._running:
            logger.warning("Consumer already running, ignoring duplicate start call")
            return

        self._running = True
        logger.info(
            "Starting consumer",
            extra={
                "component": self.name,
                "topic": self.topic,
                "group_id": self.group_id,
                "concurrency": self.concurrency,
            },
        )
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"{self.name}-{i}")
            for i in range(self.concurrency)
        ]
        try:
            done, pending = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = [t for t in done if not t.cancelled() and t.exception() is not None]
            if failed:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise failed[0].exception()  # type: ignore[misc]
        except asyncio.CancelledError:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            raise
        finally:
            self._running = False

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop consuming.

        Idle subscriptions are cancelled at once; deliveries being processed
        get up to `timeout` seconds to finish before they are cancelled too.
        """
        if not self._tasks:
            return

        logger.info("Stopping consumer", extra={"component": self.name})
        self._running = False

        for task in self._tasks:
            if task not in self._busy:
                task.cancel()

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Consumer stopped", extra={"component": self.name})

    async def _consume(self) -> None:
        task = asyncio.current_task()
        async with self.channel.subscribe(self.topic, self.group_id) as subscription:
            async for delivery in subscription:
                if task is not None:
                    self._busy.add(task)
                try:
                    await self.process(delivery)
                finally:
                    self._busy.discard(task)
                if not self._running:
                    break

    async def process(self, delivery: Delivery) -> None:
        """Run the handler for one delivery and settle it."""
        position = (delivery.partition, delivery.offset)
        self.metrics.in_flight.labels(component=self.name).inc()
        bind_context(job_id=delivery.key, component=self.name)
        try:
            await self.handler(delivery.event)
        except Exception as e:
            await self._handle_error(delivery, e)
        else:
            self._attempts.pop(position, None)
            await self._ack(delivery)
        finally:
            clear_context()
            self.metrics.in_flight.labels(component=self.name).dec()

    async def _ack(self, delivery: Delivery) -> None:
        try:
            await delivery.ack()
        except TransportError:
            logger.warning(
                "Failed to ack delivery - event will be redelivered",
                extra=self._context(delivery),
                exc_info=True,
            )

    async def _nack_later(self, delivery: Delivery) -> None:
        await asyncio.sleep(self.redelivery_backoff_seconds)
        try:
            await delivery.nack()
        except TransportError:
            logger.warning(
                "Failed to nack delivery - event will be redelivered after rebalance",
                extra=self._context(delivery),
                exc_info=True,
            )

    def _context(self, delivery: Delivery) -> dict[str, object]:
        return {
            "component": self.name,
            "channel": delivery.channel,
            "partition": delivery.partition,
            "offset": delivery.offset,
            "key": delivery.key,
            "group_id": self.group_id,
        }

    async def _handle_error(self, delivery: Delivery, error: Exception) -> None:
        kind = classify_error(error)
        position = (delivery.partition, delivery.offset)
        context = {
            **self._context(delivery),
            "error_category": kind.value,
            "error_type": type(error).__name__,
        }

        if kind == ErrorKind.RETRIABLE:
            if isinstance(error, GuardUnavailableError):
                self.metrics.record_guard_unavailable(self.name)
            elif isinstance(error, StaleJobStateError):
                self.metrics.record_stale_write()
            logger.warning(
                "Retriable error processing event - will redeliver",
                extra=context,
                exc_info=True,
            )
            await self._nack_later(delivery)
            return

        if kind == ErrorKind.UNKNOWN:
            attempts = max(self._attempts.get(position, 0) + 1, delivery.delivery_count)
            if attempts < self.max_redeliveries:
                self._attempts[position] = attempts
                logger.error(
                    "Unexpected error processing event - will redeliver",
                    extra={**context, "attempts": attempts},
                    exc_info=True,
                )
                await self._nack_later(delivery)
                return
            logger.error(
                "Event failed repeatedly - routing to DLQ",
                extra={**context, "attempts": attempts},
                exc_info=True,
            )
        else:
            logger.error(
                "Permanent error processing event - routing to DLQ",
                extra=context,
                exc_info=True,
            )

        await self._route_to_dlq(delivery, error, kind)

    async def _route_to_dlq(self, delivery: Delivery, error: Exception, kind: ErrorKind) -> None:
        headers = {
            "dlq_source_channel": delivery.channel,
            "dlq_source_partition": str(delivery.partition),
            "dlq_source_offset": str(delivery.offset),
            "dlq_consumer_group": self.group_id,
            "dlq_error_category": kind.value,
            "dlq_error_type": type(error).__name__,
            "dlq_error_message": str(error)[:1000],
        }
        key = delivery.key or f"dlq-{delivery.offset}"

        try:
            await self.channel.publish(self.dlq_topic, key, delivery.value, headers)
        except TransportError:
            logger.error(
                "DLQ routing failed - event will be redelivered",
                extra=self._context(delivery),
                exc_info=True,
            )
            await self._nack_later(delivery)
            return

        self._attempts.pop((delivery.partition, delivery.offset), None)
        self.metrics.record_poison_event(delivery.channel, type(error).__name__)
        logger.info(
            "Event routed to DLQ",
            extra={**self._context(delivery), "dlq_topic": self.dlq_topic},
        )
        await self._ack(delivery)
