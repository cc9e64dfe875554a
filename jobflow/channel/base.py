"""
EventChannel: ordered, partitioned, at-least-once event delivery.

Delivery contract
-----------------
publish(channel, key, value)
  - the same key always maps to the same partition, so events of one job keep
    their emission order
  - returns once the backend has durably accepted the record
  - raises TransportError if it has not

subscribe(channel, group_id)
  - members of one group split the partitions between them
  - a record is redelivered until a member acks it: nack, a crash or a
    rebalance before the ack all lead to redelivery
  - consumers must therefore tolerate duplicates
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import cached_property
from types import TracebackType
from typing import Protocol, runtime_checkable

from jobflow.types.events import JobEvent

Headers = dict[str, str]


@dataclass(frozen=True)
class PublishResult:
    """Where a published record landed."""

    channel: str
    partition: int
    offset: int


@dataclass
class Delivery:
    """
    One record handed to a subscriber.

    The event is decoded lazily so that undecodable records still reach the
    consumer, which routes them to the dead-letter channel.
    """

    channel: str
    partition: int
    offset: int
    key: str | None
    value: bytes
    headers: Headers = field(default_factory=dict)
    delivery_count: int = 1
    _ack: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)
    _nack: Callable[[], Awaitable[None]] | None = field(default=None, repr=False)

    @cached_property
    def event(self) -> JobEvent:
        """Decoded event. Raises pydantic.ValidationError for malformed records."""
        return JobEvent.from_bytes(self.value)

    async def ack(self) -> None:
        """Mark the record processed; it will not be delivered to this group again."""
        if self._ack is not None:
            await self._ack()

    async def nack(self) -> None:
        """Give the record back for redelivery."""
        if self._nack is not None:
            await self._nack()


@runtime_checkable
class Subscription(Protocol):
    """Async iterator of deliveries; also an async context manager that leaves the group."""

    async def __aenter__(self) -> Subscription: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...

    def __aiter__(self) -> Subscription: ...

    async def __anext__(self) -> Delivery: ...


@runtime_checkable
class EventChannel(Protocol):
    """
    Interface shared by the Kafka-backed and in-memory channels.

    Implementing adapters (built-in):
      - KafkaEventChannel   : aiokafka producer/consumers with manual commits
      - InMemoryEventChannel: asyncio.Condition-based, for tests and single-process runs
    """

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def publish(
        self,
        channel: str,
        key: str,
        value: JobEvent | bytes,
        headers: Headers | None = None,
    ) -> PublishResult:
        """Durably append a record. Raises TransportError on failure."""
        ...

    def subscribe(self, channel: str, group_id: str) -> Subscription:
        """Join `group_id` on `channel` and iterate over its deliveries."""
        ...


def encode_value(value: JobEvent | bytes) -> bytes:
    if isinstance(value, JobEvent):
        return value.to_bytes()
    return value

