"""
InMemoryEventChannel: asyncio.Condition-based channel for tests and development.

Each channel is a fixed set of append-only partition logs. Consumer groups
track, per partition, which offsets are acked and which are in flight.

Delivery rules
--------------
- partitions are split between the current members of a group
  (partition p belongs to members[p % len(members)])
- a record is deliverable when it is not acked, not in flight, its
  `available_at` has passed, and no earlier record with the same key in its
  partition is still unacked
- a record that is not yet visible holds back later records of its own key
  only, not the rest of the partition
- nack, or the owning member leaving, makes an in-flight record deliverable again

Safe for multiple concurrent coroutines in a single event loop. NOT safe
across processes or threads.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from types import TracebackType

from jobflow.channel.base import Delivery, Headers, PublishResult, encode_value
from jobflow.config import Settings
from jobflow.errors import TransportError
from jobflow.types.events import JobEvent, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Record:
    offset: int
    sequence: int
    key: str | None
    value: bytes
    headers: Headers
    available_at: datetime | None


@dataclass
class _GroupState:
    partitions: int
    members: list[int] = field(default_factory=list)
    low_watermark: list[int] = field(default_factory=list)
    acked: list[set[int]] = field(default_factory=list)
    in_flight: dict[tuple[int, int], int] = field(default_factory=dict)
    delivery_counts: dict[tuple[int, int], int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.low_watermark = [0] * self.partitions
        self.acked = [set() for _ in range(self.partitions)]

    def assigned(self, member: int) -> list[int]:
        if member not in self.members:
            return []
        return [
            p for p in range(self.partitions)
            if self.members[p % len(self.members)] == member
        ]


class InMemoryEventChannel:
    """
    In-process partitioned event channel.

    Parameters
    ----------
    partitions         : partition count per channel name
    default_partitions : partition count for channels not listed above
    clock              : returns the current aware UTC datetime
    """

    def __init__(
        self,
        partitions: dict[str, int] | None = None,
        default_partitions: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._partition_counts = dict(partitions or {})
        self._default_partitions = default_partitions
        self._clock = clock
        self._logs: dict[str, list[list[_Record]]] = {}
        self._groups: dict[tuple[str, str], _GroupState] = {}
        self._sequence = itertools.count()
        self._member_ids = itertools.count(1)
        self._condition = asyncio.Condition()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> InMemoryEventChannel:
        return cls(
            partitions={
                settings.topic_requests: settings.topic_partitions,
                settings.topic_status: settings.topic_partitions,
                settings.topic_dlq: settings.topic_dlq_partitions,
            },
            default_partitions=settings.topic_partitions,
        )

    async def start(self) -> None:
        self._closed = False

    async def stop(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()

    def _log(self, channel: str) -> list[list[_Record]]:
        if channel not in self._logs:
            count = self._partition_counts.get(channel, self._default_partitions)
            self._logs[channel] = [[] for _ in range(count)]
        return self._logs[channel]

    def _group(self, channel: str, group_id: str) -> _GroupState:
        state = self._groups.get((channel, group_id))
        if state is None:
            state = _GroupState(partitions=len(self._log(channel)))
            self._groups[(channel, group_id)] = state
        return state

    def partition_for(self, channel: str, key: str) -> int:
        """Stable partition for a key: crc32 of its UTF-8 bytes modulo the partition count."""
        return zlib.crc32(key.encode("utf-8")) % len(self._log(channel))

    async def publish(
        self,
        channel: str,
        key: str,
        value: JobEvent | bytes,
        headers: Headers | None = None,
    ) -> PublishResult:
        if self._closed:
            raise TransportError(f"Channel {channel} is stopped")

        available_at = value.available_at if isinstance(value, JobEvent) else None
        async with self._condition:
            partition = self.partition_for(channel, key)
            log = self._log(channel)[partition]
            record = _Record(
                offset=len(log),
                sequence=next(self._sequence),
                key=key,
                value=encode_value(value),
                headers=dict(headers or {}),
                available_at=available_at,
            )
            log.append(record)
            self._condition.notify_all()

        return PublishResult(channel=channel, partition=partition, offset=record.offset)

    def subscribe(self, channel: str, group_id: str) -> InMemorySubscription:
        return InMemorySubscription(self, channel, group_id)

    def events(self, channel: str) -> list[JobEvent]:
        """Every event ever published to a channel, in publish order."""
        records = sorted(
            itertools.chain.from_iterable(self._log(channel)),
            key=lambda r: r.sequence,
        )
        return [JobEvent.from_bytes(r.value) for r in records]

    def lag(self, channel: str, group_id: str) -> int:
        """Number of records the group has not acked yet."""
        state = self._group(channel, group_id)
        return sum(
            len(log) - state.low_watermark[p] - len(state.acked[p])
            for p, log in enumerate(self._log(channel))
        )

    async def _join(self, channel: str, group_id: str) -> int:
        async with self._condition:
            member = next(self._member_ids)
            self._group(channel, group_id).members.append(member)
            self._condition.notify_all()
        logger.debug(
            "Member joined group",
            extra={"channel": channel, "group_id": group_id, "member": member},
        )
        return member

    async def _leave(self, channel: str, group_id: str, member: int) -> None:
        async with self._condition:
            state = self._group(channel, group_id)
            if member in state.members:
                state.members.remove(member)
            for position, owner in list(state.in_flight.items()):
                if owner == member:
                    del state.in_flight[position]
            self._condition.notify_all()

    def _claim(self, channel: str, state: _GroupState, member: int) -> Delivery | None:
        now = self._clock()
        logs = self._log(channel)
        for partition in state.assigned(member):
            log = logs[partition]
            held_keys: set[str | None] = set()
            for offset in range(state.low_watermark[partition], len(log)):
                if offset in state.acked[partition]:
                    continue
                record = log[offset]
                if record.key in held_keys or (partition, offset) in state.in_flight:
                    held_keys.add(record.key)
                    continue
                if record.available_at is not None and record.available_at > now:
                    held_keys.add(record.key)
                    continue

                position = (partition, offset)
                state.in_flight[position] = member
                state.delivery_counts[position] = state.delivery_counts.get(position, 0) + 1
                return self._delivery(channel, state, partition, record)
        return None

    def _delivery(
        self, channel: str, state: _GroupState, partition: int, record: _Record
    ) -> Delivery:
        position = (partition, record.offset)

        async def ack() -> None:
            async with self._condition:
                state.in_flight.pop(position, None)
                state.acked[partition].add(record.offset)
                while state.low_watermark[partition] in state.acked[partition]:
                    state.acked[partition].remove(state.low_watermark[partition])
                    state.low_watermark[partition] += 1
                self._condition.notify_all()

        async def nack() -> None:
            async with self._condition:
                state.in_flight.pop(position, None)
                self._condition.notify_all()

        return Delivery(
            channel=channel,
            partition=partition,
            offset=record.offset,
            key=record.key,
            value=record.value,
            headers=dict(record.headers),
            delivery_count=state.delivery_counts[position],
            _ack=ack,
            _nack=nack,
        )

    def _seconds_until_visible(self, channel: str, state: _GroupState, member: int) -> float | None:
        now = self._clock()
        logs = self._log(channel)
        waits = [
            (record.available_at - now).total_seconds()
            for partition in state.assigned(member)
            for record in logs[partition][state.low_watermark[partition]:]
            if record.available_at is not None and record.available_at > now
        ]
        return max(min(waits), 0.001) if waits else None

    async def _next_delivery(self, channel: str, group_id: str, member: int) -> Delivery | None:
        async with self._condition:
            while True:
                if self._closed:
                    return None
                state = self._group(channel, group_id)
                delivery = self._claim(channel, state, member)
                if delivery is not None:
                    return delivery
                timeout = self._seconds_until_visible(channel, state, member)
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout)
                except TimeoutError:
                    pass


class InMemorySubscription:
    """One group member's view of an in-memory channel."""

    def __init__(self, broker: InMemoryEventChannel, channel: str, group_id: str) -> None:
        self._broker = broker
        self._channel = channel
        self._group_id = group_id
        self._member: int | None = None

    async def __aenter__(self) -> InMemorySubscription:
        if self._member is None:
            self._member = await self._broker._join(self._channel, self._group_id)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._member is not None:
            member, self._member = self._member, None
            await self._broker._leave(self._channel, self._group_id, member)

    def __aiter__(self) -> InMemorySubscription:
        return self

    async def __anext__(self) -> Delivery:
        if self._member is None:
            await self.__aenter__()
        assert self._member is not None
        delivery = await self._broker._next_delivery(self._channel, self._group_id, self._member)
        if delivery is None:
            raise StopAsyncIteration
        return delivery
