"""
Kafka-backed event channel using aiokafka.

Publishing waits for the broker acknowledgement (acks=all, idempotent
producer). Subscriptions use a consumer group with auto-commit disabled: ack
commits the offset after the record, nack seeks back so the record is fetched
again.
"""

import logging
from types import TracebackType

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError
from aiokafka.structs import ConsumerRecord, TopicPartition

from jobflow.channel.base import Delivery, Headers, PublishResult, encode_value
from jobflow.config import Settings
from jobflow.errors import TransportError
from jobflow.types.events import JobEvent

logger = logging.getLogger(__name__)


class KafkaEventChannel:
    """Event channel on a Kafka cluster."""

    def __init__(self, settings: Settings, client_id: str = "jobflow"):
        self._settings = settings
        self._client_id = client_id
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        if self._producer is not None:
            return

        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._settings.kafka_bootstrap_servers,
            client_id=self._client_id,
            request_timeout_ms=self._settings.kafka_request_timeout_ms,
            acks="all",
            enable_idempotence=True,
            retry_backoff_ms=1000,
        )
        try:
            await self._producer.start()
        except KafkaError as e:
            self._producer = None
            raise TransportError("Failed to start Kafka producer", e) from e

        logger.info(
            "Kafka producer started",
            extra={"bootstrap_servers": self._settings.kafka_bootstrap_servers},
        )

    async def stop(self) -> None:
        if self._producer is None:
            return
        try:
            await self._producer.flush()
            await self._producer.stop()
            logger.info("Kafka producer stopped")
        finally:
            self._producer = None

    async def publish(
        self,
        channel: str,
        key: str,
        value: JobEvent | bytes,
        headers: Headers | None = None,
    ) -> PublishResult:
        if self._producer is None:
            raise TransportError(f"Producer not started, cannot publish to {channel}")

        try:
            metadata = await self._producer.send_and_wait(
                channel,
                key=key.encode("utf-8"),
                value=encode_value(value),
                headers=[(k, v.encode("utf-8")) for k, v in (headers or {}).items()],
            )
        except KafkaError as e:
            logger.error(
                "Failed to publish event",
                extra={"channel": channel, "key": key},
                exc_info=True,
            )
            raise TransportError(f"Failed to publish to {channel}", e) from e

        logger.debug(
            "Event published",
            extra={
                "channel": channel,
                "key": key,
                "partition": metadata.partition,
                "offset": metadata.offset,
            },
        )
        return PublishResult(channel=channel, partition=metadata.partition, offset=metadata.offset)

    def subscribe(self, channel: str, group_id: str) -> "KafkaSubscription":
        return KafkaSubscription(self._settings, channel, group_id, self._client_id)

    async def ensure_topics(self) -> list[str]:
        """
        Create the request, status and dead-letter topics if they are missing.

        Returns:
            Names of the topics that were created.
        """
        wanted = {
            self._settings.topic_requests: (
                self._settings.topic_partitions,
                self._settings.topic_retention_ms,
            ),
            self._settings.topic_status: (
                self._settings.topic_partitions,
                self._settings.topic_retention_ms,
            ),
            self._settings.topic_dlq: (
                self._settings.topic_dlq_partitions,
                self._settings.topic_dlq_retention_ms,
            ),
        }

        admin = AIOKafkaAdminClient(
            bootstrap_servers=self._settings.kafka_bootstrap_servers,
            client_id=f"{self._client_id}-admin",
            request_timeout_ms=self._settings.kafka_request_timeout_ms,
        )
        try:
            await admin.start()
            existing = set(await admin.list_topics())
            missing = [
                NewTopic(
                    name=name,
                    num_partitions=partitions,
                    replication_factor=1,
                    topic_configs={"retention.ms": str(retention_ms)},
                )
                for name, (partitions, retention_ms) in wanted.items()
                if name not in existing
            ]
            if missing:
                await admin.create_topics(missing)
        except KafkaError as e:
            raise TransportError("Failed to provision topics", e) from e
        finally:
            await admin.close()

        created = [topic.name for topic in missing]
        if created:
            logger.info("Created topics", extra={"topics": created})
        return created


class KafkaSubscription:
    """A consumer-group member reading one topic with manual offset commits."""

    def __init__(self, settings: Settings, channel: str, group_id: str, client_id: str):
        self._settings = settings
        self._channel = channel
        self._group_id = group_id
        self._client_id = client_id
        self._consumer: AIOKafkaConsumer | None = None

    async def __aenter__(self) -> "KafkaSubscription":
        if self._consumer is not None:
            return self

        consumer = AIOKafkaConsumer(
            self._channel,
            bootstrap_servers=self._settings.kafka_bootstrap_servers,
            group_id=self._group_id,
            client_id=f"{self._client_id}-{self._group_id}",
            request_timeout_ms=self._settings.kafka_request_timeout_ms,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=10,
            max_poll_interval_ms=300000,
            session_timeout_ms=30000,
            heartbeat_interval_ms=10000,
        )
        try:
            await consumer.start()
        except KafkaError as e:
            raise TransportError(f"Failed to subscribe to {self._channel}", e) from e

        self._consumer = consumer
        logger.info(
            "Kafka consumer started",
            extra={"channel": self._channel, "group_id": self._group_id},
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._consumer is None:
            return
        consumer, self._consumer = self._consumer, None
        await consumer.stop()
        logger.info(
            "Kafka consumer stopped",
            extra={"channel": self._channel, "group_id": self._group_id},
        )

    def __aiter__(self) -> "KafkaSubscription":
        return self

    async def __anext__(self) -> Delivery:
        if self._consumer is None:
            await self.__aenter__()
        assert self._consumer is not None

        try:
            record = await self._consumer.getone()
        except KafkaError as e:
            raise TransportError(f"Failed to fetch from {self._channel}", e) from e
        return self._delivery(self._consumer, record)

    def _delivery(self, consumer: AIOKafkaConsumer, record: ConsumerRecord) -> Delivery:
        tp = TopicPartition(record.topic, record.partition)

        async def ack() -> None:
            try:
                await consumer.commit({tp: record.offset + 1})
            except KafkaError as e:
                raise TransportError(f"Failed to commit offset on {record.topic}", e) from e

        async def nack() -> None:
            try:
                consumer.seek(tp, record.offset)
            except KafkaError as e:
                # Partition revoked; the new owner resumes from the committed offset
                raise TransportError(f"Failed to rewind {record.topic}", e) from e

        return Delivery(
            channel=record.topic,
            partition=record.partition,
            offset=record.offset,
            key=record.key.decode("utf-8") if record.key else None,
            value=record.value or b"",
            headers={
                k: v.decode("utf-8") if isinstance(v, bytes) else v
                for k, v in (record.headers or [])
            },
            _ack=ack,
            _nack=nack,
        )
