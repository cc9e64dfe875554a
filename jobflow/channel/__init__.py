"""
Event channel module.
Ordered, partitioned, at-least-once delivery of job events.
"""

from jobflow.channel.base import Delivery, EventChannel, PublishResult, Subscription
from jobflow.channel.consumer import ErrorKind, EventConsumer, classify_error
from jobflow.channel.kafka import KafkaEventChannel
from jobflow.channel.memory import InMemoryEventChannel
from jobflow.config import Settings


def create_event_channel(settings: Settings, client_id: str = "jobflow") -> EventChannel:
    """Build the channel selected by settings.channel_backend."""
    if settings.channel_backend == "memory":
        return InMemoryEventChannel.from_settings(settings)
    return KafkaEventChannel(settings, client_id=client_id)


__all__ = [
    "Delivery",
    "EventChannel",
    "PublishResult",
    "Subscription",
    "ErrorKind",
    "EventConsumer",
    "classify_error",
    "KafkaEventChannel",
    "InMemoryEventChannel",
    "create_event_channel",
]
