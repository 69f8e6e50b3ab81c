"""
Durable topic backends.
"""

from ..config import TopicConfig
from .base import TopicPublisher, TopicRecord, TopicSubscriber
from .kafka import KafkaPublisher, KafkaSubscriber
from .memory import MemorySubscriber, MemoryTopic


def create_publisher(config: TopicConfig, memory: MemoryTopic | None = None) -> TopicPublisher:
    """Publisher for the configured backend; the memory backend needs its topic object."""
    if config.backend == "memory":
        if memory is None:
            raise ValueError("Memory backend requires a MemoryTopic instance")
        return memory
    return KafkaPublisher(config)


def create_subscriber(
    config: TopicConfig, topics: list[str], memory: MemoryTopic | None = None
) -> TopicSubscriber:
    if config.backend == "memory":
        if memory is None:
            raise ValueError("Memory backend requires a MemoryTopic instance")
        return memory.subscriber(config.consumer_group, topics)
    return KafkaSubscriber(config, topics)


__all__ = [
    "KafkaPublisher",
    "KafkaSubscriber",
    "MemorySubscriber",
    "MemoryTopic",
    "TopicPublisher",
    "TopicRecord",
    "TopicSubscriber",
    "create_publisher",
    "create_subscriber",
]
