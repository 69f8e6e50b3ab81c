"""
Interfaces of the durable topic between producer and consumer.
"""

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class TopicRecord:
    """
    One delivered message.

    Attributes:
        topic: Topic the record was read from
        partition: Partition within the topic
        offset: Position within the partition
        key: Ordering key (chain identifier)
        value: Serialized envelope
        handle: Backend-specific object needed to acknowledge the record
    """

    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes
    handle: Any = None

    def describe(self) -> str:
        return f"{self.topic}[{self.partition}]@{self.offset}"


class TopicPublisher(Protocol):
    """Publishes messages and waits for the broker acknowledgment."""

    async def publish(self, topic: str, key: bytes, value: bytes) -> int:
        """
        Publish one message.

        Returns:
            Offset assigned by the topic

        Raises:
            PublishError: If the message was not acknowledged
        """
        ...

    async def close(self) -> None: ...


class TopicSubscriber(Protocol):
    """Receives messages for a consumer group with at-least-once semantics."""

    async def receive(self, timeout: float) -> TopicRecord | None:
        """Next record, or None if nothing arrived within ``timeout`` seconds."""
        ...

    async def ack(self, record: TopicRecord) -> None:
        """Commit the record's offset for the group."""
        ...

    async def close(self) -> None: ...
