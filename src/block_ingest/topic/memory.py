"""
In-process topic used in local mode and tests.

Each topic is a single ordered partition. Consumer groups keep committed
offsets on the topic object, so a new subscriber for the same group resumes
after the last acknowledged record and unacknowledged records are delivered
again, as with a broker.
"""

import asyncio
import logging

from .base import TopicRecord

logger = logging.getLogger(__name__)


class MemoryTopic:
    """Append-only logs keyed by topic name."""

    def __init__(self) -> None:
        self._logs: dict[str, list[TopicRecord]] = {}
        self._committed: dict[tuple[str, str], int] = {}
        self._changed = asyncio.Condition()

    async def publish(self, topic: str, key: bytes, value: bytes) -> int:
        async with self._changed:
            log = self._logs.setdefault(topic, [])
            record = TopicRecord(topic=topic, partition=0, offset=len(log), key=key, value=value)
            log.append(record)
            self._changed.notify_all()
        logger.debug(f"Appended {record.describe()}")
        return record.offset

    async def close(self) -> None:
        return None

    def records(self, topic: str) -> list[TopicRecord]:
        """Snapshot of everything published to ``topic``."""
        return list(self._logs.get(topic, []))

    def committed(self, group: str, topic: str) -> int:
        return self._committed.get((group, topic), 0)

    def subscriber(self, group: str, topics: list[str]) -> "MemorySubscriber":
        return MemorySubscriber(self, group, topics)


class MemorySubscriber:
    """Reads one or more memory topics on behalf of a consumer group."""

    def __init__(self, topic: MemoryTopic, group: str, topics: list[str]) -> None:
        self._topic = topic
        self.group = group
        self.topics = list(topics)
        self._positions = {name: topic.committed(group, name) for name in self.topics}
        self._next_index = 0

    def seek(self, topic: str, offset: int) -> None:
        """Replay ``topic`` from ``offset`` on the next receive."""
        self._positions[topic] = max(0, offset)

    def _take(self) -> TopicRecord | None:
        # Round-robin across topics; order within a topic is preserved
        for i in range(len(self.topics)):
            name = self.topics[(self._next_index + i) % len(self.topics)]
            log = self._topic._logs.get(name, [])
            position = self._positions[name]
            if position < len(log):
                self._positions[name] = position + 1
                self._next_index = (self._next_index + i + 1) % len(self.topics)
                return log[position]
        return None

    async def receive(self, timeout: float) -> TopicRecord | None:
        async with self._topic._changed:
            record = self._take()
            if record is not None:
                return record
            try:
                await asyncio.wait_for(self._topic._changed.wait(), timeout=timeout)
            except TimeoutError:
                return None
            return self._take()

    async def ack(self, record: TopicRecord) -> None:
        key = (self.group, record.topic)
        current = self._topic._committed.get(key, 0)
        self._topic._committed[key] = max(current, record.offset + 1)

    async def close(self) -> None:
        return None
