"""
Kafka topic backend built on confluent-kafka.

The confluent clients are blocking, so every call that can wait on the
network runs in a worker thread. Publishing waits for the delivery report
of the message before returning, which is the acknowledgment the ingestion
driver needs before it advances a cursor.
"""

import asyncio
import logging
import threading
from typing import Any

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer

from ..config import TopicConfig
from ..exceptions import PublishError
from .base import TopicRecord

logger = logging.getLogger(__name__)


def producer_settings(config: TopicConfig) -> dict[str, Any]:
    return {
        "bootstrap.servers": config.bootstrap_servers,
        "enable.idempotence": True,
        "acks": "all",
        "compression.type": "zstd",
        "linger.ms": 5,
        "message.timeout.ms": int(config.ack_timeout * 1000),
        "max.in.flight.requests.per.connection": 5,
    }


def consumer_settings(config: TopicConfig) -> dict[str, Any]:
    return {
        "bootstrap.servers": config.bootstrap_servers,
        "group.id": config.consumer_group,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
        "enable.partition.eof": False,
    }


class KafkaPublisher:
    """
    Publishes messages to Kafka and waits for each delivery report.

    ``produce`` only enqueues; delivery reports are served by a background
    thread polling the producer. Each publish waits on its own future, so a
    slow delivery on one topic never holds up another chain's publish.
    """

    POLL_INTERVAL = 0.1  # seconds

    def __init__(self, config: TopicConfig, producer: Producer | None = None) -> None:
        self.config = config
        self._producer = producer or Producer(producer_settings(config))
        self._poll_stop = threading.Event()
        self._poller: threading.Thread | None = None

    def _ensure_poller(self) -> None:
        if self._poller is None:
            self._poller = threading.Thread(
                target=self._poll_loop, name="kafka-delivery-reports", daemon=True
            )
            self._poller.start()

    def _poll_loop(self) -> None:
        while not self._poll_stop.is_set():
            self._producer.poll(self.POLL_INTERVAL)

    @staticmethod
    def _resolve(future: asyncio.Future, topic: str, err: KafkaError | None, msg: Any) -> None:
        if future.done():
            return
        if err is not None:
            future.set_exception(PublishError(f"Delivery to {topic} failed: {err}"))
        else:
            future.set_result(msg)

    async def publish(self, topic: str, key: bytes, value: bytes) -> int:
        loop = asyncio.get_running_loop()
        delivered = loop.create_future()

        def on_delivery(err: KafkaError | None, msg: Any) -> None:
            # Runs on the poller thread
            loop.call_soon_threadsafe(self._resolve, delivered, topic, err, msg)

        try:
            self._producer.produce(topic, value=value, key=key, on_delivery=on_delivery)
        except (BufferError, KafkaException) as e:
            raise PublishError(f"Failed to enqueue message for {topic}: {e}") from e
        self._ensure_poller()

        try:
            message = await asyncio.wait_for(delivered, timeout=self.config.ack_timeout)
        except TimeoutError:
            raise PublishError(
                f"No delivery report for {topic} within {self.config.ack_timeout}s"
            ) from None
        return message.offset()

    async def close(self) -> None:
        self._poll_stop.set()
        if self._poller is not None:
            await asyncio.to_thread(self._poller.join)
        remaining = await asyncio.to_thread(self._producer.flush, self.config.ack_timeout)
        if remaining:
            logger.warning(f"{remaining} messages were not delivered before shutdown")


class KafkaSubscriber:
    """Polls Kafka for a consumer group, committing offsets explicitly."""

    def __init__(
        self,
        config: TopicConfig,
        topics: list[str],
        consumer: Consumer | None = None,
    ) -> None:
        self.config = config
        self.topics = list(topics)
        self._consumer = consumer or Consumer(consumer_settings(config))
        self._consumer.subscribe(self.topics)
        logger.info(f"Subscribed group {config.consumer_group} to {', '.join(self.topics)}")

    def _poll_blocking(self, timeout: float) -> TopicRecord | None:
        msg = self._consumer.poll(timeout)
        if msg is None:
            return None
        if msg.error():
            error = msg.error()
            if error.fatal():
                raise KafkaException(error)
            logger.warning(f"Consumer error: {error}")
            return None
        return TopicRecord(
            topic=msg.topic(),
            partition=msg.partition(),
            offset=msg.offset(),
            key=msg.key(),
            value=msg.value(),
            handle=msg,
        )

    async def receive(self, timeout: float) -> TopicRecord | None:
        return await asyncio.to_thread(self._poll_blocking, timeout)

    async def ack(self, record: TopicRecord) -> None:
        await asyncio.to_thread(self._consumer.commit, message=record.handle, asynchronous=False)

    async def close(self) -> None:
        await asyncio.to_thread(self._consumer.close)
