"""
Block ingestion service.

This module wires the configured chains into ingestion drivers, runs them
next to the storage consumer and coordinates shutdown. Each driver runs in
its own task, so one chain failing never stops the others.
"""

import asyncio
import logging

from .adapters import ChainAdapter, create_adapter
from .config import IngestConfig
from .consumer import BlockConsumer
from .cursor import CursorStore, FileCursorStore, MemoryCursorStore
from .driver import DriverState, IngestionDriver
from .producer import BlockProducer
from .storage import StorageWriter
from .topic import MemoryTopic, TopicPublisher, TopicSubscriber, create_publisher, create_subscriber

logger = logging.getLogger(__name__)

ROLES = ("all", "produce", "consume")


def _crashed(task: asyncio.Task | None) -> bool:
    return task is not None and task.done() and not task.cancelled() and task.exception() is not None


class IngestionService:
    """
    Runs every chain driver and the consumer until shutdown.

    The producer side (drivers) and the consumer side can run in separate
    processes through ``role``; in local mode both share one in-process topic.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(
        self,
        config: IngestConfig,
        role: str = "all",
        adapters: dict[str, ChainAdapter] | None = None,
        memory_topic: MemoryTopic | None = None,
        cursor_store: CursorStore | None = None,
        writer: StorageWriter | None = None,
    ) -> None:
        """
        Initialize the IngestionService.

        Args:
            config: Service configuration
            role: 'all', 'produce' (drivers only) or 'consume' (consumer only)
            adapters: Prebuilt adapters by chain name; built from config otherwise
            memory_topic: Shared in-process topic for the memory backend
            cursor_store: Cursor persistence; file or memory store from config otherwise
            writer: Storage writer; built from config otherwise

        Raises:
            ValueError: If the role is unknown or a component cannot be built
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}. Expected one of: {', '.join(ROLES)}")

        self.config = config
        self.role = role
        self.shutdown_event = asyncio.Event()
        self.consumer_failed = False

        if config.topic.backend == "memory" and memory_topic is None:
            memory_topic = MemoryTopic()
            if role != "all":
                logger.warning(
                    f"Memory topic with role '{role}': messages do not leave this process"
                )
        self.memory_topic = memory_topic

        self.adapters: dict[str, ChainAdapter] = {}
        self.drivers: list[IngestionDriver] = []
        self.publisher: TopicPublisher | None = None
        self.producer: BlockProducer | None = None
        self.subscriber: TopicSubscriber | None = None
        self.consumer: BlockConsumer | None = None
        self.writer: StorageWriter | None = None

        if role in ("all", "produce"):
            self._init_producer_side(adapters or {}, cursor_store)
        if role in ("all", "consume"):
            self._init_consumer_side(writer)

    def _init_producer_side(
        self, adapters: dict[str, ChainAdapter], cursor_store: CursorStore | None
    ) -> None:
        if cursor_store is None:
            if self.config.cursor_file:
                cursor_store = FileCursorStore(self.config.cursor_file)
            else:
                logger.warning("No cursor file configured; cursors will not survive a restart")
                cursor_store = MemoryCursorStore()

        self.publisher = create_publisher(self.config.topic, self.memory_topic)
        self.producer = BlockProducer(self.publisher, self.config.topic)

        for chain_config in self.config.chains:
            adapter = adapters.get(chain_config.name) or create_adapter(
                chain_config, self.config.retry
            )
            self.adapters[chain_config.name] = adapter
            self.drivers.append(
                IngestionDriver(
                    chain_config=chain_config,
                    adapter=adapter,
                    producer=self.producer,
                    cursor_store=cursor_store,
                    retry=self.config.retry,
                    batch_size=self.config.batch_size,
                    lag=self.config.lag,
                    max_unit_failures=self.config.max_unit_failures,
                )
            )

    def _init_consumer_side(self, writer: StorageWriter | None) -> None:
        self.writer = writer or StorageWriter.from_config(self.config.storage)
        self.subscriber = create_subscriber(
            self.config.topic, self.consumer_topics(), self.memory_topic
        )
        self.consumer = BlockConsumer(
            subscriber=self.subscriber,
            writer=self.writer,
            poll_timeout=self.config.topic.poll_timeout,
            retry_delay=self.config.retry.base_delay,
            max_retry_delay=self.config.retry.max_delay,
        )

    def consumer_topics(self) -> list[str]:
        """Topics the consumer subscribes to."""
        topics: list[str] = []
        for chain in self.config.chains:
            for schema in chain.schemas:
                name = self.config.topic.topic_for(chain.name, schema)
                if name not in topics:
                    topics.append(name)
        return topics

    async def run(self) -> int:
        """
        Run until shutdown is requested or every driver has finished.

        Returns:
            Process exit code: 0 on clean shutdown, 1 if any driver failed
        """
        logger.info(f"Block ingestion service starting (role: {self.role})...")

        if self.writer is not None:
            await asyncio.to_thread(self.writer.create_schema)

        driver_tasks = {
            driver.chain: asyncio.create_task(driver.run(), name=f"driver-{driver.chain}")
            for driver in self.drivers
        }
        consumer_task = (
            asyncio.create_task(self.consumer.run(), name="consumer") if self.consumer else None
        )
        status_task = asyncio.create_task(self._periodic_status_logger(), name="status")

        try:
            while not self.shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break
                except TimeoutError:
                    pass

                if driver_tasks and all(task.done() for task in driver_tasks.values()):
                    logger.error("All chain drivers have finished, shutting down")
                    break
                if consumer_task is not None and consumer_task.done():
                    logger.error("Consumer task ended unexpectedly, shutting down")
                    self.consumer_failed = True
                    break
        finally:
            await self._shutdown(driver_tasks, consumer_task, status_task)

        return self.exit_code(driver_tasks, consumer_task)

    async def _shutdown(
        self,
        driver_tasks: dict[str, asyncio.Task],
        consumer_task: asyncio.Task | None,
        status_task: asyncio.Task,
    ) -> None:
        logger.info("Shutting down block ingestion service...")

        for driver in self.drivers:
            driver.stop()
        if driver_tasks:
            await asyncio.gather(*driver_tasks.values(), return_exceptions=True)

        if self.consumer is not None:
            self.consumer.stop()
        if consumer_task is not None:
            results = await asyncio.gather(consumer_task, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.error(f"Consumer failed: {results[0]}", exc_info=results[0])

        status_task.cancel()
        try:
            await status_task
        except asyncio.CancelledError:
            pass

        for chain, adapter in self.adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Error closing adapter for {chain}: {e}")
        if self.publisher is not None:
            await self.publisher.close()
        if self.subscriber is not None:
            await self.subscriber.close()

        self.log_status()
        logger.info("Block ingestion service stopped")

    def exit_code(
        self, driver_tasks: dict[str, asyncio.Task], consumer_task: asyncio.Task | None = None
    ) -> int:
        failed = []
        for driver in self.drivers:
            task = driver_tasks.get(driver.chain)
            if driver.state is DriverState.FAILED or _crashed(task):
                failed.append(driver.chain)

        if failed:
            logger.error(f"Chain drivers failed: {', '.join(failed)}")
        if self.consumer_failed or _crashed(consumer_task):
            logger.error("Consumer failed")
            return 1
        return 1 if failed else 0

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while True:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            self.log_status()

    def log_status(self) -> None:
        for driver in self.drivers:
            status = driver.get_status()
            logger.info(
                f"Chain {status['chain']}: state={status['state']}, cursor={status['cursor']}, "
                f"produced={status['blocks_produced']}, gaps healed={status['gaps_healed']}, "
                f"reorgs={status['reorgs_detected']}"
            )
        if self.consumer is not None:
            self.consumer.log_metrics()

    def stop(self) -> None:
        """Request shutdown of every component."""
        self.shutdown_event.set()
