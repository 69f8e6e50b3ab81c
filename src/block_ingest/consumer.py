#!/usr/bin/env python3
"""Topic consumer that persists blocks.

This module reads block envelopes from the topic, writes them through the
StorageWriter and acknowledges each record only after it has been handled.
Delivery is at-least-once; the storage constraints turn repeats into no-ops.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable

from .exceptions import (
    ProtocolDecodeError,
    ReorgConflictError,
    StorageConstraintError,
    StorageUnavailableError,
)
from .models import Block, TopicMessage
from .storage import StorageWriter, WriteOutcome
from .topic.base import TopicRecord, TopicSubscriber

# Get logger for this module
logger = logging.getLogger(__name__)

ReorgCallback = Callable[[ReorgConflictError], Awaitable[None] | None]


class BlockConsumer:
    """Consumes block messages and applies them to storage.

    This class is responsible for:
    - Decoding topic envelopes into Block objects
    - Writing each block before its transactions
    - Treating duplicates and replays as no-ops
    - Flagging reorg conflicts for operator follow-up
    - Isolating per-message failures so the stream keeps moving
    """

    METRICS_LOG_INTERVAL = 100  # messages

    def __init__(
        self,
        subscriber: TopicSubscriber,
        writer: StorageWriter,
        poll_timeout: float = 1.0,
        on_reorg: ReorgCallback | None = None,
        max_flagged: int = 10000,
        retry_delay: float = 1.0,
        max_retry_delay: float = 60.0,
    ) -> None:
        """Initialize the BlockConsumer.

        Args:
            subscriber: Topic subscriber to read from
            writer: Storage writer to apply blocks with
            poll_timeout: Seconds to wait for a record per poll
            on_reorg: Optional callback invoked for every reorg conflict
            max_flagged: Maximum number of flagged reorg heights kept in memory
            retry_delay: First backoff while the database is unreachable
            max_retry_delay: Upper bound for that backoff
        """
        self.subscriber = subscriber
        self.writer = writer
        self.poll_timeout = poll_timeout
        self.on_reorg = on_reorg
        self.max_flagged = max_flagged
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay

        # Flagged heights: (chain, block_number) -> conflicting incoming hash
        self.reorg_conflicts: OrderedDict[tuple[str, int], str] = OrderedDict()

        # Metrics tracking
        self.messages_received = 0
        self.blocks_inserted = 0
        self.blocks_duplicated = 0
        self.reorgs_detected = 0
        self.messages_invalid = 0
        self.messages_failed = 0
        self.storage_retries = 0

        self._stop_event = asyncio.Event()

    async def handle(self, record: TopicRecord) -> WriteOutcome:
        """Apply one record to storage.

        Never raises for problems confined to the message itself; those are
        logged with the record position so the message can be replayed.
        While the database is unreachable the write is retried with backoff;
        UNAVAILABLE means the consumer was stopped before it succeeded and
        the record must not be acknowledged.

        Args:
            record: Record delivered by the topic

        Returns:
            What happened to the message
        """
        self.messages_received += 1

        try:
            message = TopicMessage.deserialize(record.value)
        except ProtocolDecodeError as e:
            self.messages_invalid += 1
            logger.error(f"Skipping undecodable message at {record.describe()}: {e}")
            return WriteOutcome.INVALID

        block = message.block
        if record.key is not None and record.key != message.key:
            logger.warning(
                f"Record key {record.key!r} at {record.describe()} does not match chain {block.chain}"
            )

        try:
            outcome = await self._write_until_available(block, record)
        except ReorgConflictError as e:
            self.reorgs_detected += 1
            self._flag_reorg(e)
            logger.warning(
                f"REORG CONFLICT at {record.describe()}: {e}. "
                f"Existing row kept; height flagged for follow-up"
            )
            await self._notify_reorg(e)
            return WriteOutcome.REORG_CONFLICT
        except StorageConstraintError as e:
            self.messages_failed += 1
            logger.error(
                f"Failed to store message at {record.describe()}: {e}. Replay context: {e.context}"
            )
            return WriteOutcome.FAILED

        if outcome is WriteOutcome.UNAVAILABLE:
            logger.warning(f"Stopped before {block} at {record.describe()} could be stored")
        elif outcome is WriteOutcome.INSERTED:
            self.blocks_inserted += 1
            logger.info(f"Stored {block}")
        else:
            self.blocks_duplicated += 1
            logger.debug(f"Duplicate {block} at {record.describe()}, ignored")
        return outcome

    async def _write_until_available(self, block: Block, record: TopicRecord) -> WriteOutcome:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self.writer.write_block, block)
            except StorageUnavailableError as e:
                attempt += 1
                self.storage_retries += 1
                delay = min(self.retry_delay * 2 ** (attempt - 1), self.max_retry_delay)
                logger.warning(
                    f"Storage unavailable for {record.describe()} (attempt {attempt}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    return WriteOutcome.UNAVAILABLE
                except TimeoutError:
                    pass

    def _flag_reorg(self, conflict: ReorgConflictError) -> None:
        key = (conflict.chain, conflict.block_number)
        if key in self.reorg_conflicts:
            self.reorg_conflicts.move_to_end(key)
        elif len(self.reorg_conflicts) >= self.max_flagged:
            self.reorg_conflicts.popitem(last=False)
        self.reorg_conflicts[key] = conflict.incoming_hash

    async def _notify_reorg(self, conflict: ReorgConflictError) -> None:
        if self.on_reorg is None:
            return
        try:
            result = self.on_reorg(conflict)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Reorg callback failed: {e}", exc_info=True)

    async def run(self) -> None:
        """Consume until ``stop`` is called."""
        logger.info("Starting block consumer...")
        self._stop_event.clear()

        try:
            while not self._stop_event.is_set():
                record = await self.subscriber.receive(self.poll_timeout)
                if record is None:
                    continue

                outcome = await self.handle(record)
                if outcome is WriteOutcome.UNAVAILABLE:
                    break
                await self.subscriber.ack(record)

                if self.messages_received % self.METRICS_LOG_INTERVAL == 0:
                    self.log_metrics()
        except asyncio.CancelledError:
            logger.info("Consumer cancelled")
            raise
        finally:
            self.log_metrics()
            logger.info("Block consumer stopped")

    def stop(self) -> None:
        """Stop after the message in progress."""
        self._stop_event.set()

    def get_metrics(self) -> dict[str, int]:
        """Get current processing metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "messages_received": self.messages_received,
            "blocks_inserted": self.blocks_inserted,
            "blocks_duplicated": self.blocks_duplicated,
            "reorgs_detected": self.reorgs_detected,
            "messages_invalid": self.messages_invalid,
            "messages_failed": self.messages_failed,
            "storage_retries": self.storage_retries,
            "flagged_heights": len(self.reorg_conflicts),
        }

    def log_metrics(self) -> None:
        """Log current processing metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"Consumer Metrics: "
            f"Received={metrics['messages_received']}, "
            f"Inserted={metrics['blocks_inserted']}, "
            f"Duplicates={metrics['blocks_duplicated']}, "
            f"Reorgs={metrics['reorgs_detected']}, "
            f"Invalid={metrics['messages_invalid']}, "
            f"Failed={metrics['messages_failed']}, "
            f"StorageRetries={metrics['storage_retries']}"
        )
