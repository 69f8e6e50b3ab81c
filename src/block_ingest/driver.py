"""
Per-chain ingestion driver.

The driver owns one chain's cursor and moves it through two phases:
historical backfill up to ``head - lag`` and live tailing of the
subscription. Both phases publish through the same path, and the cursor
advances only after the topic acknowledged a block.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from .adapters.base import ChainAdapter
from .config import ChainConfig, RetryConfig
from .cursor import Cursor, CursorStore
from .exceptions import ConfigurationFatalError, IngestError, PublishError, RangeFetchError
from .models import Block
from .producer import BlockProducer
from .utils.retry import backoff_delay

T = TypeVar("T")

_END = object()

# Produced heights whose hash is remembered for reorg detection
REORG_WINDOW = 128


class DriverState(Enum):
    """Lifecycle of a chain driver."""
    STARTING = "starting"
    BACKFILLING = "backfilling"
    LIVE = "live"
    STOPPED = "stopped"
    FAILED = "failed"


class IngestionDriver:
    """
    Drives one chain from its cursor to the live head.

    Features:
    - Ascending backfill in bounded batches
    - Gap healing when the live stream skips heights
    - Republishing blocks replaced by a reorg without moving the cursor
    - Bounded retries per block; only configuration-level failures are fatal
    - Cooperative shutdown between blocks
    """

    def __init__(
        self,
        chain_config: ChainConfig,
        adapter: ChainAdapter,
        producer: BlockProducer,
        cursor_store: CursorStore,
        retry: RetryConfig | None = None,
        batch_size: int = 10,
        lag: int = 1,
        max_unit_failures: int = 5,
    ) -> None:
        """
        Initialize the IngestionDriver.

        Args:
            chain_config: Configuration of the chain to ingest
            adapter: Adapter for the chain
            producer: Shared block producer
            cursor_store: Where the cursor is persisted
            retry: Backoff settings between failed units of work
            batch_size: Blocks requested per range fetch
            lag: Blocks kept behind the head when computing the backfill end
            max_unit_failures: Consecutive failures before the driver gives up
        """
        self.chain_config = chain_config
        self.chain = chain_config.name
        self.adapter = adapter
        self.producer = producer
        self.cursor_store = cursor_store
        self.retry = retry or RetryConfig()
        self.batch_size = batch_size
        self.lag = lag
        self.max_unit_failures = max_unit_failures

        self.state = DriverState.STARTING
        self.cursor: Cursor | None = None
        self.failure: Exception | None = None

        self.blocks_produced = 0
        self.gaps_healed = 0
        self.reorgs_detected = 0
        self._consecutive_failures = 0
        # Recently produced heights -> hash
        self._produced_hashes: dict[int, str] = {}
        self._stop_event = asyncio.Event()

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{self.chain}")

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown; the block in progress is finished or abandoned, never half-counted."""
        self.logger.info(f"Stop requested for {self.chain}")
        self._stop_event.set()

    async def run(self) -> DriverState:
        """
        Run backfill and live phases until stopped or failed.

        Returns:
            Final state, STOPPED or FAILED
        """
        self.logger.info(f"Starting ingestion driver for {self.chain}")

        try:
            self.cursor = await self._attempt(self._initialize_cursor, "cursor initialization")

            if self.cursor is not None and not self.stopping and self.chain_config.backfill_enabled:
                self.state = DriverState.BACKFILLING
                await self._backfill()

            if self.cursor is not None and not self.stopping:
                self.state = DriverState.LIVE
                self.logger.info(f"{self.chain} switching to live mode after block {self.cursor.block_number}")
                await self._live()

            self.state = DriverState.STOPPED

        except ConfigurationFatalError as e:
            self.state = DriverState.FAILED
            self.failure = e
            self.logger.error(f"Driver for {self.chain} failed: {e}")

        except Exception as e:
            self.state = DriverState.FAILED
            self.failure = e
            self.logger.error(f"Unexpected error in driver for {self.chain}: {e}", exc_info=True)

        self.logger.info(
            f"Driver for {self.chain} finished in state {self.state.value} "
            f"(produced {self.blocks_produced} blocks, cursor "
            f"{self.cursor.block_number if self.cursor else 'unset'})"
        )
        return self.state

    async def _initialize_cursor(self) -> Cursor:
        stored = await asyncio.to_thread(self.cursor_store.load, self.chain)
        if stored is not None:
            self.logger.info(f"Resuming {self.chain} from stored cursor {stored.block_number}")
            return stored

        if self.chain_config.start_block is not None:
            cursor = Cursor(chain=self.chain, block_number=self.chain_config.start_block - 1)
        else:
            head = await self.adapter.latest()
            cursor = Cursor(chain=self.chain, block_number=head.number)

        await asyncio.to_thread(self.cursor_store.save, cursor)
        self.logger.info(f"Initialized cursor for {self.chain} at {cursor.block_number}")
        return cursor

    async def _backfill(self) -> None:
        head = await self._attempt(self.adapter.latest, "head lookup")
        if head is None:
            return

        end = head.number - self.lag
        start = max(self.chain_config.start_block or 0, self.cursor.next_block)
        if start > end:
            self.logger.info(
                f"Nothing to backfill on {self.chain} (next {start}, head {head.number}, lag {self.lag})"
            )
            return

        self.logger.info(f"Backfilling {self.chain} blocks {start}-{end} ({end - start + 1} blocks)")
        await self._produce_range(start, end)
        if not self.stopping:
            self.logger.info(f"Backfill of {self.chain} complete up to block {self.cursor.block_number}")

    async def _produce_range(self, start: int, end: int) -> None:
        """Fetch and publish ``[start, end]`` in batches, resuming from the cursor after failures."""
        while not self.stopping:
            next_block = max(start, self.cursor.next_block)
            if next_block > end:
                return

            batch_end = min(next_block + self.batch_size - 1, end)
            try:
                blocks = await self.adapter.fetch_range(next_block, batch_end)
            except RangeFetchError as e:
                await self._publish_all(e.fetched)
                await self._record_failure(e.cause, f"fetching block {e.failed_block}")
                continue
            except IngestError as e:
                await self._record_failure(e, f"fetching blocks {next_block}-{batch_end}")
                continue

            await self._publish_all(blocks)

    async def _publish_all(self, blocks: list[Block]) -> None:
        for block in blocks:
            if self.stopping:
                return
            await self._publish(block)

    async def _publish(self, block: Block, replacement: bool = False) -> None:
        """
        Publish one block and advance the cursor, retrying on publish failures.

        A replacement is a block at an already produced height whose hash
        changed. It is published so storage can flag the conflict, and the
        cursor stays where it is.
        """
        while not self.stopping:
            if not replacement and block.number <= self.cursor.block_number:
                self.logger.debug(f"Block {block.number} already produced on {self.chain}")
                return

            try:
                for schema in self.chain_config.schemas:
                    await self.producer.publish(block, schema)
            except PublishError as e:
                await self._record_failure(e, f"publishing block {block.number}")
                continue

            self._remember(block)
            if replacement:
                self.reorgs_detected += 1
                self._consecutive_failures = 0
                self.logger.warning(
                    f"Published replacement {block}; cursor stays at {self.cursor.block_number}"
                )
                return

            cursor = self.cursor.advance(block.number)
            await asyncio.to_thread(self.cursor_store.save, cursor)
            self.cursor = cursor
            self.blocks_produced += 1
            self._consecutive_failures = 0
            self.logger.info(f"Produced {block}")
            return

    async def _live(self) -> None:
        while not self.stopping:
            stream = self.adapter.subscribe(after=self.cursor.block_number)
            try:
                await self._consume_stream(stream)
            except RangeFetchError as e:
                await self._publish_all(e.fetched)
                await self._record_failure(e.cause, f"live fetch of block {e.failed_block}")
            except IngestError as e:
                await self._record_failure(e, "live subscription")
            finally:
                await stream.aclose()

    async def _consume_stream(self, stream: AsyncIterator[Block]) -> None:
        while not self.stopping:
            block = await self._next_or_stop(stream)
            if block is None:
                return
            if block is _END:
                self.logger.warning(f"Subscription for {self.chain} ended, resubscribing")
                await self._record_failure(
                    IngestError("subscription ended unexpectedly"), "live subscription"
                )
                return
            await self._accept_live(block)

    async def _next_or_stop(self, stream: AsyncIterator[Block]) -> Any:
        """Next block from the stream, None if stopped first, _END if the stream ended."""
        async def pull() -> Any:
            try:
                return await anext(stream)
            except StopAsyncIteration:
                return _END

        next_task = asyncio.create_task(pull())
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({next_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()

        if next_task in done:
            return next_task.result()

        next_task.cancel()
        try:
            await next_task
        except asyncio.CancelledError:
            pass
        return None

    async def _accept_live(self, block: Block) -> None:
        cursor = self.cursor.block_number
        if block.number <= cursor:
            if self._produced_hashes.get(block.number) == block.hash.lower():
                self.logger.debug(f"Live block {block.number} at or below cursor {cursor}, skipping")
                return
            self.logger.warning(
                f"Reorg on {self.chain}: block {block.number} re-announced with hash "
                f"{block.hash}, produced {self._produced_hashes.get(block.number, 'unknown')}"
            )
            await self._publish_replaced_ancestors(block)
            await self._publish(block, replacement=True)
            return

        if block.number > cursor + 1:
            self.gaps_healed += 1
            self.logger.warning(
                f"Gap detected on {self.chain}: cursor {cursor}, received {block.number}. "
                f"Fetching {cursor + 1}-{block.number - 1}"
            )
            await self._produce_range(cursor + 1, block.number - 1)
            if self.cursor.block_number != block.number - 1:
                return

        await self._publish_replaced_ancestors(block)
        await self._publish(block)

    async def _publish_replaced_ancestors(self, block: Block) -> None:
        """Republish produced heights below ``block`` that its parent chain no longer contains."""
        replaced: list[Block] = []
        child = block
        while not self.stopping:
            known = self._produced_hashes.get(child.number - 1)
            if known is None or known == child.parent_hash.lower():
                break

            fetched = await self.adapter.fetch_range(child.number - 1, child.number - 1)
            if not fetched or fetched[-1].hash.lower() == known:
                self.logger.warning(
                    f"{child} names parent {child.parent_hash} but the provider still serves "
                    f"{known} at {child.number - 1}"
                )
                break
            child = fetched[-1]
            replaced.append(child)

        if replaced:
            self.logger.warning(
                f"Reorg on {self.chain}: {len(replaced)} produced blocks below {block.number} replaced"
            )
        for parent in reversed(replaced):
            await self._publish(parent, replacement=True)

    def _remember(self, block: Block) -> None:
        self._produced_hashes[block.number] = block.hash.lower()
        self._produced_hashes.pop(block.number - REORG_WINDOW, None)

    async def _attempt(self, operation: Callable[[], Awaitable[T]], description: str) -> T | None:
        """Run an operation under the failure policy; None if stopped before it succeeded."""
        while not self.stopping:
            try:
                result = await operation()
            except IngestError as e:
                await self._record_failure(e, description)
                continue
            self._consecutive_failures = 0
            return result
        return None

    async def _record_failure(self, error: Exception, description: str) -> None:
        """
        Count a failed unit of work and back off before the retry.

        Raises:
            ConfigurationFatalError: If the error is fatal or the failure
                budget for consecutive failures is spent
        """
        if isinstance(error, ConfigurationFatalError):
            raise error

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.max_unit_failures:
            raise ConfigurationFatalError(
                f"{description} on {self.chain} failed {self._consecutive_failures} "
                f"times in a row: {error}"
            ) from error

        delay = backoff_delay(self.retry, self._consecutive_failures)
        self.logger.warning(
            f"{description} on {self.chain} failed "
            f"({self._consecutive_failures}/{self.max_unit_failures}): {error}. "
            f"Retrying in {delay:.1f}s"
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the driver.

        Returns:
            Dictionary with status information
        """
        return {
            "chain": self.chain,
            "state": self.state.value,
            "cursor": self.cursor.block_number if self.cursor else None,
            "blocks_produced": self.blocks_produced,
            "gaps_healed": self.gaps_healed,
            "reorgs_detected": self.reorgs_detected,
            "consecutive_failures": self._consecutive_failures,
        }
