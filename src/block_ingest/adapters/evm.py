"""
EVM chain adapter.

Range fetches and head lookups go over HTTP JSON-RPC; live blocks arrive
through a WebSocket ``newHeads`` subscription with automatic reconnection.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound, ProviderConnectionError, Web3RPCError
from web3.providers import WebSocketProvider
from websockets.exceptions import ConnectionClosed

from ..config import ChainConfig, RetryConfig
from ..exceptions import (
    ConfigurationFatalError,
    IngestError,
    ProtocolDecodeError,
    RangeFetchError,
    RateLimitedError,
    TransientNetworkError,
)
from ..models import Block
from ..utils.block_decoder import BlockDecoder
from ..utils.retry import backoff_delay, call_with_retry

logger = logging.getLogger(__name__)

# JSON-RPC codes providers use for throttling (-32005 is "limit exceeded")
RATE_LIMIT_CODES = {-32005, 429}
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "request limit", "exceeded the quota")
AUTH_FAILURE_STATUSES = {401, 403}

CONNECTION_ERRORS = (ConnectionError, OSError, ProviderConnectionError, ConnectionClosed)

# Largest range requested in one go when a subscription has to catch up
GAP_CHUNK_SIZE = 50
# Heights whose yielded hash is remembered for reorg detection
REORG_WINDOW = 128


def _http_status(error: BaseException) -> int | None:
    status = getattr(error, "status", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def _rpc_code(error: BaseException) -> int | None:
    response = getattr(error, "rpc_response", None)
    if isinstance(response, Mapping):
        code = (response.get("error") or {}).get("code")
        if isinstance(code, int):
            return code
    if error.args and isinstance(error.args[0], Mapping):
        code = error.args[0].get("code")
        if isinstance(code, int):
            return code
    return None


def classify_provider_error(error: Exception) -> Exception:
    """
    Map a provider exception onto the ingestion error taxonomy.

    Returns the original exception when it is not a provider failure, so
    programming errors are not retried.
    """
    if isinstance(error, IngestError):
        return error

    message = str(error).lower()
    status = _http_status(error)

    if status == 429 or _rpc_code(error) in RATE_LIMIT_CODES or any(
        marker in message for marker in RATE_LIMIT_MARKERS
    ):
        return RateLimitedError(f"Provider throttled request: {error}")

    if status in AUTH_FAILURE_STATUSES:
        return ConfigurationFatalError(f"Provider rejected credentials (HTTP {status}): {error}")

    if status is not None and status >= 500:
        return TransientNetworkError(f"Provider server error (HTTP {status}): {error}")

    if isinstance(error, (Web3RPCError, BlockNotFound)):
        # Lagging nodes behind a load balancer answer "header not found" for fresh heads
        return TransientNetworkError(f"Provider could not serve request: {error}")

    if isinstance(error, (TimeoutError, aiohttp.ClientError, *CONNECTION_ERRORS)):
        return TransientNetworkError(f"Network error: {error!r}")

    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ProtocolDecodeError(f"Malformed provider response: {error!r}")

    return error


class EVMAdapter:
    """
    Adapter for EVM-compatible chains.

    Features:
    - Ascending, fully hydrated range fetches with bounded retries
    - Rate-limit aware exponential backoff
    - WebSocket head subscription with reconnection and gap backfill
    """

    def __init__(
        self,
        chain: str,
        http_url: str,
        ws_url: str,
        retry: RetryConfig | None = None,
        w3: AsyncWeb3 | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the EVMAdapter.

        Args:
            chain: Chain identifier attached to every block
            http_url: HTTP RPC endpoint used for range fetches
            ws_url: WebSocket RPC endpoint used for subscriptions
            retry: Retry and timeout settings
            w3: Pre-built AsyncWeb3 instance (created from http_url if omitted)
            sleep: Sleep function used between retries
        """
        self.chain = chain
        self.http_url = http_url
        self.ws_url = ws_url
        self.retry = retry or RetryConfig()
        self._sleep = sleep

        self.w3: AsyncWeb3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(http_url, request_kwargs={"timeout": self.retry.request_timeout})
        )

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{chain}")

    @classmethod
    def from_config(cls, chain_config: ChainConfig, retry: RetryConfig) -> "EVMAdapter":
        return cls(
            chain=chain_config.name,
            http_url=chain_config.http_url,
            ws_url=chain_config.ws_url,
            retry=retry,
        )

    async def _call(self, request: Callable[[], Awaitable[Any]]) -> Any:
        """Run one provider request under the per-call timeout, classifying failures."""
        try:
            return await asyncio.wait_for(request(), timeout=self.retry.request_timeout)
        except Exception as e:
            mapped = classify_provider_error(e)
            if mapped is e:
                raise
            raise mapped from e

    async def _fetch_block(self, number: int) -> Block:
        async def attempt() -> Block:
            raw = await self._call(
                lambda: self.w3.eth.get_block(number, full_transactions=True)
            )
            block = BlockDecoder.decode_block(self.chain, raw)
            if block.number != number:
                raise ProtocolDecodeError(
                    f"Requested block {number} but provider returned {block.number}"
                )
            return block

        return await call_with_retry(
            attempt, self.retry, f"{self.chain} block {number}", sleep=self._sleep
        )

    async def fetch_range(self, start: int, end: int) -> list[Block]:
        """
        Fetch blocks ``[start, end]`` inclusive, one block per request.

        Args:
            start: First block number
            end: Last block number

        Returns:
            Blocks in ascending order (empty if start > end)

        Raises:
            RangeFetchError: If a block cannot be fetched; ``fetched`` holds
                the blocks retrieved before it
        """
        if start > end:
            return []

        fetched: list[Block] = []
        for number in range(start, end + 1):
            try:
                block = await self._fetch_block(number)
            except IngestError as e:
                self.logger.error(
                    f"Fetch of range {start}-{end} stopped at block {number} "
                    f"after {len(fetched)} blocks: {e}"
                )
                raise RangeFetchError(fetched, number, e) from e
            fetched.append(block)

        self.logger.debug(f"Fetched blocks {start}-{end}")
        return fetched

    async def latest(self) -> Block:
        """Fetch the chain head block."""
        async def attempt() -> Block:
            raw = await self._call(
                lambda: self.w3.eth.get_block("latest", full_transactions=True)
            )
            return BlockDecoder.decode_block(self.chain, raw)

        return await call_with_retry(
            attempt, self.retry, f"{self.chain} latest block", sleep=self._sleep
        )

    async def _stream_heads(self) -> AsyncIterator[int]:
        """Open one WebSocket connection and yield announced head numbers."""
        self.logger.info(f"Connecting to WebSocket for {self.chain}")
        async with AsyncWeb3(
            WebSocketProvider(
                self.ws_url,
                request_timeout=self.retry.request_timeout,
                subscription_response_queue_size=10000,
            )
        ) as w3:
            subscription_id = await w3.eth.subscribe("newHeads")
            self.logger.info(f"Subscribed to new heads on {self.chain} ({subscription_id})")

            async for response in w3.socket.process_subscriptions():
                header = response.get("result") if isinstance(response, Mapping) else None
                if not header or "number" not in header:
                    self.logger.debug(f"Ignoring subscription message without a head: {response}")
                    continue
                yield BlockDecoder.to_int(header["number"])

    async def _replaced_head(self, number: int, yielded: dict[int, str]) -> Block | None:
        """The block now at ``number`` if it differs from the one yielded earlier."""
        if number not in yielded:
            return None
        [block] = await self.fetch_range(number, number)
        if block.hash.lower() == yielded[number]:
            return None
        return block

    async def subscribe(self, after: int | None = None) -> AsyncIterator[Block]:
        """
        Yield every new block, reconnecting on connection loss.

        Announced heads are hydrated over HTTP. If a head arrives more than
        one block after the last yielded block (missed announcements or a
        reconnect), the missing blocks are fetched and yielded first. A head
        at or below the last yielded block is yielded again only when it was
        yielded by this stream and now has a different hash.

        Args:
            after: Last block already produced by the caller

        Raises:
            ConfigurationFatalError: After ``max_reconnect_attempts``
                consecutive failed connections
            RangeFetchError: If hydrating a block fails after retries
        """
        last_seen = after
        failures = 0
        # Recently yielded heights -> hash, to tell re-announcements from reorgs
        yielded: dict[int, str] = {}

        while True:
            try:
                async for head in self._stream_heads():
                    failures = 0

                    if last_seen is not None and head <= last_seen:
                        replacement = await self._replaced_head(head, yielded)
                        if replacement is None:
                            self.logger.debug(
                                f"Head {head} already seen (last {last_seen}), skipping"
                            )
                            continue
                        self.logger.warning(
                            f"Head {head} on {self.chain} re-announced with new hash "
                            f"{replacement.hash} (was {yielded[head]})"
                        )
                        yielded[head] = replacement.hash.lower()
                        yield replacement
                        continue

                    first = head if last_seen is None else last_seen + 1
                    if first < head:
                        self.logger.warning(
                            f"Gap detected on {self.chain}: expected {first}, got {head}. "
                            f"Backfilling {head - first} blocks"
                        )

                    for chunk_start in range(first, head + 1, GAP_CHUNK_SIZE):
                        chunk_end = min(chunk_start + GAP_CHUNK_SIZE - 1, head)
                        for block in await self.fetch_range(chunk_start, chunk_end):
                            yield block
                            last_seen = block.number
                            yielded[block.number] = block.hash.lower()
                            yielded.pop(block.number - REORG_WINDOW, None)

                self.logger.warning(f"Subscription stream for {self.chain} closed by provider")
                reason: Exception = ConnectionError("subscription stream ended")

            except CONNECTION_ERRORS as e:
                reason = e

            failures += 1
            if failures > self.retry.max_reconnect_attempts:
                self.logger.error(f"Max WebSocket reconnects reached for {self.chain}")
                raise ConfigurationFatalError(
                    f"WebSocket endpoint for {self.chain} unreachable after "
                    f"{self.retry.max_reconnect_attempts} attempts: {reason}"
                ) from reason

            delay = backoff_delay(self.retry, failures)
            self.logger.warning(
                f"WebSocket connection failed (attempt {failures}/"
                f"{self.retry.max_reconnect_attempts}): {reason}. Reconnecting in {delay:.1f}s"
            )
            await self._sleep(delay)

    async def close(self) -> None:
        """Close the HTTP provider session."""
        provider = self.w3.provider
        try:
            if hasattr(provider, "disconnect"):
                await provider.disconnect()
        except Exception as e:
            self.logger.warning(f"Error during cleanup: {e}")
