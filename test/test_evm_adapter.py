#!/usr/bin/env python3
"""Tests for the EVM chain adapter."""

import asyncio

import aiohttp
import pytest
from hexbytes import HexBytes
from unittest.mock import AsyncMock, MagicMock

from block_ingest.adapters import ChainAdapter, EVMAdapter, create_adapter
from block_ingest.config import ChainConfig, RetryConfig
from block_ingest.exceptions import (
    ConfigurationFatalError,
    ProtocolDecodeError,
    RangeFetchError,
    RateLimitedError,
    RetriesExhaustedError,
    TransientNetworkError,
)
from block_ingest.adapters.evm import classify_provider_error

from conftest import CHAIN, block_hash, make_block, raw_block


def http_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status)


def replaced_raw_block(number: int) -> dict:
    """Raw block at ``number`` from a competing fork."""
    raw = raw_block(number)
    raw["hash"] = HexBytes(block_hash(number, "b"))
    return raw


def heads(*numbers, error: Exception | None = None):
    """Build a fake ``_stream_heads`` connection yielding ``numbers`` then failing."""
    async def stream():
        for number in numbers:
            yield number
        if error is not None:
            raise error
    return stream()


@pytest.fixture
def mock_w3():
    """Create a mock AsyncWeb3 whose get_block serves synthetic blocks."""
    w3 = MagicMock()
    w3.eth.get_block = AsyncMock(side_effect=lambda number, full_transactions: raw_block(number))
    w3.provider.disconnect = AsyncMock()
    return w3


@pytest.fixture
def adapter(mock_w3, fast_retry):
    return EVMAdapter(
        chain=CHAIN,
        http_url="https://rpc.example.com",
        ws_url="wss://rpc.example.com",
        retry=fast_retry,
        w3=mock_w3,
        sleep=AsyncMock(),
    )


def requested_numbers(mock_w3) -> list:
    return [c.args[0] for c in mock_w3.eth.get_block.await_args_list]


class TestClassifyProviderError:
    """Tests for mapping provider failures onto the error taxonomy."""

    def test_http_429_is_rate_limit(self):
        assert isinstance(classify_provider_error(http_error(429)), RateLimitedError)

    def test_rate_limit_message(self):
        error = classify_provider_error(Exception("Too Many Requests, slow down"))
        assert isinstance(error, RateLimitedError)

    def test_rpc_limit_code(self):
        error = classify_provider_error(ValueError({"code": -32005, "message": "limit exceeded"}))
        assert isinstance(error, RateLimitedError)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure_is_fatal(self, status):
        assert isinstance(classify_provider_error(http_error(status)), ConfigurationFatalError)

    def test_server_error_is_transient(self):
        assert isinstance(classify_provider_error(http_error(503)), TransientNetworkError)

    def test_timeout_is_transient(self):
        assert isinstance(classify_provider_error(TimeoutError()), TransientNetworkError)

    def test_connection_reset_is_transient(self):
        error = classify_provider_error(ConnectionResetError("reset by peer"))
        assert isinstance(error, TransientNetworkError)

    def test_malformed_response(self):
        assert isinstance(classify_provider_error(KeyError("number")), ProtocolDecodeError)

    def test_unknown_error_passes_through(self):
        error = RuntimeError("bug")
        assert classify_provider_error(error) is error


class TestAdapterRegistry:
    def test_create_evm_adapter(self):
        config = ChainConfig(
            name=CHAIN,
            adapter_type="EVM",
            http_url="https://rpc.example.com",
            ws_url="wss://rpc.example.com",
        )
        adapter = create_adapter(config, RetryConfig())

        assert isinstance(adapter, EVMAdapter)
        assert isinstance(adapter, ChainAdapter)
        assert adapter.chain == CHAIN

    def test_unknown_adapter_type(self):
        config = ChainConfig(
            name="solana",
            adapter_type="SVM",
            http_url="https://sol.example.com",
            ws_url="wss://sol.example.com",
        )

        with pytest.raises(ValueError, match="Unknown adapter_type `SVM`"):
            create_adapter(config, RetryConfig())


class TestFetchRange:
    """Tests for EVMAdapter.fetch_range."""

    @pytest.mark.asyncio
    async def test_ascending_hydrated_blocks(self, adapter, mock_w3):
        blocks = await adapter.fetch_range(100, 104)

        assert [b.number for b in blocks] == [100, 101, 102, 103, 104]
        assert blocks[0] == make_block(100)
        for call in mock_w3.eth.get_block.await_args_list:
            assert call.kwargs == {"full_transactions": True}

    @pytest.mark.asyncio
    async def test_empty_range(self, adapter, mock_w3):
        assert await adapter.fetch_range(105, 104) == []
        mock_w3.eth.get_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_three_times_then_success(self, adapter, mock_w3):
        """Three throttled responses back off and retry; no block is fetched twice."""
        mock_w3.eth.get_block.side_effect = [
            raw_block(100),
            http_error(429),
            http_error(429),
            http_error(429),
            raw_block(101),
            raw_block(102),
        ]

        blocks = await adapter.fetch_range(100, 102)

        assert [b.number for b in blocks] == [100, 101, 102]
        assert requested_numbers(mock_w3) == [100, 101, 101, 101, 101, 102]
        assert adapter._sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_partial_failure_returns_prefix(self, adapter, mock_w3):
        """A block that keeps failing surfaces the blocks fetched before it."""
        def get_block(number, full_transactions):
            if number == 102:
                raise aiohttp.ClientConnectionError("connection reset")
            return raw_block(number)

        mock_w3.eth.get_block.side_effect = get_block

        with pytest.raises(RangeFetchError) as exc_info:
            await adapter.fetch_range(100, 104)

        error = exc_info.value
        assert [b.number for b in error.fetched] == [100, 101]
        assert error.failed_block == 102
        assert isinstance(error.cause, RetriesExhaustedError)
        # 1 try + max_retries retries for block 102, nothing after it
        assert requested_numbers(mock_w3) == [100, 101, 102, 102, 102, 102]

    @pytest.mark.asyncio
    async def test_malformed_block_retried_once(self, adapter, mock_w3):
        mock_w3.eth.get_block.side_effect = lambda number, full_transactions: {"number": number}

        with pytest.raises(RangeFetchError) as exc_info:
            await adapter.fetch_range(100, 100)

        assert isinstance(exc_info.value.cause, ProtocolDecodeError)
        assert mock_w3.eth.get_block.await_count == 2

    @pytest.mark.asyncio
    async def test_wrong_block_number_rejected(self, adapter, mock_w3):
        mock_w3.eth.get_block.side_effect = lambda number, full_transactions: raw_block(number + 1)

        with pytest.raises(RangeFetchError) as exc_info:
            await adapter.fetch_range(100, 100)

        assert "provider returned 101" in str(exc_info.value.cause)

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, adapter, mock_w3):
        mock_w3.eth.get_block.side_effect = http_error(401)

        with pytest.raises(RangeFetchError) as exc_info:
            await adapter.fetch_range(100, 101)

        assert isinstance(exc_info.value.cause, ConfigurationFatalError)
        assert mock_w3.eth.get_block.await_count == 1

    @pytest.mark.asyncio
    async def test_hung_request_times_out_and_is_retried(self, mock_w3):
        """A call that never answers is cut off by request_timeout and retried."""
        calls = []

        async def get_block(number, full_transactions):
            calls.append(number)
            if len(calls) == 1:
                await asyncio.sleep(10)
            return raw_block(number)

        mock_w3.eth.get_block.side_effect = get_block
        adapter = EVMAdapter(
            chain=CHAIN,
            http_url="https://rpc.example.com",
            ws_url="wss://rpc.example.com",
            retry=RetryConfig(max_retries=3, base_delay=0.0, max_delay=0.0, request_timeout=0.05),
            w3=mock_w3,
            sleep=AsyncMock(),
        )

        blocks = await asyncio.wait_for(adapter.fetch_range(100, 100), timeout=2.0)

        assert [b.number for b in blocks] == [100]
        assert calls == [100, 100]
        adapter._sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_always_hung_request_exhausts_retries(self, mock_w3):
        async def get_block(number, full_transactions):
            await asyncio.sleep(10)

        mock_w3.eth.get_block.side_effect = get_block
        adapter = EVMAdapter(
            chain=CHAIN,
            http_url="https://rpc.example.com",
            ws_url="wss://rpc.example.com",
            retry=RetryConfig(max_retries=1, base_delay=0.0, max_delay=0.0, request_timeout=0.05),
            w3=mock_w3,
            sleep=AsyncMock(),
        )

        with pytest.raises(RangeFetchError) as exc_info:
            await asyncio.wait_for(adapter.fetch_range(100, 100), timeout=2.0)

        assert isinstance(exc_info.value.cause, RetriesExhaustedError)
        assert isinstance(exc_info.value.cause.__cause__, TransientNetworkError)
        # One attempt plus one retry
        assert mock_w3.eth.get_block.await_count == 2

    @pytest.mark.asyncio
    async def test_latest(self, adapter, mock_w3):
        mock_w3.eth.get_block.side_effect = lambda ref, full_transactions: raw_block(105)

        head = await adapter.latest()

        assert head.number == 105
        assert requested_numbers(mock_w3) == ["latest"]


class TestSubscribe:
    """Tests for the live subscription with reconnect and gap fill."""

    async def collect(self, stream, count):
        blocks = []
        async for block in stream:
            blocks.append(block.number)
            if len(blocks) == count:
                break
        await stream.aclose()
        return blocks

    @pytest.mark.asyncio
    async def test_reconnect_fills_gap(self, adapter):
        """Heads missed while disconnected are fetched before the next live head."""
        connections = [
            heads(100, 101, error=ConnectionResetError("socket closed")),
            heads(104),
        ]
        adapter._stream_heads = lambda: connections.pop(0)

        blocks = await self.collect(adapter.subscribe(), 5)

        assert blocks == [100, 101, 102, 103, 104]
        adapter._sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_heads_at_or_below_after(self, adapter, mock_w3):
        adapter._stream_heads = lambda: heads(104, 105, 106, 107)

        blocks = await self.collect(adapter.subscribe(after=105), 2)

        assert blocks == [106, 107]
        assert requested_numbers(mock_w3) == [106, 107]

    @pytest.mark.asyncio
    async def test_reannounced_head_with_new_hash_yielded(self, adapter, mock_w3):
        served = {101: [raw_block(101), replaced_raw_block(101)]}
        mock_w3.eth.get_block.side_effect = (
            lambda number, full_transactions: served[number].pop(0)
            if number in served
            else raw_block(number)
        )
        adapter._stream_heads = lambda: heads(100, 101, 101, 102)

        stream = adapter.subscribe()
        blocks = [await anext(stream) for _ in range(4)]
        await stream.aclose()

        assert [b.number for b in blocks] == [100, 101, 101, 102]
        assert blocks[1].hash == block_hash(101)
        assert blocks[2].hash == block_hash(101, "b")
        assert requested_numbers(mock_w3) == [100, 101, 101, 102]

    @pytest.mark.asyncio
    async def test_reannounced_head_with_same_hash_skipped(self, adapter, mock_w3):
        adapter._stream_heads = lambda: heads(100, 101, 101, 102)

        blocks = await self.collect(adapter.subscribe(), 3)

        assert blocks == [100, 101, 102]
        # The repeat is checked against the provider once
        assert requested_numbers(mock_w3) == [100, 101, 101, 102]

    @pytest.mark.asyncio
    async def test_after_cursor_gap_filled_on_first_head(self, adapter):
        adapter._stream_heads = lambda: heads(103)

        blocks = await self.collect(adapter.subscribe(after=100), 3)

        assert blocks == [101, 102, 103]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_reconnects(self, adapter):
        adapter._stream_heads = lambda: heads(error=ConnectionRefusedError("refused"))

        with pytest.raises(ConfigurationFatalError, match="unreachable"):
            await self.collect(adapter.subscribe(), 1)

        assert adapter._sleep.await_count == adapter.retry.max_reconnect_attempts

    @pytest.mark.asyncio
    async def test_successful_head_resets_reconnect_budget(self, adapter):
        connections = [
            heads(100, error=ConnectionResetError("1")),
            heads(101, error=ConnectionResetError("2")),
            heads(102, error=ConnectionResetError("3")),
            heads(103),
        ]
        adapter._stream_heads = lambda: connections.pop(0)

        blocks = await self.collect(adapter.subscribe(), 4)

        assert blocks == [100, 101, 102, 103]

    @pytest.mark.asyncio
    async def test_close_disconnects_provider(self, adapter, mock_w3):
        await adapter.close()
        mock_w3.provider.disconnect.assert_awaited_once()
