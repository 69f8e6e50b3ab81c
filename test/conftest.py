"""Shared fixtures and factories for block ingestion tests."""

import asyncio
from collections.abc import AsyncIterator, Callable

import pytest
from hexbytes import HexBytes

from block_ingest.config import ChainConfig, RetryConfig, StorageConfig, TopicConfig
from block_ingest.exceptions import RangeFetchError, TransientNetworkError
from block_ingest.models import Block, Transaction
from block_ingest.storage import StorageWriter, create_storage_engine

CHAIN = "ethereum"


def block_hash(number: int, fork: str = "a") -> str:
    return "0x" + f"{fork}{number:x}".rjust(64, "0")


def tx_hash(chain: str, number: int, index: int) -> str:
    return "0x" + f"{chain[:4].encode().hex()}{number:x}f{index:x}".rjust(64, "0")


def make_transaction(number: int, index: int, chain: str = CHAIN) -> Transaction:
    return Transaction(
        chain=chain,
        block_number=number,
        tx_hash=tx_hash(chain, number, index),
        from_address="0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb7",
        to_address=None if index == 0 else "0x5FbDB2315678afecb367f032d93F642f64180aa3",
        value=str(10**18 * index),
        gas_price="1000000000",
        gas="21000",
        input="0x",
        nonce=index,
    )


def make_block(number: int, chain: str = CHAIN, tx_count: int = 2, fork: str = "a") -> Block:
    return Block(
        chain=chain,
        number=number,
        hash=block_hash(number, fork),
        parent_hash=block_hash(number - 1, fork),
        timestamp=1_700_000_000 + number * 12,
        miner="0x95222290DD7278Aa3Ddd389Cc1E1d165CC4BAfe5",
        difficulty="0",
        total_difficulty="0",
        gas_used=21000 * tx_count,
        gas_limit=30_000_000,
        size=1024,
        receipts_root="0x" + "ab" * 32,
        transactions=tuple(make_transaction(number, i, chain) for i in range(tx_count)),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout`` seconds."""
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


def raw_block(number: int, tx_count: int = 2) -> dict:
    """Block as web3.py returns it for ``get_block(n, full_transactions=True)``."""
    return {
        "number": number,
        "hash": HexBytes(block_hash(number)),
        "parentHash": HexBytes(block_hash(number - 1)),
        "timestamp": 1_700_000_000 + number * 12,
        "miner": "0x95222290DD7278Aa3Ddd389Cc1E1d165CC4BAfe5",
        "difficulty": 0,
        "gasUsed": 21000 * tx_count,
        "gasLimit": 30_000_000,
        "size": 1024,
        "receiptsRoot": HexBytes("0x" + "ab" * 32),
        "transactions": [
            {
                "hash": HexBytes(tx_hash(CHAIN, number, i)),
                "from": "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb7",
                "to": None if i == 0 else "0x5FbDB2315678afecb367f032d93F642f64180aa3",
                "value": 10**18 * i,
                "gasPrice": 1_000_000_000,
                "gas": 21000,
                "input": HexBytes("0x"),
                "nonce": i,
            }
            for i in range(tx_count)
        ],
    }


class FakeAdapter:
    """
    Scripted chain adapter.

    ``head`` is what ``latest`` reports, ``live`` the heads announced by
    ``subscribe`` (numbers, or prebuilt blocks for other forks). ``forks``
    picks the fork ``fetch_range`` serves per height. Failures can be
    injected per block number. When the live script is exhausted,
    ``on_exhausted`` is called and the stream waits.
    """

    def __init__(self, chain: str = CHAIN, head: int = 0, live: list[int | Block] | None = None) -> None:
        self.chain = chain
        self.head = head
        self.live = list(live or [])
        self.fail_blocks: dict[int, int] = {}  # block number -> remaining failures
        self.forks: dict[int, str] = {}  # block number -> fork served by fetch_range
        self.fetch_calls: list[tuple[int, int]] = []
        self.subscribe_calls: list[int | None] = []
        self.on_exhausted: Callable[[], None] | None = None
        self.closed = False

    async def latest(self) -> Block:
        return make_block(self.head, self.chain)

    async def fetch_range(self, start: int, end: int) -> list[Block]:
        self.fetch_calls.append((start, end))
        fetched = []
        for number in range(start, end + 1):
            if self.fail_blocks.get(number, 0) > 0:
                self.fail_blocks[number] -= 1
                raise RangeFetchError(
                    fetched, number, TransientNetworkError(f"injected failure at {number}")
                )
            fetched.append(make_block(number, self.chain, fork=self.forks.get(number, "a")))
        return fetched

    async def subscribe(self, after: int | None = None) -> AsyncIterator[Block]:
        self.subscribe_calls.append(after)
        while self.live:
            item = self.live.pop(0)
            yield item if isinstance(item, Block) else make_block(item, self.chain)
        if self.on_exhausted is not None:
            self.on_exhausted()
        # Park like a quiet WebSocket until cancelled
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def chain_config():
    """Chain configuration with backfill from block 100."""
    return ChainConfig(
        name=CHAIN,
        adapter_type="EVM",
        http_url="https://rpc.example.com",
        ws_url="wss://rpc.example.com",
        start_block=100,
    )


@pytest.fixture
def fast_retry():
    """Retry settings without real sleeps."""
    return RetryConfig(max_retries=3, base_delay=0.0, max_delay=0.0, max_reconnect_attempts=2)


@pytest.fixture
def topic_config():
    return TopicConfig(backend="memory")


@pytest.fixture
def writer():
    """StorageWriter on a fresh in-memory SQLite database with foreign keys on."""
    storage = StorageWriter(create_storage_engine(StorageConfig(database_url="sqlite://")))
    storage.create_schema()
    yield storage
    storage.engine.dispose()
