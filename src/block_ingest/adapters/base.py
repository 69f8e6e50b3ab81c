"""
Capability interface shared by all chain adapters.
"""

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from ..models import Block


@runtime_checkable
class ChainAdapter(Protocol):
    """
    What the ingestion driver needs from a chain.

    Implementations are independent classes; nothing inherits from this
    protocol. The producer, consumer and storage never see an adapter.
    """

    chain: str

    async def fetch_range(self, start: int, end: int) -> list[Block]:
        """
        Fetch blocks ``[start, end]`` inclusive in ascending order.

        Raises:
            RangeFetchError: When a block fails after retries; carries the
                blocks fetched before it
        """
        ...

    def subscribe(self, after: int | None = None) -> AsyncIterator[Block]:
        """
        Yield new blocks as they are announced, forever.

        Args:
            after: Last block already seen; anything missing after it is
                backfilled before live blocks are yielded
        """
        ...

    async def latest(self) -> Block:
        """Fetch the current chain head."""
        ...

    async def close(self) -> None:
        """Release provider connections."""
        ...
