"""
Bounded exponential backoff for provider calls.

Delays follow ``min(base_delay * 2 ** attempt, max_delay)``. Rate-limit
errors stretch the delay by ``rate_limit_multiplier`` (still capped), and
protocol decode errors get exactly one more try before they are escalated.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..config import RetryConfig
from ..exceptions import (
    ProtocolDecodeError,
    RateLimitedError,
    RetriesExhaustedError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(policy: RetryConfig, attempt: int, rate_limited: bool = False) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = policy.base_delay * (2 ** (attempt - 1))
    if rate_limited:
        delay *= policy.rate_limit_multiplier
    return min(delay, policy.max_delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryConfig,
    description: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or its retry budget is spent.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry settings
        description: What is being attempted, for log lines
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's result

    Raises:
        RetriesExhaustedError: After ``policy.max_retries`` retries of transient errors
        ProtocolDecodeError: If decoding fails twice in a row
    """
    attempt = 0
    decode_failures = 0

    while True:
        try:
            return await operation()

        except ProtocolDecodeError as e:
            decode_failures += 1
            if decode_failures > 1:
                logger.error(f"{description}: decode failed again, escalating: {e}")
                raise
            logger.warning(f"{description}: malformed response, retrying once: {e}")

        except TransientNetworkError as e:
            attempt += 1
            if attempt > policy.max_retries:
                raise RetriesExhaustedError(
                    f"{description} failed after {attempt} attempts: {e}",
                    attempts=attempt,
                    last_error=e,
                ) from e

            rate_limited = isinstance(e, RateLimitedError)
            delay = backoff_delay(policy, attempt, rate_limited=rate_limited)
            logger.warning(
                f"{description}: {'rate limited' if rate_limited else 'transient error'} "
                f"(attempt {attempt}/{policy.max_retries}): {e}. Retrying in {delay:.1f}s"
            )
            await sleep(delay)
