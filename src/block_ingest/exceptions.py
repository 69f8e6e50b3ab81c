"""Error taxonomy for the ingestion pipeline.

Every error raised by the core derives from ``IngestError`` so callers can
separate pipeline failures from programming errors. The driver and consumer
decide what is retried, what is fatal for one chain, and what is fatal for
one message based on these types alone.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import Block


class IngestError(Exception):
    """Base class for all ingestion errors."""


class TransientNetworkError(IngestError):
    """Timeout, connection reset or server-side hiccup. Safe to retry."""


class RateLimitedError(TransientNetworkError):
    """Provider throttled the request (HTTP 429 or provider-specific code)."""


class RetriesExhaustedError(IngestError):
    """A retriable call kept failing past its attempt budget."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RangeFetchError(IngestError):
    """A range fetch failed part way through.

    ``fetched`` holds the blocks that were retrieved before the failure, in
    ascending order, so the caller can publish them and advance its cursor.
    """

    def __init__(self, fetched: list["Block"], failed_block: int, cause: Exception) -> None:
        super().__init__(f"Range fetch failed at block {failed_block}: {cause}")
        self.fetched = fetched
        self.failed_block = failed_block
        self.cause = cause


class ProtocolDecodeError(IngestError):
    """Provider response or topic payload could not be decoded."""


class ReorgConflictError(IngestError):
    """A block height is already stored with a different hash."""

    def __init__(self, chain: str, block_number: int, stored_hash: str, incoming_hash: str) -> None:
        super().__init__(
            f"Reorg conflict on {chain} at block {block_number}: "
            f"stored {stored_hash}, incoming {incoming_hash}"
        )
        self.chain = chain
        self.block_number = block_number
        self.stored_hash = stored_hash
        self.incoming_hash = incoming_hash


class ConfigurationFatalError(IngestError):
    """Unrecoverable setup problem for one chain (unreachable endpoint, bad credentials)."""


class StorageConstraintError(IngestError):
    """A write violated a constraint other than the expected uniqueness no-ops."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class StorageUnavailableError(IngestError):
    """The database could not be reached; the write can be retried unchanged."""


class PublishError(IngestError):
    """The topic did not acknowledge a message."""


class CursorError(IngestError):
    """A cursor was asked to move backwards."""
