"""
Block Ingest - streams EVM blocks and transactions through a durable topic
into relational storage.
"""

from .config import ChainConfig, IngestConfig, RetryConfig, StorageConfig, TopicConfig
from .consumer import BlockConsumer
from .driver import DriverState, IngestionDriver
from .models import Block, TopicMessage, Transaction
from .producer import BlockProducer
from .service import IngestionService
from .storage import StorageWriter, WriteOutcome

__version__ = "0.1.0"

__all__ = [
    "Block",
    "BlockConsumer",
    "BlockProducer",
    "ChainConfig",
    "DriverState",
    "IngestConfig",
    "IngestionDriver",
    "IngestionService",
    "RetryConfig",
    "StorageConfig",
    "StorageWriter",
    "TopicConfig",
    "TopicMessage",
    "Transaction",
    "WriteOutcome",
]
