#!/usr/bin/env python3
"""Configuration management for block ingestion.

This module provides type-safe configuration dataclasses with validation.
Chains are declared in a TOML file whose endpoint entries name environment
variables; the actual URLs are resolved from the environment at load time.
Deployment settings (broker, database, cursor file) can be overridden from
the environment as well.
"""

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

from sqlalchemy.engine import make_url

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "blockchains.toml"
LOCAL_DATABASE_URL = "sqlite:///block_ingest.db"


def redact_url(url: str) -> str:
    """Reduce an endpoint URL to scheme and host, dropping keys in the path or query."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return "[REDACTED]"
    port = f":{parsed.port}" if parsed.port else ""
    return f"{parsed.scheme}://{parsed.hostname}{port}/..."


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one ingested chain.

    Attributes:
        name: Chain identifier stored alongside every row
        adapter_type: Adapter implementation to use (e.g. 'EVM')
        http_url: Resolved HTTP(S) RPC endpoint
        ws_url: Resolved WebSocket RPC endpoint
        schemas: Message schemas produced for this chain
        start_block: First block to backfill; None disables backfill
        http_url_env: Environment variable the HTTP endpoint came from
        ws_url_env: Environment variable the WebSocket endpoint came from
    """

    name: str
    adapter_type: str
    http_url: str
    ws_url: str
    schemas: tuple[str, ...] = ("blocks",)
    start_block: int | None = None
    http_url_env: str | None = None
    ws_url_env: str | None = None

    SUPPORTED_SCHEMAS: ClassVar[set[str]] = {"blocks"}

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.name:
            raise ValueError("Chain name is required")

        # Known types are checked by the adapter registry when the service is built
        if not self.adapter_type:
            raise ValueError(f"Adapter type is required for chain {self.name}")

        if not self.http_url:
            raise ValueError(f"HTTP endpoint is required for chain {self.name}")
        if urlparse(self.http_url).scheme not in ("http", "https"):
            raise ValueError(
                f"Invalid HTTP URL scheme for chain {self.name}: "
                f"{urlparse(self.http_url).scheme}. Expected http or https"
            )

        if not self.ws_url:
            raise ValueError(f"WebSocket endpoint is required for chain {self.name}")
        if urlparse(self.ws_url).scheme not in ("ws", "wss"):
            raise ValueError(
                f"Invalid WebSocket URL scheme for chain {self.name}: "
                f"{urlparse(self.ws_url).scheme}. Expected ws or wss"
            )

        if not self.schemas:
            raise ValueError(f"At least one schema is required for chain {self.name}")
        unknown = set(self.schemas) - self.SUPPORTED_SCHEMAS
        if unknown:
            raise ValueError(
                f"Unsupported schemas for chain {self.name}: {', '.join(sorted(unknown))}"
            )

        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")

    @property
    def backfill_enabled(self) -> bool:
        return self.start_block is not None


@dataclass(frozen=True, slots=True)
class TopicConfig:
    """Configuration for the durable topic between producer and consumer.

    Attributes:
        backend: 'kafka' for a broker, 'memory' for the in-process topic
        bootstrap_servers: Kafka bootstrap servers
        topic: Topic name used when topics are not split per chain
        prefix: Prefix for per-chain topic names
        per_chain: Use one topic per chain and schema instead of one topic
        consumer_group: Consumer group id
        ack_timeout: Seconds to wait for a publish acknowledgment
        poll_timeout: Seconds the consumer blocks on one poll
    """

    backend: str = "kafka"
    bootstrap_servers: str = "127.0.0.1:9092"
    topic: str = "blocks"
    prefix: str = ""
    per_chain: bool = False
    consumer_group: str = "block-ingest"
    ack_timeout: float = 30.0
    poll_timeout: float = 1.0

    SUPPORTED_BACKENDS: ClassVar[set[str]] = {"kafka", "memory"}

    def __post_init__(self) -> None:
        """Validate topic configuration."""
        if self.backend not in self.SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported topic backend: {self.backend}. "
                f"Supported backends: {', '.join(sorted(self.SUPPORTED_BACKENDS))}"
            )
        if self.backend == "kafka" and not self.bootstrap_servers:
            raise ValueError("Kafka bootstrap servers are required (KAFKA_BOOTSTRAP)")
        if not self.topic:
            raise ValueError("Topic name is required")
        if not self.consumer_group:
            raise ValueError("Consumer group is required")
        if self.ack_timeout <= 0:
            raise ValueError(f"Ack timeout must be positive, got {self.ack_timeout}")
        if self.poll_timeout <= 0:
            raise ValueError(f"Poll timeout must be positive, got {self.poll_timeout}")

    def topic_for(self, chain: str, schema: str = "blocks") -> str:
        """Topic name a chain's messages are published to."""
        if self.per_chain:
            return f"{self.prefix}{chain}-{schema}"
        return self.topic


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Configuration for the relational storage backend."""
    database_url: str
    echo: bool = False

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("Database URL is required (DATABASE_URL)")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry and timeout settings shared by adapters and drivers."""
    max_retries: int = 5  # attempts per network call
    base_delay: float = 1.0  # seconds, doubled per attempt
    max_delay: float = 60.0  # cap for a single backoff sleep
    rate_limit_multiplier: float = 4.0  # extra backoff factor when throttled
    request_timeout: float = 30.0  # per network call
    max_reconnect_attempts: int = 10  # consecutive WebSocket reconnects

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.max_retries < 0:
            raise ValueError(f"Retry count must be non-negative, got {self.max_retries}")
        if self.max_retries > 20:
            raise ValueError(f"Retry count too high (max 20), got {self.max_retries}")
        if self.base_delay < 0:
            raise ValueError(f"Base delay must be non-negative, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"Max delay ({self.max_delay}) must not be below base delay ({self.base_delay})"
            )
        if self.rate_limit_multiplier < 1:
            raise ValueError(
                f"Rate limit multiplier must be at least 1, got {self.rate_limit_multiplier}"
            )
        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 300:
            raise ValueError(f"Request timeout too long (max 300s), got {self.request_timeout}")
        if self.max_reconnect_attempts < 1:
            raise ValueError(
                f"Reconnect attempts must be at least 1, got {self.max_reconnect_attempts}"
            )


@dataclass(frozen=True, slots=True)
class IngestConfig:
    """Main configuration for the ingestion service.

    Attributes:
        chains: One entry per configured chain
        topic: Topic settings
        storage: Database settings
        retry: Retry and timeout settings
        batch_size: Blocks requested per range fetch during backfill
        lag: Blocks kept behind the head when backfill computes its end
        max_unit_failures: Consecutive failures of one block before a driver gives up
        cursor_file: JSON file holding cursors; None keeps cursors in memory
        local_mode: Whether running in local mode (memory topic, SQLite)
    """

    chains: tuple[ChainConfig, ...]
    topic: TopicConfig
    storage: StorageConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    batch_size: int = 10
    lag: int = 1
    max_unit_failures: int = 5
    cursor_file: str | None = None
    local_mode: bool = False

    def __post_init__(self) -> None:
        """Validate ingestion configuration."""
        if not self.chains:
            raise ValueError("At least one chain must be configured under [blockchains]")

        names = [chain.name for chain in self.chains]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate chain names in configuration: {names}")

        if self.batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {self.batch_size}")
        if self.batch_size > 1000:
            raise ValueError(f"Batch size too high (max 1000), got {self.batch_size}")
        if self.lag < 0:
            raise ValueError(f"Lag must be non-negative, got {self.lag}")
        if self.max_unit_failures < 1:
            raise ValueError(f"Max unit failures must be at least 1, got {self.max_unit_failures}")

    def chain(self, name: str) -> ChainConfig:
        for chain in self.chains:
            if chain.name == name:
                return chain
        raise KeyError(name)

    @classmethod
    def from_toml(
        cls,
        path: str | Path = DEFAULT_CONFIG_PATH,
        environ: Mapping[str, str] | None = None,
        local_mode: bool = False,
    ) -> "IngestConfig":
        """Load configuration from a TOML file and the environment.

        Args:
            path: Path of the TOML file
            environ: Environment to resolve references from (defaults to os.environ)
            local_mode: Use the memory topic and a SQLite default database

        Returns:
            IngestConfig instance with loaded values

        Raises:
            ValueError: If the file is missing or invalid, or an environment
                variable it references is not set
        """
        config_path = Path(path)
        try:
            with config_path.open("rb") as f:
                document = tomllib.load(f)
        except FileNotFoundError:
            raise ValueError(f"Configuration file not found: {config_path}") from None
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Failed to parse {config_path}: {e}") from e

        return cls.from_mapping(document, environ=environ, local_mode=local_mode)

    @classmethod
    def from_mapping(
        cls,
        document: Mapping[str, Any],
        environ: Mapping[str, str] | None = None,
        local_mode: bool = False,
    ) -> "IngestConfig":
        """Build configuration from an already parsed TOML document."""
        env = os.environ if environ is None else environ

        blockchains = document.get("blockchains")
        if not isinstance(blockchains, Mapping) or not blockchains:
            raise ValueError("Configuration must define at least one [blockchains.<name>] table")

        chains = tuple(
            _load_chain(name, table, env) for name, table in blockchains.items()
        )

        # Load topic config
        topic_table = dict(document.get("topic", {}))
        backend = "memory" if local_mode else topic_table.get("backend", "kafka")
        topic_config = TopicConfig(
            backend=backend,
            bootstrap_servers=env.get(
                "KAFKA_BOOTSTRAP", topic_table.get("bootstrap_servers", "127.0.0.1:9092")
            ),
            topic=env.get("TOPIC_BLOCKS", topic_table.get("topic", "blocks")),
            prefix=topic_table.get("prefix", ""),
            per_chain=bool(topic_table.get("per_chain", False)),
            consumer_group=env.get(
                "CONSUMER_GROUP", topic_table.get("consumer_group", "block-ingest")
            ),
            ack_timeout=float(topic_table.get("ack_timeout", 30.0)),
            poll_timeout=float(topic_table.get("poll_timeout", 1.0)),
        )

        # Load storage config
        storage_table = dict(document.get("storage", {}))
        default_url = LOCAL_DATABASE_URL if local_mode else ""
        storage_config = StorageConfig(
            database_url=env.get("DATABASE_URL", storage_table.get("database_url", default_url)),
            echo=bool(storage_table.get("echo", False)),
        )

        # Load ingestion and retry config
        ingestion_table = dict(document.get("ingestion", {}))
        retry_config = RetryConfig(
            max_retries=int(ingestion_table.get("max_retries", 5)),
            base_delay=float(ingestion_table.get("base_delay", 1.0)),
            max_delay=float(ingestion_table.get("max_delay", 60.0)),
            rate_limit_multiplier=float(ingestion_table.get("rate_limit_multiplier", 4.0)),
            request_timeout=float(ingestion_table.get("request_timeout", 30.0)),
            max_reconnect_attempts=int(ingestion_table.get("max_reconnect_attempts", 10)),
        )

        return cls(
            chains=chains,
            topic=topic_config,
            storage=storage_config,
            retry=retry_config,
            batch_size=int(ingestion_table.get("batch_size", 10)),
            lag=int(ingestion_table.get("lag", 1)),
            max_unit_failures=int(ingestion_table.get("max_unit_failures", 5)),
            cursor_file=env.get("CURSOR_FILE", ingestion_table.get("cursor_file")),
            local_mode=local_mode,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Block Ingest Configuration")
        logger.info("=" * 60)

        for chain in self.chains:
            logger.info(f"Chain {chain.name}:")
            logger.info(f"  Adapter: {chain.adapter_type}")
            logger.info(f"  HTTP: {redact_url(chain.http_url)} (from {chain.http_url_env})")
            logger.info(f"  WS: {redact_url(chain.ws_url)} (from {chain.ws_url_env})")
            logger.info(f"  Schemas: {', '.join(chain.schemas)}")
            if chain.backfill_enabled:
                logger.info(f"  Backfill from block: {chain.start_block}")
            else:
                logger.info("  Backfill: disabled")

        logger.info("Topic:")
        logger.info(f"  Backend: {self.topic.backend}")
        if self.topic.backend == "kafka":
            logger.info(f"  Bootstrap: {self.topic.bootstrap_servers}")
        logger.info(f"  Topic: {self.topic.topic}{' (per chain)' if self.topic.per_chain else ''}")
        logger.info(f"  Consumer Group: {self.topic.consumer_group}")

        logger.info("Storage:")
        logger.info(f"  Database: {make_url(self.storage.database_url).render_as_string(hide_password=True)}")

        logger.info("Ingestion Settings:")
        logger.info(f"  Batch Size: {self.batch_size} blocks")
        logger.info(f"  Lag: {self.lag} blocks")
        logger.info(f"  Request Timeout: {self.retry.request_timeout} seconds")
        logger.info(f"  Retry Count: {self.retry.max_retries}")
        logger.info(f"  Cursor File: {self.cursor_file or '[MEMORY]'}")
        logger.info(f"  Mode: {'LOCAL' if self.local_mode else 'PRODUCTION'}")

        logger.info("=" * 60)


def _resolve_endpoint(chain: str, key: str, reference: Any, env: Mapping[str, str]) -> str:
    """Resolve an endpoint reference through the environment."""
    if not isinstance(reference, str) or not reference:
        raise ValueError(f"Chain {chain} must name an environment variable for '{key}'")
    value = env.get(reference)
    if not value:
        raise ValueError(
            f"Failed to get {key} for chain {chain} from environment variable `{reference}`"
        )
    return value


def _load_chain(name: str, table: Any, env: Mapping[str, str]) -> ChainConfig:
    if not isinstance(table, Mapping):
        raise ValueError(f"[blockchains.{name}] must be a table")

    schemas = table.get("schemas", ["blocks"])
    if isinstance(schemas, str):
        schemas = [schemas]

    start_block = table.get("start_block")
    if start_block is not None and not isinstance(start_block, int):
        raise ValueError(f"start_block for chain {name} must be an integer, got {start_block!r}")

    http_ref = table.get("http_url")
    ws_ref = table.get("ws_url")
    return ChainConfig(
        name=name,
        adapter_type=str(table.get("adapter_type", "EVM")),
        http_url=_resolve_endpoint(name, "http_url", http_ref, env),
        ws_url=_resolve_endpoint(name, "ws_url", ws_ref, env),
        schemas=tuple(schemas),
        start_block=start_block,
        http_url_env=http_ref,
        ws_url_env=ws_ref,
    )
