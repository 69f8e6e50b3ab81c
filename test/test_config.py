#!/usr/bin/env python3
"""Tests for the configuration module."""

import logging

import pytest

from block_ingest.config import (
    LOCAL_DATABASE_URL,
    ChainConfig,
    IngestConfig,
    RetryConfig,
    TopicConfig,
    redact_url,
)

ENV = {
    "ETH_HTTP": "https://eth.example.com/v2/secret-key",
    "ETH_WS": "wss://eth.example.com/v2/secret-key",
    "BASE_HTTP": "https://base.example.com",
    "BASE_WS": "wss://base.example.com",
    "DATABASE_URL": "postgresql+psycopg2://ingest:hunter2@db:5432/blocks",
}

DOCUMENT = {
    "blockchains": {
        "ethereum": {
            "adapter_type": "EVM",
            "schemas": ["blocks"],
            "start_block": 100,
            "http_url": "ETH_HTTP",
            "ws_url": "ETH_WS",
        },
        "base": {
            "adapter_type": "EVM",
            "http_url": "BASE_HTTP",
            "ws_url": "BASE_WS",
        },
    }
}


class TestChainConfig:
    """Tests for ChainConfig."""

    def test_valid_chain_config(self):
        """Test creating a valid chain configuration."""
        config = ChainConfig(
            name="ethereum",
            adapter_type="EVM",
            http_url="https://eth.example.com",
            ws_url="wss://eth.example.com",
            start_block=0,
        )

        assert config.schemas == ("blocks",)
        assert config.backfill_enabled is True

    def test_backfill_disabled_without_start_block(self):
        config = ChainConfig(
            name="ethereum",
            adapter_type="EVM",
            http_url="https://eth.example.com",
            ws_url="wss://eth.example.com",
        )
        assert config.backfill_enabled is False

    def test_missing_adapter_type(self):
        with pytest.raises(ValueError, match="Adapter type is required"):
            ChainConfig(
                name="solana",
                adapter_type="",
                http_url="https://sol.example.com",
                ws_url="wss://sol.example.com",
            )

    def test_invalid_http_scheme(self):
        with pytest.raises(ValueError, match="Invalid HTTP URL scheme"):
            ChainConfig(
                name="ethereum",
                adapter_type="EVM",
                http_url="wss://eth.example.com",
                ws_url="wss://eth.example.com",
            )

    def test_invalid_ws_scheme(self):
        with pytest.raises(ValueError, match="Invalid WebSocket URL scheme"):
            ChainConfig(
                name="ethereum",
                adapter_type="EVM",
                http_url="https://eth.example.com",
                ws_url="https://eth.example.com",
            )

    def test_negative_start_block(self):
        with pytest.raises(ValueError, match="Start block must be non-negative"):
            ChainConfig(
                name="ethereum",
                adapter_type="EVM",
                http_url="https://eth.example.com",
                ws_url="wss://eth.example.com",
                start_block=-1,
            )

    def test_unknown_schema(self):
        with pytest.raises(ValueError, match="Unsupported schemas"):
            ChainConfig(
                name="ethereum",
                adapter_type="EVM",
                http_url="https://eth.example.com",
                ws_url="wss://eth.example.com",
                schemas=("blocks", "logs"),
            )


class TestTopicConfig:
    """Tests for TopicConfig."""

    def test_single_topic_by_default(self):
        config = TopicConfig()
        assert config.topic_for("ethereum") == "blocks"
        assert config.topic_for("base") == "blocks"

    def test_per_chain_topics(self):
        """Per-chain topics are named <prefix><chain>-<schema>."""
        config = TopicConfig(per_chain=True, prefix="ingest.")
        assert config.topic_for("ethereum") == "ingest.ethereum-blocks"
        assert config.topic_for("base", "blocks") == "ingest.base-blocks"

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unsupported topic backend"):
            TopicConfig(backend="pulsar")


class TestRetryConfig:
    """Tests for RetryConfig validation."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 5
        assert config.request_timeout == 30.0

    def test_retry_count_too_high(self):
        with pytest.raises(ValueError, match="Retry count too high"):
            RetryConfig(max_retries=21)

    def test_max_delay_below_base(self):
        with pytest.raises(ValueError, match="must not be below base delay"):
            RetryConfig(base_delay=10.0, max_delay=1.0)

    def test_timeout_too_long(self):
        with pytest.raises(ValueError, match="Request timeout too long"):
            RetryConfig(request_timeout=301)


class TestIngestConfig:
    """Tests for IngestConfig loading."""

    def test_from_mapping_resolves_endpoints(self):
        """Endpoint entries name environment variables and are resolved at load time."""
        config = IngestConfig.from_mapping(DOCUMENT, environ=ENV)

        eth = config.chain("ethereum")
        assert eth.http_url == ENV["ETH_HTTP"]
        assert eth.ws_url == ENV["ETH_WS"]
        assert eth.http_url_env == "ETH_HTTP"
        assert eth.start_block == 100
        assert config.chain("base").start_block is None
        assert config.storage.database_url == ENV["DATABASE_URL"]
        assert config.topic.backend == "kafka"
        assert config.batch_size == 10
        assert config.lag == 1

    def test_missing_endpoint_variable(self):
        env = {k: v for k, v in ENV.items() if k != "BASE_WS"}
        with pytest.raises(ValueError, match="Failed to get ws_url for chain base"):
            IngestConfig.from_mapping(DOCUMENT, environ=env)

    def test_no_chains(self):
        with pytest.raises(ValueError, match="at least one"):
            IngestConfig.from_mapping({"blockchains": {}}, environ=ENV)

    def test_start_block_must_be_integer(self):
        document = {
            "blockchains": {
                "ethereum": {"http_url": "ETH_HTTP", "ws_url": "ETH_WS", "start_block": "100"}
            }
        }
        with pytest.raises(ValueError, match="start_block for chain ethereum must be an integer"):
            IngestConfig.from_mapping(document, environ=ENV)

    def test_environment_overrides(self):
        """Deployment settings from the environment win over the file."""
        document = dict(DOCUMENT)
        document["topic"] = {"bootstrap_servers": "file:9092", "topic": "from-file"}
        document["ingestion"] = {"cursor_file": "file.json", "batch_size": 25}
        env = dict(
            ENV,
            KAFKA_BOOTSTRAP="kafka-1:9092,kafka-2:9092",
            TOPIC_BLOCKS="chain-blocks",
            CONSUMER_GROUP="writers",
            CURSOR_FILE="/var/lib/ingest/cursors.json",
        )

        config = IngestConfig.from_mapping(document, environ=env)

        assert config.topic.bootstrap_servers == "kafka-1:9092,kafka-2:9092"
        assert config.topic.topic == "chain-blocks"
        assert config.topic.consumer_group == "writers"
        assert config.cursor_file == "/var/lib/ingest/cursors.json"
        assert config.batch_size == 25

    def test_local_mode_defaults(self):
        """Local mode uses the memory topic and a SQLite database."""
        env = {k: v for k, v in ENV.items() if k != "DATABASE_URL"}
        config = IngestConfig.from_mapping(DOCUMENT, environ=env, local_mode=True)

        assert config.local_mode is True
        assert config.topic.backend == "memory"
        assert config.storage.database_url == LOCAL_DATABASE_URL

    def test_database_required_outside_local_mode(self):
        env = {k: v for k, v in ENV.items() if k != "DATABASE_URL"}
        with pytest.raises(ValueError, match="Database URL is required"):
            IngestConfig.from_mapping(DOCUMENT, environ=env)

    def test_invalid_batch_size(self):
        document = dict(DOCUMENT, ingestion={"batch_size": 0})
        with pytest.raises(ValueError, match="Batch size must be positive"):
            IngestConfig.from_mapping(document, environ=ENV)

    def test_from_toml(self, tmp_path):
        """Test loading a TOML file from disk."""
        path = tmp_path / "blockchains.toml"
        path.write_text(
            '[blockchains.ethereum]\n'
            'adapter_type = "EVM"\n'
            'schemas = ["blocks"]\n'
            'start_block = 19000000\n'
            'http_url = "ETH_HTTP"\n'
            'ws_url = "ETH_WS"\n'
            '\n'
            '[ingestion]\n'
            'lag = 3\n'
        )

        config = IngestConfig.from_toml(path, environ=ENV)

        assert [chain.name for chain in config.chains] == ["ethereum"]
        assert config.chain("ethereum").start_block == 19000000
        assert config.lag == 3

    def test_from_toml_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="Configuration file not found"):
            IngestConfig.from_toml(tmp_path / "missing.toml", environ=ENV)

    def test_from_toml_invalid_syntax(self, tmp_path):
        path = tmp_path / "broken.toml"
        path.write_text("[blockchains.ethereum\n")
        with pytest.raises(ValueError, match="Failed to parse"):
            IngestConfig.from_toml(path, environ=ENV)

    def test_log_config_redacts_secrets(self, caplog):
        """Endpoint keys and database passwords never reach the log."""
        config = IngestConfig.from_mapping(DOCUMENT, environ=ENV)

        with caplog.at_level(logging.INFO):
            config.log_config()

        assert "secret-key" not in caplog.text
        assert "hunter2" not in caplog.text
        assert "https://eth.example.com/..." in caplog.text


class TestRedactUrl:
    def test_keeps_scheme_host_and_port(self):
        assert redact_url("wss://node.example.com:8546/ws/key") == "wss://node.example.com:8546/..."

    def test_unparseable(self):
        assert redact_url("not a url") == "[REDACTED]"
