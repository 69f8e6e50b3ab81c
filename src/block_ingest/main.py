#!/usr/bin/env python3
"""Entry point for the block ingestion service.

This module provides the command line entry point that loads the chain
configuration, starts one ingestion driver per chain together with the
storage consumer, and runs until SIGINT or SIGTERM.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from .config import DEFAULT_CONFIG_PATH, IngestConfig  # noqa: E402
from .service import ROLES, IngestionService  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Block Ingest - Stream EVM blocks through a durable topic into SQL storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  <chain endpoint vars>  - Variables named by http_url / ws_url in the config file
  DATABASE_URL           - SQLAlchemy database URL (required unless --local)
  KAFKA_BOOTSTRAP        - Kafka bootstrap servers (default: 127.0.0.1:9092)
  TOPIC_BLOCKS           - Topic for block messages (default: blocks)
  CONSUMER_GROUP         - Consumer group id (default: block-ingest)
  CURSOR_FILE            - JSON file for per-chain cursors
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("BLOCKCHAINS_CONFIG", DEFAULT_CONFIG_PATH),
        help=f"Path of the chain configuration file (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        "--local",
        action="store_true",
        default=False,
        help="Run in local mode with an in-process topic and SQLite storage"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--role",
        default="all",
        choices=list(ROLES),
        help="Run drivers and consumer (all), only drivers (produce) or only the consumer (consume)"
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    """Main entry point for the block ingestion service.

    Returns:
        Process exit code
    """
    load_dotenv()
    args: argparse.Namespace = build_parser().parse_args(argv)

    setup_logging(args.log_level)

    if args.local:
        logger.info("=== Block Ingest Starting (LOCAL MODE) ===")
        logger.info("Local mode enabled: in-process topic, SQLite default storage")
    else:
        logger.info("=== Block Ingest Starting ===")

    logger.info(f"Loading configuration from {args.config}...")

    try:
        config: IngestConfig = IngestConfig.from_toml(args.config, local_mode=args.local)
        config.log_config()
        service = IngestionService(config, role=args.role)
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check the configuration file and your environment variables:")
        logger.error("  - Every [blockchains.<name>] table needs adapter_type, http_url and ws_url")
        logger.error("  - http_url / ws_url name environment variables holding the endpoints")
        if not args.local:
            logger.error("  - DATABASE_URL: database for the consumer")
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            # Not available on every platform; KeyboardInterrupt still applies
            pass

    try:
        return await service.run()
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        return 1


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    cli()
