#!/usr/bin/env python3
"""Relational storage for blocks and transactions.

This module owns the ``blocks``/``transactions`` schema and the idempotent
write path used by the consumer. Idempotency comes from the constraints:

- ``blocks`` is unique on ``(chain_name, block_number, hash)`` and on
  ``(chain_name, block_number)``, so a replayed block is ignored and a
  different hash at a stored height is detected instead of overwritten.
- ``transactions`` is unique on ``(chain_name, tx_hash)`` and references
  ``blocks(chain_name, block_number)``, so a transaction can only be stored
  once its block row exists.

Both inserts use ``ON CONFLICT DO NOTHING``; any integrity error that still
surfaces is a real constraint violation.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Engine,
    ForeignKeyConstraint,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.pool import StaticPool

from .config import StorageConfig
from .exceptions import ReorgConflictError, StorageConstraintError, StorageUnavailableError
from .models import Block

logger = logging.getLogger(__name__)

metadata = MetaData()

blocks = Table(
    "blocks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("block_number", BigInteger, nullable=False),
    Column("chain_name", Text, nullable=False),
    Column("hash", Text, nullable=False),
    Column("parent_hash", Text, nullable=False),
    Column("timestamp", DateTime, nullable=False),
    Column("miner", Text, nullable=False),
    Column("difficulty", Text, nullable=False),
    Column("total_difficulty", Text, nullable=False),
    Column("gas_used", BigInteger, nullable=False),
    Column("gas_limit", BigInteger, nullable=False),
    Column("size", BigInteger, nullable=False),
    Column("receipts_root", Text, nullable=False),
    Column("transactions", JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False),
    Column("tx_count", BigInteger, nullable=False),
    UniqueConstraint("chain_name", "block_number", "hash", name="uq_blocks_chain_number_hash"),
    UniqueConstraint("chain_name", "block_number", name="uq_blocks_chain_number"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chain_name", Text, nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("tx_hash", Text, nullable=False),
    Column("from_address", Text, nullable=False),
    Column("to_address", Text, nullable=True),
    Column("value", Text, nullable=False),
    Column("gas_price", Text, nullable=False),
    Column("gas", Text, nullable=False),
    Column("input", Text, nullable=False),
    Column("nonce", BigInteger, nullable=False),
    UniqueConstraint("chain_name", "tx_hash", name="uq_transactions_chain_hash"),
    ForeignKeyConstraint(
        ["chain_name", "block_number"],
        ["blocks.chain_name", "blocks.block_number"],
        name="fk_transactions_block",
    ),
)


class WriteOutcome(Enum):
    """Result of handling one block message."""
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    REORG_CONFLICT = "reorg_conflict"
    INVALID = "invalid"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_storage_engine(config: StorageConfig) -> Engine:
    """
    Create an engine for the configured database.

    SQLite connections get foreign key enforcement switched on; in-memory
    SQLite shares one connection so every thread sees the same database.
    """
    url = config.database_url
    kwargs: dict[str, Any] = {"echo": config.echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


class StorageWriter:
    """Idempotent writer for blocks and their transactions."""

    SUPPORTED_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

    def __init__(self, engine: Engine) -> None:
        """
        Initialize the StorageWriter.

        Args:
            engine: SQLAlchemy engine for PostgreSQL or SQLite

        Raises:
            ValueError: If the dialect has no insert-or-ignore support here
        """
        self.engine = engine
        dialect = engine.dialect.name
        if dialect not in self.SUPPORTED_DIALECTS:
            raise ValueError(
                f"Unsupported database dialect: {dialect}. "
                f"Supported: {', '.join(sorted(self.SUPPORTED_DIALECTS))}"
            )
        self._insert = self.SUPPORTED_DIALECTS[dialect]

    @classmethod
    def from_config(cls, config: StorageConfig) -> "StorageWriter":
        return cls(create_storage_engine(config))

    def create_schema(self) -> None:
        """Create both tables if they do not exist."""
        metadata.create_all(self.engine)
        logger.info(f"Storage schema ready on {self.engine.dialect.name}")

    def drop_schema(self) -> None:
        metadata.drop_all(self.engine)

    @staticmethod
    def _block_row(block: Block) -> dict[str, Any]:
        return {
            "block_number": block.number,
            "chain_name": block.chain,
            "hash": block.hash,
            "parent_hash": block.parent_hash,
            "timestamp": datetime.fromtimestamp(block.timestamp, tz=timezone.utc).replace(tzinfo=None),
            "miner": block.miner,
            "difficulty": block.difficulty,
            "total_difficulty": block.total_difficulty,
            "gas_used": block.gas_used,
            "gas_limit": block.gas_limit,
            "size": block.size,
            "receipts_root": block.receipts_root,
            "transactions": [tx.to_dict() for tx in block.transactions],
            "tx_count": block.tx_count,
        }

    @staticmethod
    def _transaction_rows(block: Block) -> list[dict[str, Any]]:
        return [
            {
                "chain_name": tx.chain,
                "block_number": tx.block_number,
                "tx_hash": tx.tx_hash,
                "from_address": tx.from_address,
                "to_address": tx.to_address,
                "value": tx.value,
                "gas_price": tx.gas_price,
                "gas": tx.gas,
                "input": tx.input,
                "nonce": tx.nonce,
            }
            for tx in block.transactions
        ]

    def write_block(self, block: Block) -> WriteOutcome:
        """
        Store a block and its transactions, ignoring anything already stored.

        The block row is committed first; transactions are written in a
        second transaction that can rely on the block row existing.

        Args:
            block: Block to store

        Returns:
            INSERTED if the block row was new, DUPLICATE if it was already stored

        Raises:
            ReorgConflictError: If the height is stored with a different hash
            StorageConstraintError: On any other constraint violation or
                data the database rejects
            StorageUnavailableError: If the database cannot be reached
        """
        try:
            block_row = self._block_row(block)
        except (OverflowError, OSError, ValueError) as e:
            raise StorageConstraintError(
                f"Block {block.chain}/{block.number} has an unstorable timestamp {block.timestamp}: {e}",
                context=self._context(block),
            ) from e

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self._insert(blocks).values(**block_row).on_conflict_do_nothing()
                )
                inserted = result.rowcount == 1

                if not inserted:
                    stored_hash = conn.execute(
                        select(blocks.c.hash).where(
                            blocks.c.chain_name == block.chain,
                            blocks.c.block_number == block.number,
                        )
                    ).scalar_one_or_none()

                    if stored_hash is None:
                        raise StorageConstraintError(
                            f"Block {block.chain}/{block.number} was neither inserted nor found",
                            context=self._context(block),
                        )
                    if stored_hash.lower() != block.hash.lower():
                        raise ReorgConflictError(block.chain, block.number, stored_hash, block.hash)

            rows = self._transaction_rows(block)
            if rows:
                with self.engine.begin() as conn:
                    conn.execute(self._insert(transactions).on_conflict_do_nothing(), rows)

        except IntegrityError as e:
            raise StorageConstraintError(
                f"Constraint violation writing block {block.chain}/{block.number}: {e.orig}",
                context=self._context(block),
            ) from e
        except DataError as e:
            raise StorageConstraintError(
                f"Invalid data in block {block.chain}/{block.number}: {e.orig}",
                context=self._context(block),
            ) from e
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailableError(
                f"Database unavailable while writing block {block.chain}/{block.number}: {e.orig}"
            ) from e

        outcome = WriteOutcome.INSERTED if inserted else WriteOutcome.DUPLICATE
        logger.debug(f"{outcome.value}: {block}")
        return outcome

    @staticmethod
    def _context(block: Block) -> dict[str, Any]:
        return {
            "chain": block.chain,
            "block_number": block.number,
            "hash": block.hash,
            "tx_count": block.tx_count,
        }

    def get_block_hash(self, chain: str, block_number: int) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(blocks.c.hash).where(
                    blocks.c.chain_name == chain,
                    blocks.c.block_number == block_number,
                )
            ).scalar_one_or_none()

    def block_numbers(self, chain: str) -> list[int]:
        with self.engine.connect() as conn:
            return list(
                conn.execute(
                    select(blocks.c.block_number)
                    .where(blocks.c.chain_name == chain)
                    .order_by(blocks.c.block_number)
                ).scalars()
            )

    def count_blocks(self, chain: str) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(blocks).where(blocks.c.chain_name == chain)
            ).scalar_one()

    def count_transactions(self, chain: str, block_number: int | None = None) -> int:
        query = select(func.count()).select_from(transactions).where(
            transactions.c.chain_name == chain
        )
        if block_number is not None:
            query = query.where(transactions.c.block_number == block_number)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def tx_counts(self, chain: str) -> dict[int, int]:
        """Declared ``tx_count`` per stored block number."""
        with self.engine.connect() as conn:
            return {
                number: count
                for number, count in conn.execute(
                    select(blocks.c.block_number, blocks.c.tx_count).where(
                        blocks.c.chain_name == chain
                    )
                )
            }

