#!/usr/bin/env python3
"""Data models for the block ingestion pipeline.

This module provides immutable data classes for blocks, transactions and the
topic envelope that carries a block between the producer and the consumer.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import ProtocolDecodeError

SCHEMA_VERSION = 1


class MessageKind(Enum):
    """Kinds of messages carried on the topic."""
    BLOCK_WITH_TRANSACTIONS = "block_with_transactions"


@dataclass(frozen=True, slots=True)
class Transaction:
    """A transaction as included in a block.

    Attributes:
        chain: Chain identifier the transaction was observed on
        block_number: Number of the block that includes it
        tx_hash: Transaction hash (with 0x prefix)
        from_address: Sender address
        to_address: Recipient address, None for contract creation
        value: Transferred value in wei, as a decimal string
        gas_price: Gas price in wei, as a decimal string
        gas: Gas limit of the transaction, as a decimal string
        input: Call data (with 0x prefix)
        nonce: Sender nonce
    """

    chain: str
    block_number: int
    tx_hash: str
    from_address: str
    to_address: str | None
    value: str
    gas_price: str
    gas: str
    input: str
    nonce: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chain": self.chain,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "value": self.value,
            "gas_price": self.gas_price,
            "gas": self.gas,
            "input": self.input,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        return cls(
            chain=str(data["chain"]),
            block_number=int(data["block_number"]),
            tx_hash=str(data["tx_hash"]),
            from_address=str(data["from_address"]),
            to_address=data.get("to_address"),
            value=str(data["value"]),
            gas_price=str(data["gas_price"]),
            gas=str(data["gas"]),
            input=str(data["input"]),
            nonce=int(data["nonce"]),
        )


@dataclass(frozen=True, slots=True)
class Block:
    """A block fully hydrated with its transactions.

    Attributes:
        chain: Chain identifier
        number: Block number, unique per chain
        hash: Block hash (with 0x prefix)
        parent_hash: Parent block hash (with 0x prefix)
        timestamp: Block timestamp (Unix seconds)
        miner: Fee recipient address
        difficulty: Difficulty as a decimal string
        total_difficulty: Total difficulty as a decimal string
        gas_used: Gas used by all transactions
        gas_limit: Block gas limit
        size: Block size in bytes
        receipts_root: Receipts trie root (with 0x prefix)
        transactions: Transactions in block order
    """

    chain: str
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    miner: str
    difficulty: str
    total_difficulty: str
    gas_used: int
    gas_limit: int
    size: int
    receipts_root: str
    transactions: tuple[Transaction, ...] = field(default_factory=tuple)

    @property
    def tx_count(self) -> int:
        return len(self.transactions)

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"Block(chain={self.chain}, "
            f"number={self.number}, "
            f"hash={self.hash[:10]}..., "
            f"txs={self.tx_count})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chain": self.chain,
            "number": self.number,
            "hash": self.hash,
            "parent_hash": self.parent_hash,
            "timestamp": self.timestamp,
            "miner": self.miner,
            "difficulty": self.difficulty,
            "total_difficulty": self.total_difficulty,
            "gas_used": self.gas_used,
            "gas_limit": self.gas_limit,
            "size": self.size,
            "receipts_root": self.receipts_root,
            "tx_count": self.tx_count,
            "transactions": [tx.to_dict() for tx in self.transactions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        """Build a block from its dictionary form.

        Raises:
            ProtocolDecodeError: If a field is missing or has the wrong type,
                or if ``tx_count`` disagrees with the embedded transactions
        """
        try:
            raw_transactions = data.get("transactions", [])
            if not isinstance(raw_transactions, list):
                raise TypeError(f"transactions must be a list, got {type(raw_transactions).__name__}")
            transactions = tuple(Transaction.from_dict(tx) for tx in raw_transactions)
            block = cls(
                chain=str(data["chain"]),
                number=int(data["number"]),
                hash=str(data["hash"]),
                parent_hash=str(data["parent_hash"]),
                timestamp=int(data["timestamp"]),
                miner=str(data["miner"]),
                difficulty=str(data["difficulty"]),
                total_difficulty=str(data["total_difficulty"]),
                gas_used=int(data["gas_used"]),
                gas_limit=int(data["gas_limit"]),
                size=int(data["size"]),
                receipts_root=str(data["receipts_root"]),
                transactions=transactions,
            )
            declared_tx_count = int(data["tx_count"]) if "tx_count" in data else block.tx_count
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolDecodeError(f"Malformed block payload: {e!r}") from e

        if declared_tx_count != block.tx_count:
            raise ProtocolDecodeError(
                f"Block {block.number} declares {data['tx_count']} transactions "
                f"but carries {block.tx_count}"
            )
        for tx in block.transactions:
            if tx.chain != block.chain or tx.block_number != block.number:
                raise ProtocolDecodeError(
                    f"Transaction {tx.tx_hash} does not belong to block {block.chain}/{block.number}"
                )
        return block


@dataclass(frozen=True, slots=True)
class TopicMessage:
    """Envelope published on the topic.

    The ordering key of the message is always ``chain`` so that per-chain
    order survives on a multi-partition topic.
    """

    chain: str
    kind: MessageKind
    block: Block
    version: int = SCHEMA_VERSION

    @property
    def key(self) -> bytes:
        return self.chain.encode("utf-8")

    @classmethod
    def for_block(cls, block: Block) -> "TopicMessage":
        return cls(chain=block.chain, kind=MessageKind.BLOCK_WITH_TRANSACTIONS, block=block)

    def serialize(self) -> bytes:
        payload = {
            "chain": self.chain,
            "kind": self.kind.value,
            "version": self.version,
            "block": self.block.to_dict(),
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def deserialize(cls, raw: bytes | str) -> "TopicMessage":
        """Decode an envelope produced by ``serialize``.

        Raises:
            ProtocolDecodeError: On invalid JSON, unknown kind or version, or a
                chain mismatch between envelope and payload
        """
        try:
            payload = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProtocolDecodeError(f"Topic payload is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ProtocolDecodeError("Topic payload must be a JSON object")

        try:
            kind = MessageKind(payload.get("kind"))
        except ValueError:
            raise ProtocolDecodeError(f"Unknown message kind: {payload.get('kind')!r}") from None

        version = payload.get("version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            raise ProtocolDecodeError(f"Unsupported message version: {version!r}")

        block_data = payload.get("block")
        if not isinstance(block_data, dict):
            raise ProtocolDecodeError("Topic payload has no block object")

        block = Block.from_dict(block_data)
        chain = payload.get("chain")
        if chain != block.chain:
            raise ProtocolDecodeError(
                f"Envelope chain {chain!r} does not match block chain {block.chain!r}"
            )
        return cls(chain=block.chain, kind=kind, block=block, version=version)
