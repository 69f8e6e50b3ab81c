"""
Decoding of provider block responses into pipeline models.

web3.py returns blocks as ``AttributeDict`` objects whose hashes are
``HexBytes``, whose addresses are checksummed strings, and whose optional
fields depend on the hardfork (``totalDifficulty`` disappeared after the
merge, ``gasPrice`` can be missing on some typed transactions). This module
normalizes all of that into ``Block`` and ``Transaction``.
"""

import logging
from collections.abc import Mapping
from typing import Any

from hexbytes import HexBytes
from web3 import Web3

from ..exceptions import ProtocolDecodeError
from ..models import Block, Transaction

logger = logging.getLogger(__name__)


class BlockDecoder:
    """Converts raw provider block data into ``Block`` models."""

    @staticmethod
    def to_hex(value: HexBytes | bytes | str | None) -> str:
        """
        Convert a hash, address or byte string to a 0x-prefixed hex string.

        Args:
            value: HexBytes, bytes, or hex string (with or without 0x)

        Returns:
            0x-prefixed hex string
        """
        if value is None:
            raise ProtocolDecodeError("Expected hex value, got None")
        if isinstance(value, (bytes, bytearray)):
            return Web3.to_hex(bytes(value))
        if isinstance(value, str):
            return value if value.startswith("0x") else "0x" + value
        raise ProtocolDecodeError(f"Expected hex value, got {type(value).__name__}")

    @staticmethod
    def to_int(value: Any) -> int:
        """Convert an int or hex quantity to int."""
        if isinstance(value, bool):
            raise ProtocolDecodeError(f"Expected quantity, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value, 16) if value.startswith("0x") else int(value)
            except ValueError:
                raise ProtocolDecodeError(f"Invalid quantity: {value!r}") from None
        if isinstance(value, (bytes, bytearray)):
            return int.from_bytes(bytes(value), byteorder="big")
        raise ProtocolDecodeError(f"Expected quantity, got {type(value).__name__}")

    @classmethod
    def decode_transaction(cls, chain: str, block_number: int, tx: Mapping[str, Any]) -> Transaction:
        """
        Decode one hydrated transaction.

        Args:
            chain: Chain identifier
            block_number: Number of the enclosing block
            tx: Transaction mapping from ``eth_getBlockByNumber(..., True)``

        Returns:
            Transaction model
        """
        if not isinstance(tx, Mapping):
            raise ProtocolDecodeError(
                f"Block {block_number} was not fetched with full transactions"
            )
        try:
            to_address = tx.get("to")
            return Transaction(
                chain=chain,
                block_number=block_number,
                tx_hash=cls.to_hex(tx["hash"]),
                from_address=str(tx["from"]),
                to_address=str(to_address) if to_address else None,
                value=str(cls.to_int(tx["value"])),
                gas_price=str(cls.to_int(tx.get("gasPrice", 0))),
                gas=str(cls.to_int(tx["gas"])),
                input=cls.to_hex(tx.get("input", b"")),
                nonce=cls.to_int(tx["nonce"]),
            )
        except KeyError as e:
            raise ProtocolDecodeError(
                f"Transaction in block {block_number} is missing field {e}"
            ) from None

    @classmethod
    def decode_block(cls, chain: str, block: Mapping[str, Any] | None) -> Block:
        """
        Decode a hydrated block.

        Args:
            chain: Chain identifier
            block: Block mapping from ``eth_getBlockByNumber(..., True)``

        Returns:
            Block model with its transactions in block order

        Raises:
            ProtocolDecodeError: If required fields are missing or malformed
        """
        if block is None:
            raise ProtocolDecodeError("Provider returned an empty block")
        if not isinstance(block, Mapping):
            raise ProtocolDecodeError(f"Expected block mapping, got {type(block).__name__}")

        try:
            number = cls.to_int(block["number"])
            transactions = tuple(
                cls.decode_transaction(chain, number, tx)
                for tx in block.get("transactions", [])
            )
            return Block(
                chain=chain,
                number=number,
                hash=cls.to_hex(block["hash"]),
                parent_hash=cls.to_hex(block["parentHash"]),
                timestamp=cls.to_int(block["timestamp"]),
                miner=str(block["miner"]),
                difficulty=str(cls.to_int(block.get("difficulty", 0))),
                total_difficulty=str(cls.to_int(block.get("totalDifficulty", 0))),
                gas_used=cls.to_int(block["gasUsed"]),
                gas_limit=cls.to_int(block["gasLimit"]),
                size=cls.to_int(block["size"]),
                receipts_root=cls.to_hex(block["receiptsRoot"]),
                transactions=transactions,
            )
        except KeyError as e:
            raise ProtocolDecodeError(f"Block response is missing field {e}") from None
