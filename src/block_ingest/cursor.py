"""
Per-chain progress markers and their persistence.

A ``Cursor`` is an immutable value owned by one ingestion driver. Advancing
returns a new cursor; moving backwards is refused. Persistence is delegated
to a ``CursorStore`` so the driver holds no ambient state.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .exceptions import CursorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Cursor:
    """Last block number successfully produced for a chain."""
    chain: str
    block_number: int

    @property
    def next_block(self) -> int:
        return self.block_number + 1

    def advance(self, block_number: int) -> "Cursor":
        """
        Move the cursor to ``block_number``.

        Args:
            block_number: Newly produced block

        Returns:
            A new cursor, or this one if the number is unchanged

        Raises:
            CursorError: If ``block_number`` is below the current position
        """
        if block_number < self.block_number:
            raise CursorError(
                f"Cursor for {self.chain} cannot move backwards "
                f"from {self.block_number} to {block_number}"
            )
        if block_number == self.block_number:
            return self
        return Cursor(chain=self.chain, block_number=block_number)


class CursorStore(Protocol):
    """Persistence for cursors, keyed by chain name."""

    def load(self, chain: str) -> Cursor | None: ...

    def save(self, cursor: Cursor) -> None: ...


class MemoryCursorStore:
    """Cursor store that lives for the duration of the process."""

    def __init__(self) -> None:
        self._cursors: dict[str, int] = {}
        self._lock = threading.Lock()

    def load(self, chain: str) -> Cursor | None:
        with self._lock:
            if chain not in self._cursors:
                return None
            return Cursor(chain=chain, block_number=self._cursors[chain])

    def save(self, cursor: Cursor) -> None:
        with self._lock:
            current = self._cursors.get(cursor.chain)
            if current is not None and cursor.block_number < current:
                raise CursorError(
                    f"Refusing to store cursor {cursor.block_number} for {cursor.chain} "
                    f"below stored {current}"
                )
            self._cursors[cursor.chain] = cursor.block_number


class FileCursorStore:
    """
    Cursor store backed by a small JSON document.

    The file maps chain name to block number. Writes go to a temporary file
    that replaces the original, so a crash never leaves a half-written file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, int]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise CursorError(f"Cursor file {self.path} is corrupt: {e}") from e
        if not isinstance(data, dict):
            raise CursorError(f"Cursor file {self.path} must hold a JSON object")
        return {str(chain): int(number) for chain, number in data.items()}

    def load(self, chain: str) -> Cursor | None:
        with self._lock:
            cursors = self._read()
        if chain not in cursors:
            return None
        return Cursor(chain=chain, block_number=cursors[chain])

    def save(self, cursor: Cursor) -> None:
        with self._lock:
            cursors = self._read()
            current = cursors.get(cursor.chain)
            if current is not None and cursor.block_number < current:
                raise CursorError(
                    f"Refusing to store cursor {cursor.block_number} for {cursor.chain} "
                    f"below stored {current}"
                )
            cursors[cursor.chain] = cursor.block_number

            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(cursors, f, sort_keys=True)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        logger.debug(f"Saved cursor {cursor.chain}={cursor.block_number} to {self.path}")
