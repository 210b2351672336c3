"""
Nonce ledger for permit replay protection.

Consumed nonces are kept as a sparse bitmap per identity: the high 248
bits of a nonce select a 256-bit storage word, the low 8 bits select a
bit inside it. Densely issued nonces cost one word per 256 permits, but
any value is accepted, so signers can hand out nonces in parallel
without coordinating an ordering. Bits are never cleared.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from .errors import ReplayDetectedError
from .identity import normalize_address, to_uint
from .storage import connect, prepare_database


logger = logging.getLogger(__name__)


def split_nonce(nonce: int) -> tuple[int, int]:
    """Return ``(word_index, bit_mask)`` for a nonce."""
    return nonce >> 8, 1 << (nonce & 0xFF)


class NonceStore(Protocol):
    def load_word(self, identity: str, word_index: int) -> int: ...

    def compare_and_set(self, identity: str, word_index: int, expected: int, new: int) -> bool: ...


class InMemoryNonceStore:
    """Dictionary-backed store for tests and ephemeral engines."""

    def __init__(self) -> None:
        self._words: dict[tuple[str, int], int] = {}
        self._mutex = threading.Lock()

    def load_word(self, identity: str, word_index: int) -> int:
        return self._words.get((identity, word_index), 0)

    def compare_and_set(self, identity: str, word_index: int, expected: int, new: int) -> bool:
        with self._mutex:
            if self._words.get((identity, word_index), 0) != expected:
                return False
            self._words[(identity, word_index)] = new
            return True


class SqliteNonceStore:
    """SQLite-backed bitmap. Words are stored as hex text (they exceed 64 bits)."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        prepare_database(
            self.db_path,
            """
            CREATE TABLE IF NOT EXISTS nonce_words (
                identity TEXT NOT NULL,
                word_index TEXT NOT NULL,
                word TEXT NOT NULL,
                PRIMARY KEY (identity, word_index)
            );
            """,
        )

    def load_word(self, identity: str, word_index: int) -> int:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT word FROM nonce_words WHERE identity = ? AND word_index = ?",
                (identity, _hex(word_index)),
            ).fetchone()
        return int(row["word"], 16) if row else 0

    def compare_and_set(self, identity: str, word_index: int, expected: int, new: int) -> bool:
        with connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT word FROM nonce_words WHERE identity = ? AND word_index = ?",
                (identity, _hex(word_index)),
            ).fetchone()
            current = int(row["word"], 16) if row else 0
            if current != expected:
                conn.execute("ROLLBACK")
                return False
            conn.execute(
                """
                INSERT INTO nonce_words (identity, word_index, word) VALUES (?, ?, ?)
                ON CONFLICT (identity, word_index) DO UPDATE SET word = excluded.word
                """,
                (identity, _hex(word_index), _hex(new)),
            )
            conn.execute("COMMIT")
            return True


class NonceLedger:
    """Marks (identity, nonce) pairs as permanently consumed."""

    def __init__(self, store: NonceStore | None = None):
        self.store = store if store is not None else InMemoryNonceStore()

    def consume(self, identity: str, nonce: int) -> None:
        """Consume ``nonce`` for ``identity`` or raise ``ReplayDetectedError``."""
        normalized = normalize_address(identity)
        value = to_uint(nonce, "nonce")
        word_index, mask = split_nonce(value)

        while True:
            word = self.store.load_word(normalized, word_index)
            if word & mask:
                raise ReplayDetectedError(normalized, value)
            if self.store.compare_and_set(normalized, word_index, word, word | mask):
                break
            # Lost a race on this word; re-read and re-check the bit.

        logger.debug("Nonce consumed: identity=%s nonce=%s", normalized, value)

    def is_consumed(self, identity: str, nonce: int) -> bool:
        word_index, mask = split_nonce(to_uint(nonce, "nonce"))
        return bool(self.store.load_word(normalize_address(identity), word_index) & mask)


def _hex(value: int) -> str:
    return format(value, "x")
