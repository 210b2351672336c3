"""
Credit ledger boundary and a local SQLite implementation.

The engine only needs ``balance_of`` and ``burn``. Minting is paired 1:1
with a deposit of equal value into the execution environment's escrow so
no credit ever exists without prepaid backing.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from .errors import InsufficientCreditError
from .identity import normalize_address, to_uint
from .storage import connect, prepare_database


logger = logging.getLogger(__name__)

_UINT256_LIMIT = 1 << 256

_SCHEMA = """
CREATE TABLE IF NOT EXISTS credit_balances (
    identity TEXT PRIMARY KEY,
    amount TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS credit_totals (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    minted TEXT NOT NULL,
    burned TEXT NOT NULL
);
INSERT OR IGNORE INTO credit_totals (id, minted, burned) VALUES (1, '0', '0');
CREATE TABLE IF NOT EXISTS escrow_deposits (
    account TEXT PRIMARY KEY,
    amount TEXT NOT NULL
);
"""


class CreditLedger(Protocol):
    def mint(self, caller: str, amount: int) -> None: ...

    def mint_to(self, caller: str, recipient: str, amount: int) -> None: ...

    def burn(self, identity: str, amount: int) -> None: ...

    def balance_of(self, identity: str) -> int: ...


class Escrow(Protocol):
    db_path: Path

    def record_deposit(self, conn: sqlite3.Connection, account: str, amount: int) -> None: ...

    def balance_of(self, account: str) -> int: ...


class LocalEscrow:
    """Records prepaid deposits held by the execution environment."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        prepare_database(self.db_path, _SCHEMA)

    def deposit_to(self, account: str, amount: int) -> None:
        with connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self.record_deposit(conn, account, amount)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def record_deposit(self, conn: sqlite3.Connection, account: str, amount: int) -> None:
        """Add a deposit inside the caller's open transaction on ``conn``."""
        normalized = normalize_address(account)
        value = to_uint(amount, "amount")
        current = _read_amount(conn, "escrow_deposits", "account", normalized)
        _require_uint256(current + value, f"escrow deposits of {normalized}")
        _write_amount(conn, "escrow_deposits", "account", normalized, current + value)

    def balance_of(self, account: str) -> int:
        with connect(self.db_path) as conn:
            return _read_amount(conn, "escrow_deposits", "account", normalize_address(account))


class LocalCreditLedger:
    """
    SQLite-backed fungible credit ledger.

    All read-modify-write paths run inside BEGIN IMMEDIATE transactions, and
    balances are stored as decimal text because they are 256-bit quantities.
    The escrow must live in the same database so a mint and its deposit
    commit or roll back together.
    """

    def __init__(self, db_path: Path, escrow: Escrow, escrow_account: str):
        if Path(escrow.db_path).resolve() != Path(db_path).resolve():
            raise ValueError("Escrow must share the credit ledger's database")
        self.db_path = db_path
        self.escrow = escrow
        self.escrow_account = normalize_address(escrow_account)
        prepare_database(self.db_path, _SCHEMA)

    def mint(self, caller: str, amount: int) -> None:
        """Credit the caller with ``amount``, backed by an equal escrow deposit."""
        self.mint_to(caller, caller, amount)

    def mint_to(self, caller: str, recipient: str, amount: int) -> None:
        """Credit ``recipient``; the caller is the party funding the deposit.

        Raises ``ValueError`` without touching either ledger if the recipient's
        balance or the minted total would no longer fit in 256 bits.
        """
        payer = normalize_address(caller)
        target = normalize_address(recipient)
        value = to_uint(amount, "amount")

        with connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                current = _read_amount(conn, "credit_balances", "identity", target)
                minted = _totals(conn)[0]
                _require_uint256(current + value, f"credit balance of {target}")
                _require_uint256(minted + value, "total minted credit")

                self.escrow.record_deposit(conn, self.escrow_account, value)
                _write_amount(conn, "credit_balances", "identity", target, current + value)
                conn.execute(
                    "UPDATE credit_totals SET minted = ? WHERE id = 1",
                    (str(minted + value),),
                )
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        logger.info("Credit minted: funder=%s recipient=%s amount=%s", payer, target, value)

    def burn(self, identity: str, amount: int) -> None:
        """Debit ``amount`` or raise ``InsufficientCreditError`` leaving state untouched."""
        normalized = normalize_address(identity)
        value = to_uint(amount, "amount")

        with connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            current = _read_amount(conn, "credit_balances", "identity", normalized)
            if value > current:
                conn.execute("ROLLBACK")
                raise InsufficientCreditError(normalized, value, current)
            _write_amount(conn, "credit_balances", "identity", normalized, current - value)
            conn.execute(
                "UPDATE credit_totals SET burned = ? WHERE id = 1",
                (str(_totals(conn)[1] + value),),
            )
            conn.execute("COMMIT")
        logger.info("Credit burned: identity=%s amount=%s", normalized, value)

    def balance_of(self, identity: str) -> int:
        with connect(self.db_path) as conn:
            return _read_amount(conn, "credit_balances", "identity", normalize_address(identity))

    def total_minted(self) -> int:
        with connect(self.db_path) as conn:
            return _totals(conn)[0]

    def total_burned(self) -> int:
        with connect(self.db_path) as conn:
            return _totals(conn)[1]


def _read_amount(conn: sqlite3.Connection, table: str, key_column: str, key: str) -> int:
    row = conn.execute(
        f"SELECT amount FROM {table} WHERE {key_column} = ?",
        (key,),
    ).fetchone()
    return int(row["amount"]) if row else 0


def _write_amount(conn: sqlite3.Connection, table: str, key_column: str, key: str, amount: int) -> None:
    conn.execute(
        f"""
        INSERT INTO {table} ({key_column}, amount) VALUES (?, ?)
        ON CONFLICT ({key_column}) DO UPDATE SET amount = excluded.amount
        """,
        (key, str(amount)),
    )


def _totals(conn: sqlite3.Connection) -> tuple[int, int]:
    row = conn.execute("SELECT minted, burned FROM credit_totals WHERE id = 1").fetchone()
    assert row is not None
    return int(row["minted"]), int(row["burned"])


def _require_uint256(value: int, what: str) -> None:
    if value >= _UINT256_LIMIT:
        raise ValueError(f"Mint would push {what} past 2**256 - 1")
