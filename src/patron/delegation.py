"""Delegation registry: which identities may sign permits for a sponsor."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from .identity import ZERO_ADDRESS, normalize_address
from .storage import connect, prepare_database


logger = logging.getLogger(__name__)


class DelegationStore(Protocol):
    def add(self, sponsor: str, delegate: str) -> None: ...

    def remove(self, sponsor: str, delegate: str) -> None: ...

    def contains(self, sponsor: str, delegate: str) -> bool: ...

    def delegates_of(self, sponsor: str) -> list[str]: ...


class InMemoryDelegationStore:
    def __init__(self) -> None:
        self._entries: set[tuple[str, str]] = set()
        self._mutex = threading.Lock()

    def add(self, sponsor: str, delegate: str) -> None:
        with self._mutex:
            self._entries.add((sponsor, delegate))

    def remove(self, sponsor: str, delegate: str) -> None:
        with self._mutex:
            self._entries.discard((sponsor, delegate))

    def contains(self, sponsor: str, delegate: str) -> bool:
        return (sponsor, delegate) in self._entries

    def delegates_of(self, sponsor: str) -> list[str]:
        return sorted(d for s, d in self._entries if s == sponsor)


class SqliteDelegationStore:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        prepare_database(
            self.db_path,
            """
            CREATE TABLE IF NOT EXISTS delegations (
                sponsor TEXT NOT NULL,
                delegate TEXT NOT NULL,
                PRIMARY KEY (sponsor, delegate)
            );
            """,
        )

    def add(self, sponsor: str, delegate: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO delegations (sponsor, delegate) VALUES (?, ?)",
                (sponsor, delegate),
            )

    def remove(self, sponsor: str, delegate: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM delegations WHERE sponsor = ? AND delegate = ?",
                (sponsor, delegate),
            )

    def contains(self, sponsor: str, delegate: str) -> bool:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM delegations WHERE sponsor = ? AND delegate = ?",
                (sponsor, delegate),
            ).fetchone()
        return row is not None

    def delegates_of(self, sponsor: str) -> list[str]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT delegate FROM delegations WHERE sponsor = ? ORDER BY delegate",
                (sponsor,),
            ).fetchall()
        return [row["delegate"] for row in rows]


class DelegationRegistry:
    """
    Boolean sponsor → delegate relation.

    Mutations take the verified caller identity explicitly and only ever
    touch that caller's outbound entries, so no third party can grant or
    revoke signing authority on a sponsor's behalf.
    """

    def __init__(self, store: DelegationStore | None = None):
        self.store = store if store is not None else InMemoryDelegationStore()

    def delegate(self, caller: str, delegate: str) -> None:
        sponsor, target = self._pair(caller, delegate)
        self.store.add(sponsor, target)
        logger.info("Delegation granted: sponsor=%s delegate=%s", sponsor, target)

    def undelegate(self, caller: str, delegate: str) -> None:
        sponsor, target = self._pair(caller, delegate)
        self.store.remove(sponsor, target)
        logger.info("Delegation revoked: sponsor=%s delegate=%s", sponsor, target)

    def is_delegated(self, sponsor: str, delegate: str) -> bool:
        return self.store.contains(normalize_address(sponsor), normalize_address(delegate))

    def delegates_of(self, sponsor: str) -> list[str]:
        return self.store.delegates_of(normalize_address(sponsor))

    def _pair(self, caller: str, delegate: str) -> tuple[str, str]:
        sponsor = normalize_address(caller)
        target = normalize_address(delegate)
        if target == ZERO_ADDRESS:
            raise ValueError("Cannot delegate to the zero address")
        if target == sponsor:
            raise ValueError("A sponsor is always authorized for itself")
        return sponsor, target
