"""
Tamper-evident record of engine decisions.

Each line of the JSONL file is one event. Events are numbered and chained:
every event stores its predecessor's hash and its own HMAC over
``seq | prev_hash | canonical payload``, so editing, dropping or
reordering lines is detected on the next read.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from collections import Counter
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file


AUDIT_KEY_ENV = "PATRON_AUDIT_HMAC_KEY"
DEFAULT_AUDIT_PATH = Path.home() / ".patron" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".patron" / ".secrets" / "audit_hmac.key"

PARTY_FIELDS = ("payer", "sponsor", "signer", "sender")
_CHAIN_FIELDS = ("seq", "prev_hash", "event_hash")


class EventType(str, Enum):
    PRECHECK_ACCEPTED = "precheck_accepted"
    PRECHECK_REJECTED = "precheck_rejected"
    NONCE_CONSUMED = "nonce_consumed"
    SETTLED = "settled"
    SETTLEMENT_FAILED = "settlement_failed"
    CREDIT_MINTED = "credit_minted"
    DELEGATION_GRANTED = "delegation_granted"
    DELEGATION_REVOKED = "delegation_revoked"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    payer: Optional[str] = None
    sponsor: Optional[str] = None
    signer: Optional[str] = None
    sender: Optional[str] = None
    amount: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    seq: int = 0
    prev_hash: str = ""
    event_hash: str = ""

    def payload(self) -> dict[str, Any]:
        """Fields covered by the event hash: everything except the chain links."""
        return {
            k: v
            for k, v in asdict(self).items()
            if k not in _CHAIN_FIELDS and v is not None
        }

    def involves(self, identity: str) -> bool:
        return identity in {getattr(self, name) for name in PARTY_FIELDS}

    def to_json(self) -> str:
        record = self.payload()
        record.update(seq=self.seq, prev_hash=self.prev_hash, event_hash=self.event_hash)
        return json.dumps(record, separators=(",", ":"))

    @classmethod
    def from_json(cls, line: str) -> AuditEvent:
        raw = json.loads(line)
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


def load_audit_key(key_path: Path) -> bytes:
    """HMAC key from ``PATRON_AUDIT_HMAC_KEY``, else from ``key_path`` (created on first use)."""
    env_key = os.getenv(AUDIT_KEY_ENV)
    if env_key:
        return env_key.encode()
    if key_path.exists() and key_path.stat().st_size > 0:
        return key_path.read_bytes().strip()
    key = secrets.token_hex(32).encode()
    key_path.write_bytes(key)
    ensure_private_file(key_path)
    return key


class AuditTrail:
    """Append-only, hash-chained audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        for target in (self.path, self.key_path):
            ensure_private_dir(target.parent)
            ensure_private_file(target)

        self._key = load_audit_key(self.key_path)
        self._seq = 0
        self._last_hash = ""
        for event in self._parse():
            self._seq, self._last_hash = event.seq, event.event_hash

    def log(
        self,
        event_type: EventType,
        payer: Optional[str] = None,
        sponsor: Optional[str] = None,
        signer: Optional[str] = None,
        sender: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            payer=payer,
            sponsor=sponsor,
            signer=signer,
            sender=sender,
            # 256-bit amounts; strings keep JSON exact.
            amount=None if amount is None else str(amount),
            success=success,
            reason=reason,
            details=details,
            seq=self._seq + 1,
            prev_hash=self._last_hash,
        )
        event.event_hash = self._digest(event)

        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._seq, self._last_hash = event.seq, event.event_hash
        return event

    def iter_verified(self) -> Iterator[AuditEvent]:
        """Yield events in file order, raising ``RuntimeError`` at the first broken link."""
        expected_prev = ""
        for expected_seq, event in enumerate(self._parse(), start=1):
            if event.seq != expected_seq or event.prev_hash != expected_prev:
                raise RuntimeError(
                    f"Audit chain broken at event {expected_seq}: sequence or previous hash mismatch"
                )
            if not hmac.compare_digest(self._digest(event), event.event_hash):
                raise RuntimeError(f"Audit chain broken at event {expected_seq}: event hash mismatch")
            expected_prev = event.event_hash
            yield event

    def read_events(
        self,
        identity: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verified events involving ``identity`` in any party role, newest last."""
        return self._select(identity, event_type)[-limit:]

    def summary(self, identity: Optional[str] = None) -> dict:
        events = self._select(identity, None)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "rejections": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }

    def _select(self, identity: Optional[str], event_type: Optional[EventType]) -> list[AuditEvent]:
        needle = identity.lower() if identity else None
        return [
            e
            for e in self.iter_verified()
            if (needle is None or e.involves(needle))
            and (event_type is None or e.event_type == event_type.value)
        ]

    def _parse(self) -> Iterator[AuditEvent]:
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    yield AuditEvent.from_json(line)

    def _digest(self, event: AuditEvent) -> str:
        canonical = json.dumps(event.payload(), sort_keys=True, separators=(",", ":"))
        message = f"{event.seq}|{event.prev_hash}|{canonical}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()
