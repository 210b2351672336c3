"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from patron.audit import AuditTrail, EventType


SPONSOR = "0x" + "bb" * 20
SIGNER = "0x" + "cc" * 20


def make_trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = make_trail(tmp_path)
    trail.log(EventType.CREDIT_MINTED, payer=SPONSOR, amount=10**30)
    trail.log(EventType.SETTLED, payer=SPONSOR, amount=5)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "1"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_dropped_line_breaks_chain(tmp_path):
    trail = make_trail(tmp_path)
    for amount in (1, 2, 3):
        trail.log(EventType.SETTLED, payer=SPONSOR, amount=amount)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_filters_by_any_party_and_type(tmp_path):
    trail = make_trail(tmp_path)
    trail.log(EventType.DELEGATION_GRANTED, sponsor=SPONSOR, signer=SIGNER)
    trail.log(EventType.NONCE_CONSUMED, sponsor=SPONSOR, signer=SIGNER, details={"nonce": "7"})
    trail.log(EventType.PRECHECK_REJECTED, sender="0x" + "dd" * 20, success=False, reason="ReplayDetected")

    assert len(trail.read_events(identity=SIGNER.upper().replace("0X", "0x"))) == 2
    nonce_events = trail.read_events(event_type=EventType.NONCE_CONSUMED)
    assert [e.details for e in nonce_events] == [{"nonce": "7"}]

    summary = trail.summary()
    assert summary["total_events"] == 3
    assert summary["rejections"] == 1
    assert summary["by_type"]["delegation_granted"] == 1


def test_chain_continues_after_reopen(tmp_path):
    make_trail(tmp_path).log(EventType.CREDIT_MINTED, payer=SPONSOR, amount=1)
    reopened = make_trail(tmp_path)
    reopened.log(EventType.SETTLED, payer=SPONSOR, amount=1)

    events = reopened.read_events()
    assert len(events) == 2
    assert events[1].prev_hash == events[0].event_hash
    assert events[0].amount == "1"
