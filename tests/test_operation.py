"""Tests for the draft-operation hash."""

from dataclasses import replace

import pytest
from eth_abi import encode
from eth_utils import keccak

from patron.operation import (
    AUTHORIZATION_FIELDS,
    DRAFT_OPERATION_FIELDS,
    DraftEncoding,
    Operation,
    hash_draft_operation,
)


SENDER = "0x1234567890123456789012345678901234567890"


def make_operation(**kwargs):
    defaults = dict(
        sender=SENDER,
        nonce=3,
        init_code=b"",
        call_data=bytes.fromhex("b61d27f6"),
        call_gas_limit=120_000,
        verification_gas_limit=80_000,
        pre_verification_gas=21_000,
        max_fee_per_gas=30,
        max_priority_fee_per_gas=2,
        paymaster_and_data=b"\x11" * 20,
        signature=b"\x22" * 65,
    )
    defaults.update(kwargs)
    return Operation(**defaults)


@pytest.mark.parametrize("encoding", list(DraftEncoding))
def test_hash_ignores_authorization_fields(encoding):
    base = make_operation()
    other = replace(base, paymaster_and_data=b"\x99" * 150, signature=b"")

    assert hash_draft_operation(base, encoding) == hash_draft_operation(other, encoding)


@pytest.mark.parametrize("encoding", list(DraftEncoding))
@pytest.mark.parametrize(
    "field_name, value",
    [
        ("sender", "0x0000000000000000000000000000000000000bad"),
        ("nonce", 4),
        ("init_code", b"\x01"),
        ("call_data", b"\x00"),
        ("call_gas_limit", 120_001),
        ("verification_gas_limit", 80_001),
        ("pre_verification_gas", 21_001),
        ("max_fee_per_gas", 31),
        ("max_priority_fee_per_gas", 3),
    ],
)
def test_hash_changes_with_every_stable_field(encoding, field_name, value):
    base = make_operation()
    changed = replace(base, **{field_name: value})

    assert hash_draft_operation(base, encoding) != hash_draft_operation(changed, encoding)


def test_field_list_covers_everything_but_authorization():
    hashed = {f.name for f in DRAFT_OPERATION_FIELDS}
    assert hashed.isdisjoint(AUTHORIZATION_FIELDS)
    assert hashed | set(AUTHORIZATION_FIELDS) == set(Operation.__dataclass_fields__)


def test_component_hash_byte_layout():
    op = make_operation()
    expected = keccak(
        encode(
            ["address", "uint256", "bytes32", "bytes32", "uint256", "uint256", "uint256", "uint256", "uint256"],
            [SENDER, 3, keccak(b""), keccak(bytes.fromhex("b61d27f6")), 120_000, 80_000, 21_000, 30, 2],
        )
    )
    assert hash_draft_operation(op, DraftEncoding.COMPONENT) == expected


def test_packed_hash_byte_layout():
    op = make_operation()
    expected = keccak(
        encode(
            ["(address,uint256,bytes,bytes,uint256,uint256,uint256,uint256,uint256)"],
            [(SENDER, 3, b"", bytes.fromhex("b61d27f6"), 120_000, 80_000, 21_000, 30, 2)],
        )
    )
    assert hash_draft_operation(op, DraftEncoding.PACKED) == expected
    assert expected != hash_draft_operation(op, DraftEncoding.COMPONENT)


def test_input_representation_does_not_change_hash():
    op = make_operation()
    from_json = Operation.from_dict(
        {
            "signature": "0x",
            "paymasterAndData": "0x" + "ab" * 104,
            "maxPriorityFeePerGas": "2",
            "maxFeePerGas": "0x1e",
            "preVerificationGas": 21_000,
            "verificationGasLimit": 80_000,
            "callGasLimit": 120_000,
            "callData": "0xB61D27F6",
            "initCode": "0x",
            "nonce": 3,
            "sender": SENDER.upper().replace("0X", "0x"),
        }
    )
    assert hash_draft_operation(from_json) == hash_draft_operation(op)
    assert Operation.from_dict(op.to_dict()) == op


def test_rejects_unknown_and_invalid_fields():
    with pytest.raises(ValueError, match="Unknown operation fields"):
        Operation.from_dict({"sender": SENDER, "nonce": 0, "gas": 1})
    with pytest.raises(ValueError):
        make_operation(call_gas_limit=-1)
    with pytest.raises(ValueError):
        make_operation(sender="not-an-address")
