"""
Operations submitted to the execution environment, and their draft hash.

A permit signs over the *draft* of an operation: every field that is final
when the sponsor signs, and none of the fields that still change
afterwards. ``paymaster_and_data`` carries the permit itself and
``signature`` is the sender's own signature, so both are left out. The
field list below is the single source of truth for what is hashed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from eth_abi import encode
from eth_utils import keccak

from .identity import normalize_address, to_bytes, to_uint


@dataclass
class Operation:
    """A caller-submitted unit of work with cost limits and payloads."""

    sender: str
    nonce: int
    init_code: bytes = b""
    call_data: bytes = b""
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def __post_init__(self) -> None:
        self.sender = normalize_address(self.sender)
        self.nonce = to_uint(self.nonce, "nonce")
        for name in ("init_code", "call_data", "paymaster_and_data", "signature"):
            setattr(self, name, to_bytes(getattr(self, name), name))
        for name in (
            "call_gas_limit",
            "verification_gas_limit",
            "pre_verification_gas",
            "max_fee_per_gas",
            "max_priority_fee_per_gas",
        ):
            setattr(self, name, to_uint(getattr(self, name), name))

    def to_dict(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": self.nonce,
            "init_code": "0x" + self.init_code.hex(),
            "call_data": "0x" + self.call_data.hex(),
            "call_gas_limit": self.call_gas_limit,
            "verification_gas_limit": self.verification_gas_limit,
            "pre_verification_gas": self.pre_verification_gas,
            "max_fee_per_gas": self.max_fee_per_gas,
            "max_priority_fee_per_gas": self.max_priority_fee_per_gas,
            "paymaster_and_data": "0x" + self.paymaster_and_data.hex(),
            "signature": "0x" + self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Operation:
        """Build from snake_case or camelCase (JSON-RPC style) keys."""
        data = {_CAMEL_TO_SNAKE.get(k, k): v for k, v in payload.items()}
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown operation fields: {sorted(unknown)}")
        return cls(**data)


_CAMEL_TO_SNAKE = {
    "initCode": "init_code",
    "callData": "call_data",
    "callGasLimit": "call_gas_limit",
    "verificationGasLimit": "verification_gas_limit",
    "preVerificationGas": "pre_verification_gas",
    "maxFeePerGas": "max_fee_per_gas",
    "maxPriorityFeePerGas": "max_priority_fee_per_gas",
    "paymasterAndData": "paymaster_and_data",
}


class DraftEncoding(str, Enum):
    # keccak(abi.encode(sender, nonce, keccak(initCode), keccak(callData), limits...))
    COMPONENT = "component"
    # keccak(abi.encode((sender, nonce, initCode, callData, limits...)))
    PACKED = "packed"


@dataclass(frozen=True)
class DraftField:
    name: str
    abi_type: str


DRAFT_OPERATION_FIELDS: tuple[DraftField, ...] = (
    DraftField("sender", "address"),
    DraftField("nonce", "uint256"),
    DraftField("init_code", "bytes"),
    DraftField("call_data", "bytes"),
    DraftField("call_gas_limit", "uint256"),
    DraftField("verification_gas_limit", "uint256"),
    DraftField("pre_verification_gas", "uint256"),
    DraftField("max_fee_per_gas", "uint256"),
    DraftField("max_priority_fee_per_gas", "uint256"),
)

AUTHORIZATION_FIELDS: tuple[str, ...] = ("paymaster_and_data", "signature")


def hash_draft_operation(
    operation: Operation,
    encoding: DraftEncoding = DraftEncoding.COMPONENT,
) -> bytes:
    """Return the 32-byte digest of the operation's stable fields."""
    values = [getattr(operation, f.name) for f in DRAFT_OPERATION_FIELDS]
    types = [f.abi_type for f in DRAFT_OPERATION_FIELDS]

    if DraftEncoding(encoding) is DraftEncoding.PACKED:
        return keccak(encode([f"({','.join(types)})"], [tuple(values)]))

    component_types = ["bytes32" if t == "bytes" else t for t in types]
    component_values = [keccak(v) if t == "bytes" else v for t, v in zip(types, values)]
    return keccak(encode(component_types, component_values))
