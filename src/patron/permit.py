"""
Permit wire format and off-chain permit signing.

The authorization blob carried in ``paymaster_and_data`` is fixed-offset:

    [0:20)    routing tag (address of the paymaster the blob is meant for)
    [20:40)   sponsor
    [40:60)   signer
    [60:92)   nonce, uint256 big-endian
    [92:98)   valid_after, uint48 big-endian
    [98:104)  valid_until, uint48 big-endian
    [104:)    signature (may be empty)

A blob that is exactly the routing tag means the sender pays for itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from eth_account import Account

from .errors import MalformedPermitError
from .identity import address_from_bytes, address_to_bytes, normalize_address, to_bytes, to_uint


ROUTING_TAG_LENGTH = 20
PERMIT_FIXED_LENGTH = 104

DEFAULT_DOMAIN_NAME = "Patron"

PERMIT_PRIMARY_TYPE = "SponsorPermit"
PERMIT_FIELDS: list[dict[str, str]] = [
    {"name": "sponsor", "type": "address"},
    {"name": "signer", "type": "address"},
    {"name": "nonce", "type": "uint256"},
    {"name": "validAfter", "type": "uint48"},
    {"name": "validUntil", "type": "uint48"},
    {"name": "operationHash", "type": "bytes32"},
]


@dataclass
class Permit:
    """A sponsor's signed authorization, rebuilt from the blob on every call."""

    sponsor: str
    signer: str
    nonce: int
    valid_after: int
    valid_until: int
    signature: bytes = b""
    operation_hash: Optional[bytes] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sponsor": self.sponsor,
            "signer": self.signer,
            "nonce": self.nonce,
            "valid_after": self.valid_after,
            "valid_until": self.valid_until,
            "operation_hash": "0x" + self.operation_hash.hex() if self.operation_hash else None,
            "signature": "0x" + self.signature.hex(),
        }


def is_self_pay(blob: bytes) -> bool:
    return len(blob) == ROUTING_TAG_LENGTH


def routing_tag(blob: bytes) -> str:
    if len(blob) < ROUTING_TAG_LENGTH:
        raise MalformedPermitError(
            f"Authorization blob is {len(blob)} bytes; routing tag needs {ROUTING_TAG_LENGTH}"
        )
    return address_from_bytes(blob[:ROUTING_TAG_LENGTH])


def parse_permit(blob: bytes) -> Permit:
    """Split an authorization blob into a ``Permit`` (without operation hash)."""
    blob = bytes(blob)
    if len(blob) < PERMIT_FIXED_LENGTH:
        raise MalformedPermitError(
            f"Permit blob is {len(blob)} bytes; expected at least {PERMIT_FIXED_LENGTH}"
        )
    return Permit(
        sponsor=address_from_bytes(blob[20:40]),
        signer=address_from_bytes(blob[40:60]),
        nonce=int.from_bytes(blob[60:92], "big"),
        valid_after=int.from_bytes(blob[92:98], "big"),
        valid_until=int.from_bytes(blob[98:104], "big"),
        signature=blob[PERMIT_FIXED_LENGTH:],
    )


def encode_permit(paymaster: str, permit: Permit) -> bytes:
    """Serialize a permit into the blob expected in ``paymaster_and_data``."""
    return b"".join(
        (
            address_to_bytes(paymaster),
            address_to_bytes(permit.sponsor),
            address_to_bytes(permit.signer),
            to_uint(permit.nonce, "nonce").to_bytes(32, "big"),
            to_uint(permit.valid_after, "valid_after", bits=48).to_bytes(6, "big"),
            to_uint(permit.valid_until, "valid_until", bits=48).to_bytes(6, "big"),
            bytes(permit.signature),
        )
    )


def build_permit_typed_data(
    permit: Permit,
    *,
    paymaster: str,
    chain_id: int,
    domain_name: str = DEFAULT_DOMAIN_NAME,
) -> dict[str, Any]:
    """EIP-712 payload an off-chain signer signs for ``permit``."""
    if permit.operation_hash is None:
        raise ValueError("Permit has no operation hash to sign over")
    operation_hash = to_bytes(permit.operation_hash, "operation_hash")
    if len(operation_hash) != 32:
        raise ValueError("operation_hash must be 32 bytes")

    return {
        "domain": {
            "name": domain_name,
            "chainId": int(chain_id),
            "verifyingContract": normalize_address(paymaster),
        },
        "types": {PERMIT_PRIMARY_TYPE: list(PERMIT_FIELDS)},
        "primaryType": PERMIT_PRIMARY_TYPE,
        "message": {
            "sponsor": normalize_address(permit.sponsor),
            "signer": normalize_address(permit.signer),
            "nonce": to_uint(permit.nonce, "nonce"),
            "validAfter": to_uint(permit.valid_after, "valid_after", bits=48),
            "validUntil": to_uint(permit.valid_until, "valid_until", bits=48),
            "operationHash": operation_hash,
        },
    }


def sign_permit(
    signer_key: str,
    *,
    sponsor: str,
    nonce: int,
    operation_hash: bytes,
    paymaster: str,
    chain_id: int,
    valid_after: int = 0,
    valid_until: int = 0,
    domain_name: str = DEFAULT_DOMAIN_NAME,
) -> Permit:
    """Create and sign a permit with an externally-owned key."""
    account = Account.from_key(signer_key)
    permit = Permit(
        sponsor=normalize_address(sponsor),
        signer=normalize_address(account.address),
        nonce=to_uint(nonce, "nonce"),
        valid_after=to_uint(valid_after, "valid_after", bits=48),
        valid_until=to_uint(valid_until, "valid_until", bits=48),
        operation_hash=to_bytes(operation_hash, "operation_hash"),
    )
    typed_data = build_permit_typed_data(
        permit,
        paymaster=paymaster,
        chain_id=chain_id,
        domain_name=domain_name,
    )
    signed = Account.sign_typed_data(
        account.key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    permit.signature = bytes(signed.signature)
    return permit
