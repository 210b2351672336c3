"""Identity (20-byte address) and hex helpers."""

from __future__ import annotations

import re
from typing import Any


ZERO_ADDRESS = "0x" + "00" * 20

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise ValueError(f"Invalid address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def address_from_bytes(raw: bytes) -> str:
    if len(raw) != 20:
        raise ValueError(f"Address must be 20 bytes, got {len(raw)}")
    return "0x" + bytes(raw).hex()


def address_to_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


def to_bytes(value: Any, field_name: str) -> bytes:
    """Accept raw bytes or a 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        candidate = value.strip()
        hex_part = candidate[2:] if candidate.lower().startswith("0x") else candidate
        if len(hex_part) % 2:
            raise ValueError(f"{field_name} has an odd number of hex digits")
        try:
            return bytes.fromhex(hex_part)
        except ValueError as e:
            raise ValueError(f"{field_name} must be a hex string") from e
    raise ValueError(f"{field_name} must be bytes or a hex string")


def to_uint(value: Any, field_name: str, bits: int = 256) -> int:
    """Validate an unsigned integer that fits in ``bits`` bits."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an unsigned integer")
    if isinstance(value, str):
        candidate = value.strip()
        try:
            value = int(candidate, 16) if candidate.lower().startswith("0x") else int(candidate)
        except ValueError as e:
            raise ValueError(f"{field_name} must be an unsigned integer") from e
    if not isinstance(value, int):
        raise ValueError(f"{field_name} must be an unsigned integer")
    if value < 0 or value >= 1 << bits:
        raise ValueError(f"{field_name} must be in [0, 2**{bits})")
    return value
