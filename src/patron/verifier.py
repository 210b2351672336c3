"""
Permit signature verification.

Permits are EIP-712 typed data. The signing hash is

    keccak(0x1901 || DOMAIN_SEPARATOR || keccak(abi.encode(PERMIT_TYPEHASH, fields...)))

with ``DOMAIN_SEPARATOR`` bound to the system name, the chain id and the
paymaster's own address. The separator is cached together with the chain id
it was computed for and recomputed whenever the observed chain id differs,
so a signature made for one side of a network split is never accepted on
the other.

Signers are either plain keys (ECDSA recovery) or contract identities
that validate signatures themselves (ERC-1271 style ``is_valid_signature``).
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol, Union

from eth_abi import encode
from eth_account import Account
from eth_account.messages import SignableMessage
from eth_utils import keccak

from .errors import MalformedSignatureError
from .identity import normalize_address
from .permit import DEFAULT_DOMAIN_NAME, PERMIT_FIELDS, PERMIT_PRIMARY_TYPE, Permit


logger = logging.getLogger(__name__)

ECDSA_SIGNATURE_LENGTH = 65

DOMAIN_TYPE = "EIP712Domain(string name,uint256 chainId,address verifyingContract)"
PERMIT_TYPE = "{}({})".format(
    PERMIT_PRIMARY_TYPE,
    ",".join(f"{f['type']} {f['name']}" for f in PERMIT_FIELDS),
)
DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)
PERMIT_TYPEHASH = keccak(text=PERMIT_TYPE)

ChainIdSource = Union[int, Callable[[], int]]


class ContractSigner(Protocol):
    def is_valid_signature(self, digest: bytes, signature: bytes) -> bool: ...


class ContractSignerRegistry:
    """Addresses that are contracts, mapped to their signature validators."""

    def __init__(self) -> None:
        self._signers: dict[str, ContractSigner] = {}

    def register(self, address: str, signer: ContractSigner) -> None:
        self._signers[normalize_address(address)] = signer

    def unregister(self, address: str) -> None:
        self._signers.pop(normalize_address(address), None)

    def get(self, address: str) -> Optional[ContractSigner]:
        return self._signers.get(normalize_address(address))

    def __contains__(self, address: str) -> bool:
        return normalize_address(address) in self._signers


def compute_domain_separator(domain_name: str, chain_id: int, paymaster: str) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "uint256", "address"],
            [DOMAIN_TYPEHASH, keccak(text=domain_name), int(chain_id), normalize_address(paymaster)],
        )
    )


class PermitVerifier:
    def __init__(
        self,
        paymaster: str,
        chain_id: ChainIdSource,
        domain_name: str = DEFAULT_DOMAIN_NAME,
        contract_signers: Optional[ContractSignerRegistry] = None,
    ):
        self.paymaster = normalize_address(paymaster)
        self.domain_name = domain_name
        self.contract_signers = contract_signers if contract_signers is not None else ContractSignerRegistry()
        self._chain_id_source: Callable[[], int] = (
            chain_id if callable(chain_id) else (lambda: int(chain_id))
        )
        self._cached_chain_id = self._chain_id_source()
        self._cached_separator = compute_domain_separator(
            self.domain_name, self._cached_chain_id, self.paymaster
        )

    @property
    def chain_id(self) -> int:
        return self._chain_id_source()

    @property
    def domain_separator(self) -> bytes:
        current = self._chain_id_source()
        if current == self._cached_chain_id:
            return self._cached_separator
        logger.warning(
            "Chain id changed from %s to %s; recomputing domain separator",
            self._cached_chain_id,
            current,
        )
        return compute_domain_separator(self.domain_name, current, self.paymaster)

    def values_hash(self, permit: Permit) -> bytes:
        if permit.operation_hash is None or len(permit.operation_hash) != 32:
            raise ValueError("Permit operation hash must be set to 32 bytes before hashing")
        return keccak(
            encode(
                ["bytes32", "address", "address", "uint256", "uint48", "uint48", "bytes32"],
                [
                    PERMIT_TYPEHASH,
                    normalize_address(permit.sponsor),
                    normalize_address(permit.signer),
                    permit.nonce,
                    permit.valid_after,
                    permit.valid_until,
                    permit.operation_hash,
                ],
            )
        )

    def signing_hash(self, permit: Permit) -> bytes:
        return keccak(b"\x19\x01" + self.domain_separator + self.values_hash(permit))

    def check_signature_format(self, permit: Permit) -> None:
        """Raise ``MalformedSignatureError`` for a key signature of the wrong size."""
        if permit.signer in self.contract_signers or not permit.signature:
            return
        if len(permit.signature) != ECDSA_SIGNATURE_LENGTH:
            raise MalformedSignatureError(
                f"Signature is {len(permit.signature)} bytes; expected {ECDSA_SIGNATURE_LENGTH}"
            )

    def verify(self, permit: Permit) -> bool:
        """Return whether ``permit.signature`` authorizes the permit for ``permit.signer``.

        A mismatch is a normal ``False`` result; only a malformed key
        signature raises.
        """
        self.check_signature_format(permit)
        if not permit.signature:
            return False

        signer = normalize_address(permit.signer)
        contract = self.contract_signers.get(signer)
        if contract is not None:
            try:
                return bool(contract.is_valid_signature(self.signing_hash(permit), permit.signature))
            except Exception as e:
                logger.warning("Contract signer %s rejected validation call: %s", signer, e)
                return False

        signable = SignableMessage(
            version=b"\x01",
            header=self.domain_separator,
            body=self.values_hash(permit),
        )
        try:
            recovered = Account.recover_message(signable, signature=permit.signature)
        except Exception as e:
            logger.debug("Signature recovery failed for %s: %s", signer, e)
            return False
        return normalize_address(recovered) == signer
