"""Tests for EIP-712 permit verification."""

from dataclasses import replace

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from patron.errors import MalformedSignatureError
from patron.permit import build_permit_typed_data, sign_permit
from patron.verifier import (
    ContractSignerRegistry,
    PermitVerifier,
    compute_domain_separator,
)


PAYMASTER = "0x" + "aa" * 20
SPONSOR = "0x" + "bb" * 20
OP_HASH = keccak(b"draft operation")


def signed(acct, chain_id=8453, **kwargs):
    defaults = dict(
        sponsor=SPONSOR,
        nonce=11,
        operation_hash=OP_HASH,
        paymaster=PAYMASTER,
        chain_id=chain_id,
        valid_after=100,
        valid_until=200,
    )
    defaults.update(kwargs)
    return sign_permit(acct.key.hex(), **defaults)


class ApprovedHashWallet:
    """Contract identity that accepts digests its owner pre-approved."""

    def __init__(self):
        self.approved = set()

    def is_valid_signature(self, digest, signature):
        return digest in self.approved


class RevertingWallet:
    def is_valid_signature(self, digest, signature):
        raise RuntimeError("execution reverted")


class TestSigningHash:
    def test_matches_eth_account_typed_data(self):
        acct = Account.create()
        permit = signed(acct)
        typed = build_permit_typed_data(permit, paymaster=PAYMASTER, chain_id=8453)
        signable = encode_typed_data(typed["domain"], typed["types"], typed["message"])

        verifier = PermitVerifier(PAYMASTER, 8453)

        assert verifier.domain_separator == signable.header
        assert verifier.signing_hash(permit) == keccak(
            b"\x19" + signable.version + signable.header + signable.body
        )

    def test_requires_operation_hash(self):
        permit = replace(signed(Account.create()), operation_hash=None)
        with pytest.raises(ValueError):
            PermitVerifier(PAYMASTER, 8453).signing_hash(permit)


class TestKeySigner:
    def test_valid_signature(self):
        assert PermitVerifier(PAYMASTER, 8453).verify(signed(Account.create()))

    @pytest.mark.parametrize(
        "changes",
        [
            {"nonce": 12},
            {"valid_until": 201},
            {"valid_after": 99},
            {"operation_hash": keccak(b"other operation")},
            {"sponsor": "0x" + "dd" * 20},
        ],
    )
    def test_tampered_field_fails(self, changes):
        permit = replace(signed(Account.create()), **changes)
        assert PermitVerifier(PAYMASTER, 8453).verify(permit) is False

    def test_signature_by_someone_else_fails(self):
        permit = signed(Account.create())
        permit.signer = Account.create().address.lower()
        assert PermitVerifier(PAYMASTER, 8453).verify(permit) is False

    def test_other_paymaster_or_domain_fails(self):
        permit = signed(Account.create())
        assert PermitVerifier("0x" + "ee" * 20, 8453).verify(permit) is False
        assert PermitVerifier(PAYMASTER, 8453, domain_name="Other").verify(permit) is False

    def test_empty_signature_is_soft_failure(self):
        permit = replace(signed(Account.create()), signature=b"")
        assert PermitVerifier(PAYMASTER, 8453).verify(permit) is False

    def test_garbage_65_bytes_is_soft_failure(self):
        permit = replace(signed(Account.create()), signature=b"\x00" * 65)
        assert PermitVerifier(PAYMASTER, 8453).verify(permit) is False

    @pytest.mark.parametrize("length", [1, 64, 66, 130])
    def test_wrong_length_is_malformed(self, length):
        permit = replace(signed(Account.create()), signature=b"\x01" * length)
        with pytest.raises(MalformedSignatureError):
            PermitVerifier(PAYMASTER, 8453).verify(permit)


class TestChainSplit:
    def test_separator_follows_chain_id(self):
        chain = {"id": 1}
        verifier = PermitVerifier(PAYMASTER, lambda: chain["id"])
        acct = Account.create()
        old_chain_permit = signed(acct, chain_id=1)

        assert verifier.verify(old_chain_permit)

        chain["id"] = 2
        assert verifier.chain_id == 2
        assert verifier.domain_separator == compute_domain_separator("Patron", 2, PAYMASTER)
        assert verifier.verify(old_chain_permit) is False
        assert verifier.verify(signed(acct, chain_id=2))


class TestContractSigner:
    def test_contract_validates_its_own_signatures(self):
        wallet_address = "0x" + "cd" * 20
        wallet = ApprovedHashWallet()
        registry = ContractSignerRegistry()
        registry.register(wallet_address, wallet)
        verifier = PermitVerifier(PAYMASTER, 8453, contract_signers=registry)

        permit = replace(signed(Account.create()), signer=wallet_address, signature=b"\x01")
        assert verifier.verify(permit) is False

        wallet.approved.add(verifier.signing_hash(permit))
        assert verifier.verify(permit) is True

    def test_contract_signature_length_is_not_checked(self):
        wallet_address = "0x" + "cd" * 20
        registry = ContractSignerRegistry()
        registry.register(wallet_address, ApprovedHashWallet())
        verifier = PermitVerifier(PAYMASTER, 8453, contract_signers=registry)

        permit = replace(signed(Account.create()), signer=wallet_address, signature=b"\x01" * 200)
        verifier.check_signature_format(permit)

    def test_reverting_contract_is_soft_failure(self):
        wallet_address = "0x" + "cd" * 20
        registry = ContractSignerRegistry()
        registry.register(wallet_address.upper().replace("0X", "0x"), RevertingWallet())
        verifier = PermitVerifier(PAYMASTER, 8453, contract_signers=registry)

        assert wallet_address in registry
        permit = replace(signed(Account.create()), signer=wallet_address)
        assert verifier.verify(permit) is False

        registry.unregister(wallet_address)
        assert wallet_address not in registry
