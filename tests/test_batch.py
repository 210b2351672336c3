"""Tests for serialized batch processing."""

import pytest
from eth_account import Account

from patron.batch import INVALID_INPUT, NOT_SPONSORED, BatchItem, BatchRunner, OperationState
from patron.config import EngineConfig
from patron.engine import build_local_engine
from patron.operation import Operation, hash_draft_operation
from patron.permit import encode_permit, sign_permit


PAYMASTER = "0x" + "aa" * 20
ENVIRONMENT = "0x" + "e0" * 20
CHAIN_ID = 84532
OVERHEAD = 1_000
FEE = 2


@pytest.fixture
def engine(tmp_path):
    config = EngineConfig(
        chain_id=CHAIN_ID,
        paymaster=PAYMASTER,
        environment=ENVIRONMENT,
        verification_overhead=OVERHEAD,
        home=tmp_path / ".patron",
    )
    return build_local_engine(config)


def sponsored(signer, sponsor, nonce, call_data=b"\x01", **permit_kwargs):
    operation = Operation(
        sender=Account.create().address,
        nonce=0,
        call_data=call_data,
        call_gas_limit=50_000,
        max_fee_per_gas=FEE,
    )
    permit = sign_permit(
        signer.key.hex(),
        sponsor=sponsor,
        nonce=nonce,
        operation_hash=hash_draft_operation(operation),
        paymaster=PAYMASTER,
        chain_id=CHAIN_ID,
        **permit_kwargs,
    )
    operation.paymaster_and_data = encode_permit(PAYMASTER, permit)
    return operation


def item(operation, max_cost=10_000, actual_cost=4_000):
    return BatchItem(operation=operation, max_cost=max_cost, actual_cost=actual_cost, actual_fee_rate=FEE)


class TestBatchRunner:
    def test_same_nonce_twice_in_one_batch(self, engine):
        sponsor = Account.create()
        engine.credit.mint(sponsor.address, 10**9)

        outcomes = BatchRunner(engine).run(
            [
                item(sponsored(sponsor, sponsor.address, nonce=5, call_data=b"\x01")),
                item(sponsored(sponsor, sponsor.address, nonce=5, call_data=b"\x02")),
            ],
            now=1_000,
        )

        assert outcomes[0].state is OperationState.SETTLED
        assert outcomes[0].charged == 4_000 + OVERHEAD * FEE
        assert outcomes[1].state is OperationState.REJECTED
        assert outcomes[1].reason == "ReplayDetected"

    def test_last_credit_goes_to_first_in_order(self, engine):
        sponsor = Account.create()
        per_op = 10_000 + OVERHEAD * FEE
        engine.credit.mint(sponsor.address, per_op)

        outcomes = BatchRunner(engine).run(
            [
                item(sponsored(sponsor, sponsor.address, nonce=1), actual_cost=10_000),
                item(sponsored(sponsor, sponsor.address, nonce=2), actual_cost=10_000),
            ],
            now=1_000,
        )

        # Both pass validation against the same balance; only one can settle.
        assert outcomes[0].settled
        assert outcomes[1].state is OperationState.REJECTED
        assert outcomes[1].reason == "InsufficientCredit"
        assert engine.credit.balance_of(sponsor.address) == 0

    def test_soft_failures_are_not_sponsored(self, engine):
        sponsor = Account.create()
        tampered = sponsored(sponsor, sponsor.address, nonce=1)
        tampered.call_data = b"\xff"
        expired = sponsored(sponsor, sponsor.address, nonce=2, valid_until=500)
        engine.credit.mint(sponsor.address, 10**9)

        outcomes = BatchRunner(engine).run([item(tampered), item(expired)], now=1_000)

        for outcome in outcomes:
            assert outcome.state is OperationState.REJECTED
            assert outcome.reason == NOT_SPONSORED
            assert "try self-pay or another sponsor" in outcome.message
            assert outcome.charged == 0
        assert engine.credit.balance_of(sponsor.address) == 10**9
        assert engine.nonces.is_consumed(sponsor.address, 1)

    def test_self_pay_and_hard_faults_mix(self, engine):
        sender = Account.create().address
        engine.credit.mint(sender, 10**6)
        self_paying = Operation(
            sender=sender,
            nonce=0,
            max_fee_per_gas=FEE,
            paymaster_and_data=bytes.fromhex(PAYMASTER[2:]),
        )
        truncated = Operation(sender=sender, nonce=1, max_fee_per_gas=FEE, paymaster_and_data=b"\xaa" * 50)

        outcomes = BatchRunner(engine).run([item(self_paying), item(truncated)], now=1_000)

        assert outcomes[0].settled
        assert outcomes[0].payer == sender.lower()
        assert outcomes[1].reason == "MalformedPermit"
        assert outcomes[1].to_dict()["state"] == "rejected"

    def test_actual_cost_bounded_by_limits(self):
        operation = Operation(sender=ENVIRONMENT, nonce=0, max_fee_per_gas=FEE)
        with pytest.raises(ValueError):
            BatchItem(operation=operation, max_cost=10, actual_cost=11, actual_fee_rate=FEE)
        with pytest.raises(ValueError):
            BatchItem(operation=operation, max_cost=10, actual_cost=10, actual_fee_rate=FEE + 1)

    @pytest.mark.parametrize(
        "field_name, value",
        [("max_cost", 2**256), ("actual_cost", -1), ("actual_fee_rate", "lots")],
    )
    def test_item_amounts_must_be_uint256(self, field_name, value):
        operation = Operation(sender=ENVIRONMENT, nonce=0, max_fee_per_gas=FEE)
        amounts = dict(max_cost=10, actual_cost=10, actual_fee_rate=FEE)
        amounts[field_name] = value
        with pytest.raises(ValueError, match=field_name):
            BatchItem(operation=operation, **amounts)

    def test_bad_settlement_input_rejects_only_that_item(self, engine):
        sender = Account.create().address
        engine.credit.mint(sender, 10**6)

        def self_paying(nonce):
            return Operation(
                sender=sender,
                nonce=nonce,
                max_fee_per_gas=FEE,
                paymaster_and_data=bytes.fromhex(PAYMASTER[2:]),
            )

        oversized = item(self_paying(0))
        oversized.actual_cost = 2**256
        outcomes = BatchRunner(engine).run([oversized, item(self_paying(1))], now=1_000)

        assert outcomes[0].state is OperationState.REJECTED
        assert outcomes[0].reason == INVALID_INPUT
        assert outcomes[1].settled
        assert engine.credit.balance_of(sender) == 10**6 - (4_000 + OVERHEAD * FEE)
