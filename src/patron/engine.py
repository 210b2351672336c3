"""
Two-phase authorization and settlement.

Flow for each operation:
1. ``pre_check``: pick the payer (the sender itself, or a sponsor named in
   a permit), check the payer's credit covers the worst case, and for
   sponsored operations consume the permit nonce and verify its signature
2. the environment executes the operation
3. ``settle``: burn the actual cost from the payer named in the token

Only the trusted execution environment may call either phase.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditTrail, EventType
from .config import EngineConfig
from .credit import CreditLedger, LocalCreditLedger, LocalEscrow
from .delegation import DelegationRegistry, SqliteDelegationStore
from .errors import (
    InsufficientCreditError,
    InvalidDelegationError,
    PatronError,
    SenderNotAuthorityError,
)
from .identity import normalize_address, to_uint
from .nonces import NonceLedger, SqliteNonceStore
from .operation import Operation, hash_draft_operation
from .permit import is_self_pay, parse_permit, routing_tag
from .verifier import PermitVerifier


logger = logging.getLogger(__name__)

_ADDRESS_MASK = (1 << 160) - 1
_UINT48_MASK = (1 << 48) - 1


@dataclass(frozen=True)
class ValidationResult:
    """Signature outcome plus the window the caller must enforce.

    ``valid_until == 0`` means the result never expires.
    """

    valid: bool
    valid_after: int = 0
    valid_until: int = 0

    def is_within_window(self, now: int) -> bool:
        if now < self.valid_after:
            return False
        return self.valid_until == 0 or now <= self.valid_until

    def packed(self) -> int:
        """Legacy ``sigFailed | validUntil << 160 | validAfter << 208`` form."""
        return (0 if self.valid else 1) | (self.valid_until << 160) | (self.valid_after << 208)

    @classmethod
    def unpack(cls, value: int) -> ValidationResult:
        return cls(
            valid=(value & _ADDRESS_MASK) == 0,
            valid_until=(value >> 160) & _UINT48_MASK,
            valid_after=(value >> 208) & _UINT48_MASK,
        )


@dataclass(frozen=True)
class SettlementToken:
    """Handed out by ``pre_check`` and passed back to ``settle``."""

    payer: str
    sponsored: bool = False


@dataclass(frozen=True)
class PreCheckResult:
    token: SettlementToken
    validation: ValidationResult

    @property
    def sig_valid(self) -> bool:
        return self.validation.valid


class AuthorizationEngine:
    """Sponsorship and credit authorization for one paymaster identity."""

    def __init__(
        self,
        config: EngineConfig,
        credit: CreditLedger,
        nonces: NonceLedger,
        delegations: DelegationRegistry,
        verifier: Optional[PermitVerifier] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.config = config
        self.credit = credit
        self.nonces = nonces
        self.delegations = delegations
        self.verifier = verifier or PermitVerifier(
            paymaster=config.paymaster,
            chain_id=config.chain_id,
            domain_name=config.domain_name,
        )
        self.audit = audit

    @property
    def paymaster(self) -> str:
        return self.config.paymaster

    @property
    def environment(self) -> str:
        return self.config.environment

    def required_credit(self, cost: int, fee_per_unit: int) -> int:
        """Cost plus the engine's own metered overhead at ``fee_per_unit``."""
        return to_uint(cost, "cost") + self.config.verification_overhead * to_uint(
            fee_per_unit, "fee_per_unit"
        )

    # ── Environment entry points ─────────────────────────────────

    def pre_check(self, caller: str, operation: Operation, max_cost: int) -> PreCheckResult:
        """Validate ``operation`` and choose who pays for it."""
        self._require_environment(caller)
        try:
            result = self._authorize(operation, to_uint(max_cost, "max_cost"))
        except PatronError as e:
            logger.info("Pre-check rejected for %s: %s", operation.sender, e)
            self._log(
                EventType.PRECHECK_REJECTED,
                sender=operation.sender,
                success=False,
                reason=e.code,
                details={"message": str(e), "max_cost": str(max_cost)},
            )
            raise

        self._log(
            EventType.PRECHECK_ACCEPTED,
            payer=result.token.payer,
            sender=operation.sender,
            amount=max_cost,
            success=result.sig_valid,
            reason=None if result.sig_valid else "SignatureInvalid",
            details={
                "sponsored": result.token.sponsored,
                "valid_after": result.validation.valid_after,
                "valid_until": result.validation.valid_until,
            },
        )
        return result

    def settle(
        self,
        caller: str,
        token: SettlementToken,
        actual_cost: int,
        actual_fee_rate: int,
    ) -> int:
        """Burn the actual charge from the token's payer; returns the amount burned."""
        self._require_environment(caller)
        charge = self.required_credit(actual_cost, actual_fee_rate)
        try:
            self.credit.burn(token.payer, charge)
        except InsufficientCreditError as e:
            self._log(
                EventType.SETTLEMENT_FAILED,
                payer=token.payer,
                amount=charge,
                success=False,
                reason=e.code,
            )
            raise

        logger.info("Settled %s from %s (sponsored=%s)", charge, token.payer, token.sponsored)
        self._log(
            EventType.SETTLED,
            payer=token.payer,
            amount=charge,
            details={"actual_cost": str(actual_cost), "actual_fee_rate": str(actual_fee_rate)},
        )
        return charge

    # ── Credit and delegation management ─────────────────────────

    def mint(self, caller: str, amount: int, recipient: Optional[str] = None) -> None:
        """Mint escrow-backed credit funded by ``caller`` for ``recipient`` (default: caller)."""
        funder = normalize_address(caller)
        target = normalize_address(recipient or caller)
        self.credit.mint_to(funder, target, amount)
        self._log(EventType.CREDIT_MINTED, payer=funder, sponsor=target, amount=amount)

    def delegate(self, caller: str, delegate: str) -> None:
        self.delegations.delegate(caller, delegate)
        self._log(EventType.DELEGATION_GRANTED, sponsor=normalize_address(caller), signer=normalize_address(delegate))

    def undelegate(self, caller: str, delegate: str) -> None:
        self.delegations.undelegate(caller, delegate)
        self._log(EventType.DELEGATION_REVOKED, sponsor=normalize_address(caller), signer=normalize_address(delegate))

    def is_delegated(self, sponsor: str, signer: str) -> bool:
        return self.delegations.is_delegated(sponsor, signer)

    # ── Internals ────────────────────────────────────────────────

    def _authorize(self, operation: Operation, max_cost: int) -> PreCheckResult:
        blob = operation.paymaster_and_data
        routing_tag(blob)
        required = self.required_credit(max_cost, operation.max_fee_per_gas)

        if is_self_pay(blob):
            self._require_credit(operation.sender, required)
            return PreCheckResult(
                token=SettlementToken(payer=operation.sender),
                validation=ValidationResult(valid=True),
            )

        permit = parse_permit(blob)

        # Hard faults first: nothing may be committed for a rejected permit.
        self._require_credit(permit.sponsor, required)
        if permit.signer != permit.sponsor and not self.delegations.is_delegated(
            permit.sponsor, permit.signer
        ):
            raise InvalidDelegationError(permit.sponsor, permit.signer)
        self.verifier.check_signature_format(permit)

        # From here on the nonce stays consumed whatever the signature says.
        self.nonces.consume(permit.signer, permit.nonce)
        self._log(
            EventType.NONCE_CONSUMED,
            sponsor=permit.sponsor,
            signer=permit.signer,
            details={"nonce": str(permit.nonce)},
        )

        permit.operation_hash = hash_draft_operation(operation, self.config.draft_encoding)
        sig_valid = self.verifier.verify(permit)
        if not sig_valid:
            logger.info(
                "Permit signature invalid: sponsor=%s signer=%s nonce=%s",
                permit.sponsor,
                permit.signer,
                permit.nonce,
            )

        return PreCheckResult(
            token=SettlementToken(payer=permit.sponsor, sponsored=True),
            validation=ValidationResult(
                valid=sig_valid,
                valid_after=permit.valid_after,
                valid_until=permit.valid_until,
            ),
        )

    def _require_environment(self, caller: str) -> None:
        normalized = normalize_address(caller)
        if normalized != self.environment:
            raise SenderNotAuthorityError(normalized, self.environment)

    def _require_credit(self, identity: str, required: int) -> None:
        available = self.credit.balance_of(identity)
        if available < required:
            raise InsufficientCreditError(identity, required, available)

    def _log(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)


def build_local_engine(
    config: EngineConfig,
    audit: Optional[AuditTrail] = None,
) -> AuthorizationEngine:
    """Engine wired to SQLite stores under ``config.home``."""
    escrow = LocalEscrow(config.db_path)
    return AuthorizationEngine(
        config=config,
        credit=LocalCreditLedger(config.db_path, escrow=escrow, escrow_account=config.paymaster),
        nonces=NonceLedger(SqliteNonceStore(config.db_path)),
        delegations=DelegationRegistry(SqliteDelegationStore(config.db_path)),
        audit=audit,
    )
