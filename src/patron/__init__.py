"""
Patron — sponsored execution credits.

Operation senders pay from a prepaid credit balance, or a sponsor covers
the cost under a signed, time-bounded, replay-protected permit.
"""

__version__ = "0.1.0"

from .batch import BatchItem, BatchRunner, OperationOutcome, OperationState
from .config import EngineConfig
from .credit import CreditLedger, LocalCreditLedger, LocalEscrow
from .delegation import DelegationRegistry
from .engine import (
    AuthorizationEngine,
    PreCheckResult,
    SettlementToken,
    ValidationResult,
    build_local_engine,
)
from .errors import (
    InsufficientCreditError,
    InvalidDelegationError,
    MalformedPermitError,
    MalformedSignatureError,
    PatronError,
    ReplayDetectedError,
    SenderNotAuthorityError,
)
from .nonces import NonceLedger
from .operation import DraftEncoding, Operation, hash_draft_operation
from .permit import Permit, encode_permit, parse_permit, sign_permit
from .verifier import ContractSignerRegistry, PermitVerifier
from .audit import AuditTrail, EventType

__all__ = [
    "AuthorizationEngine", "PreCheckResult", "SettlementToken", "ValidationResult",
    "build_local_engine", "EngineConfig",
    "BatchItem", "BatchRunner", "OperationOutcome", "OperationState",
    "CreditLedger", "LocalCreditLedger", "LocalEscrow",
    "DelegationRegistry", "NonceLedger",
    "Operation", "DraftEncoding", "hash_draft_operation",
    "Permit", "encode_permit", "parse_permit", "sign_permit",
    "PermitVerifier", "ContractSignerRegistry",
    "PatronError", "SenderNotAuthorityError", "InsufficientCreditError",
    "ReplayDetectedError", "InvalidDelegationError",
    "MalformedPermitError", "MalformedSignatureError",
    "AuditTrail", "EventType",
]
