"""
Patron error types.

Every fatal fault raised by the engine is its own class with a stable
``code`` so the execution environment can report a distinguishable
rejection reason. Soft outcomes (bad signature, validity window) are
returned as data and never raised.
"""


class PatronError(Exception):
    """Base error for all Patron operations."""

    code = "PatronError"


# Authority faults
class SenderNotAuthorityError(PatronError):
    """Entry point invoked by someone other than the trusted environment."""

    code = "SenderNotAuthority"

    def __init__(self, caller: str, expected: str):
        self.caller = caller
        self.expected = expected
        super().__init__(f"Caller {caller} is not the execution environment {expected}")


# Insufficiency faults
class InsufficientCreditError(PatronError):
    """Payer's credit balance is below the amount required."""

    code = "InsufficientCredit"

    def __init__(self, identity: str, required: int, available: int):
        self.identity = identity
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credit for {identity}: requires {required}, has {available}"
        )


# Replay faults
class ReplayDetectedError(PatronError):
    """Nonce already consumed for this identity."""

    code = "ReplayDetected"

    def __init__(self, identity: str, nonce: int):
        self.identity = identity
        self.nonce = nonce
        super().__init__(f"Nonce {nonce} already consumed for {identity}")


# Authorization-policy faults
class InvalidDelegationError(PatronError):
    """Signer is neither the sponsor nor one of its delegates."""

    code = "InvalidDelegation"

    def __init__(self, sponsor: str, signer: str):
        self.sponsor = sponsor
        self.signer = signer
        super().__init__(f"{signer} is not delegated to sign for sponsor {sponsor}")


# Malformed-input faults
class MalformedInputError(PatronError):
    """Base error for unparseable caller input."""

    code = "MalformedInput"


class MalformedPermitError(MalformedInputError):
    """Authorization blob is too short or otherwise unparseable."""

    code = "MalformedPermit"


class MalformedSignatureError(MalformedInputError):
    """Signature bytes have the wrong shape for the signer kind."""

    code = "MalformedSignature"
