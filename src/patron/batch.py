"""
Serialized batch processing on behalf of the execution environment.

All operations in a batch are pre-checked in submission order before any
of them is settled, which is how the environment orders nonce consumption
and balance checks for operations that compete for the same sponsor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .engine import AuthorizationEngine, PreCheckResult
from .errors import PatronError
from .identity import to_uint
from .operation import Operation


logger = logging.getLogger(__name__)

NOT_SPONSORED = "NotSponsored"
INVALID_INPUT = "InvalidInput"


class OperationState(str, Enum):
    RECEIVED = "received"
    SELF_PAY = "self_pay"
    SPONSORED = "sponsored"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    SETTLED = "settled"


@dataclass
class BatchItem:
    operation: Operation
    max_cost: int
    actual_cost: int
    actual_fee_rate: int

    def __post_init__(self) -> None:
        self.max_cost = to_uint(self.max_cost, "max_cost")
        self.actual_cost = to_uint(self.actual_cost, "actual_cost")
        self.actual_fee_rate = to_uint(self.actual_fee_rate, "actual_fee_rate")
        if self.actual_cost > self.max_cost:
            raise ValueError(f"actual_cost {self.actual_cost} exceeds max_cost {self.max_cost}")
        if self.actual_fee_rate > self.operation.max_fee_per_gas:
            raise ValueError("actual_fee_rate exceeds the operation's max_fee_per_gas")


@dataclass
class OperationOutcome:
    index: int
    state: OperationState
    reason: Optional[str] = None
    message: Optional[str] = None
    payer: Optional[str] = None
    charged: int = 0

    @property
    def settled(self) -> bool:
        return self.state is OperationState.SETTLED

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "state": self.state.value,
            "reason": self.reason,
            "message": self.message,
            "payer": self.payer,
            "charged": self.charged,
        }


class BatchRunner:
    """Runs validation for a whole batch, then settlement, like the environment does."""

    def __init__(self, engine: AuthorizationEngine):
        self.engine = engine

    def run(self, items: list[BatchItem], now: Optional[int] = None) -> list[OperationOutcome]:
        timestamp = int(time.time()) if now is None else now
        outcomes: list[OperationOutcome] = []
        authorized: list[tuple[OperationOutcome, PreCheckResult, BatchItem]] = []

        for index, item in enumerate(items):
            outcome = OperationOutcome(index=index, state=OperationState.RECEIVED)
            outcomes.append(outcome)
            try:
                result = self.engine.pre_check(self.engine.environment, item.operation, item.max_cost)
            except (PatronError, ValueError) as e:
                self._reject(outcome, e)
                continue

            outcome.payer = result.token.payer
            outcome.state = OperationState.SPONSORED if result.token.sponsored else OperationState.SELF_PAY
            if not result.validation.valid:
                self._reject_soft(outcome, "permit signature is not valid")
                continue
            if not result.validation.is_within_window(timestamp):
                self._reject_soft(outcome, "permit is outside its validity window")
                continue
            outcome.state = OperationState.AUTHORIZED
            authorized.append((outcome, result, item))

        for outcome, result, item in authorized:
            try:
                outcome.charged = self.engine.settle(
                    self.engine.environment,
                    result.token,
                    item.actual_cost,
                    item.actual_fee_rate,
                )
            except (PatronError, ValueError) as e:
                self._reject(outcome, e)
                continue
            outcome.state = OperationState.SETTLED

        logger.info(
            "Batch processed: %s operations, %s settled",
            len(outcomes),
            sum(1 for o in outcomes if o.settled),
        )
        return outcomes

    @staticmethod
    def _reject_soft(outcome: OperationOutcome, detail: str) -> None:
        outcome.state = OperationState.REJECTED
        outcome.reason = NOT_SPONSORED
        outcome.message = f"Operation not sponsored ({detail}); try self-pay or another sponsor"

    @staticmethod
    def _reject(outcome: OperationOutcome, error: Exception) -> None:
        outcome.state = OperationState.REJECTED
        outcome.reason = error.code if isinstance(error, PatronError) else INVALID_INPUT
        outcome.message = str(error)
