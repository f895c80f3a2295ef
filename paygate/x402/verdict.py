# paygate/x402/verdict.py
"""
Verification verdicts produced by the payment verifier.

A verdict is exactly one of:
- Accepted: the payment is valid (fresh, or served from the replay store)
- Rejected: the payment is not acceptable, with a stable reason code
- InternalError: the ledger or the replay store could not be consulted

Callers dispatch on the type; an InternalError is never a statement about
the payment itself.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class ReasonCode(str, Enum):
    """Machine-readable rejection reasons returned to callers."""
    INVALID_REFERENCE_FORMAT = "InvalidReferenceFormat"
    LEDGER_LOOKUP_FAILED = "LedgerLookupFailed"
    TRANSACTION_FAILED = "TransactionFailed"
    WRONG_RECIPIENT = "WrongRecipient"
    WRONG_CHAIN = "WrongChain"
    INSUFFICIENT_AMOUNT = "InsufficientAmount"
    INSUFFICIENT_CONFIRMATIONS = "InsufficientConfirmations"
    REPLAY_ATTACK = "ReplayAttack"


# Rejections that can never turn into an acceptance for the same reference.
# They are recorded, and any later attempt with the reference is a replay.
STICKY_REASONS = frozenset({
    ReasonCode.TRANSACTION_FAILED,
    ReasonCode.WRONG_RECIPIENT,
    ReasonCode.WRONG_CHAIN,
    ReasonCode.INSUFFICIENT_AMOUNT,
})

# Rejections that may resolve with time; the same reference can be retried.
TRANSIENT_REASONS = frozenset({
    ReasonCode.LEDGER_LOOKUP_FAILED,
    ReasonCode.INSUFFICIENT_CONFIRMATIONS,
})


@dataclass(frozen=True)
class Accepted:
    payer: str
    amount: int
    confirmations: int
    block_height: int
    chain_id: int
    cached: bool = False
    cached_response: Optional[Any] = None
    first_seen: Optional[datetime] = None
    # Path the payment was redeemed on (cached verdicts only)
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class Rejected:
    reason_code: ReasonCode
    detail: str
    first_seen: Optional[datetime] = None

    @property
    def is_sticky(self) -> bool:
        return self.reason_code in STICKY_REASONS

    @property
    def is_transient(self) -> bool:
        return self.reason_code in TRANSIENT_REASONS


@dataclass(frozen=True)
class InternalError:
    detail: str


Verdict = Union[Accepted, Rejected, InternalError]
