# paygate/x402/verifier.py
"""
Payment verification for x402 transaction-hash proofs.

The verifier turns an untrusted transaction hash into a verdict by running
an ordered chain of checks. Cheap local checks run first, then the replay
store, then the ledger:

1. check_format          - hash shape, no I/O
2. check_replay          - previously judged references
3. fetch_facts           - transaction + receipt from the ledger
4. check_outcome         - transaction must have succeeded
5. check_recipient       - paid to our address
6. check_chain           - mined on our chain
7. check_amount          - at least the required amount (integer compare)
8. check_confirmations   - buried deep enough

The first check that returns a verdict ends the chain. If none does, the
payment is accepted. The verifier only reads; recording the verdict is the
caller's job (see middleware.PaymentGateMiddleware).
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

from paygate.x402.ledger import LedgerError, LedgerUnavailableError, TransactionFacts
from paygate.x402.replay import ReplayRecord, ReplayStoreError
from paygate.x402.verdict import Accepted, InternalError, ReasonCode, Rejected, Verdict

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"0x[0-9a-fA-F]{64}")


class LedgerReader(Protocol):
    def get_transaction(self, reference: str) -> Optional[TransactionFacts]: ...

    def get_chain_height(self) -> int: ...


class ReplayStore(Protocol):
    def lookup(self, reference: str) -> Optional[ReplayRecord]: ...

    def insert_if_absent(self, record: ReplayRecord) -> bool: ...


def is_valid_reference(reference: Optional[str]) -> bool:
    """Check that a value is a 0x-prefixed 32-byte hex transaction hash."""
    return isinstance(reference, str) and REFERENCE_PATTERN.fullmatch(reference) is not None


def normalize_reference(reference: str) -> str:
    """Lower-case a hash so case variants share one replay record."""
    return reference.lower()


@dataclass
class VerificationContext:
    """Inputs and intermediate results of a single verify() call."""
    reference: str
    required_amount: int
    recipient_address: str
    expected_chain_id: int
    min_confirmations: int
    ledger: LedgerReader
    store: ReplayStore
    facts: Optional[TransactionFacts] = None
    confirmations: Optional[int] = None


Check = Callable[[VerificationContext], Optional[Verdict]]


def check_format(ctx: VerificationContext) -> Optional[Verdict]:
    if not is_valid_reference(ctx.reference):
        return Rejected(
            ReasonCode.INVALID_REFERENCE_FORMAT,
            "Expected a 0x-prefixed transaction hash of 64 hex characters",
        )
    ctx.reference = normalize_reference(ctx.reference)
    return None


def check_replay(ctx: VerificationContext) -> Optional[Verdict]:
    try:
        record = ctx.store.lookup(ctx.reference)
    except ReplayStoreError as e:
        return InternalError(f"Replay store unavailable: {e}")

    if record is None:
        return None

    if record.is_accepted:
        logger.info(f"Idempotent request detected: {ctx.reference}")
        return Accepted(
            payer=record.payer,
            amount=record.amount,
            confirmations=record.confirmations,
            block_height=record.block_height,
            chain_id=record.chain_id,
            cached=True,
            cached_response=record.response_payload,
            first_seen=record.created_at,
            endpoint=record.endpoint,
        )

    logger.warning(f"Replay attack detected: {ctx.reference} (first rejected as {record.reason_code})")
    return Rejected(
        ReasonCode.REPLAY_ATTACK,
        f"This transaction was already used at {record.created_at.isoformat()}",
        first_seen=record.created_at,
    )


def fetch_facts(ctx: VerificationContext) -> Optional[Verdict]:
    try:
        facts = ctx.ledger.get_transaction(ctx.reference)
    except LedgerUnavailableError as e:
        return InternalError(f"Ledger unavailable: {e}")
    except LedgerError as e:
        return Rejected(ReasonCode.LEDGER_LOOKUP_FAILED, f"Could not look up transaction: {e}")

    if facts is None:
        return Rejected(
            ReasonCode.LEDGER_LOOKUP_FAILED,
            "Transaction not found or not yet mined; retry later with the same hash",
        )
    ctx.facts = facts
    return None


def check_outcome(ctx: VerificationContext) -> Optional[Verdict]:
    if not ctx.facts.succeeded:
        return Rejected(ReasonCode.TRANSACTION_FAILED, "Transaction reverted on-chain")
    return None


def check_recipient(ctx: VerificationContext) -> Optional[Verdict]:
    recipient = ctx.facts.recipient
    if recipient is None or recipient.lower() != ctx.recipient_address.lower():
        return Rejected(
            ReasonCode.WRONG_RECIPIENT,
            f"Payment sent to {recipient}, expected {ctx.recipient_address}",
        )
    return None


def check_chain(ctx: VerificationContext) -> Optional[Verdict]:
    if ctx.facts.chain_id != ctx.expected_chain_id:
        return Rejected(
            ReasonCode.WRONG_CHAIN,
            f"Transaction chain id {ctx.facts.chain_id}, expected {ctx.expected_chain_id}",
        )
    return None


def check_amount(ctx: VerificationContext) -> Optional[Verdict]:
    if ctx.facts.amount < ctx.required_amount:
        return Rejected(
            ReasonCode.INSUFFICIENT_AMOUNT,
            f"Paid {ctx.facts.amount}, required at least {ctx.required_amount} (smallest unit)",
        )
    return None


def check_confirmations(ctx: VerificationContext) -> Optional[Verdict]:
    try:
        height = ctx.ledger.get_chain_height()
    except LedgerError as e:
        return InternalError(f"Could not fetch chain height: {e}")
    if not isinstance(height, int):
        return InternalError(f"Ledger returned an invalid chain height: {height!r}")

    ctx.confirmations = height - ctx.facts.block_height
    if ctx.confirmations < ctx.min_confirmations:
        return Rejected(
            ReasonCode.INSUFFICIENT_CONFIRMATIONS,
            f"{ctx.confirmations}/{ctx.min_confirmations} confirmations; retry later with the same hash",
        )
    return None


CHECKS: Sequence[Check] = (
    check_format,
    check_replay,
    fetch_facts,
    check_outcome,
    check_recipient,
    check_chain,
    check_amount,
    check_confirmations,
)


class PaymentVerifier:
    """
    Stateless payment verifier.

    Holds only its collaborators, so one instance can serve concurrent
    requests.
    """

    def __init__(self, ledger: LedgerReader, store: ReplayStore, checks: Sequence[Check] = CHECKS):
        self.ledger = ledger
        self.store = store
        self.checks = tuple(checks)

    def verify(
        self,
        reference: str,
        required_amount: int,
        recipient_address: str,
        expected_chain_id: int,
        min_confirmations: int,
    ) -> Verdict:
        """
        Judge a caller-supplied transaction hash.

        Args:
            reference: Transaction hash from the request (untrusted)
            required_amount: Minimum payment in the asset's smallest unit
            recipient_address: Address that must have received the payment
            expected_chain_id: Chain the transaction must be mined on
            min_confirmations: Blocks required on top of the transaction's block

        Returns:
            Accepted, Rejected or InternalError. A fresh Accepted has not
            been recorded yet.
        """
        ctx = VerificationContext(
            reference=reference,
            required_amount=required_amount,
            recipient_address=recipient_address,
            expected_chain_id=expected_chain_id,
            min_confirmations=min_confirmations,
            ledger=self.ledger,
            store=self.store,
        )

        for check in self.checks:
            verdict = check(ctx)
            if verdict is not None:
                if isinstance(verdict, Rejected):
                    logger.warning(f"Payment {ctx.reference} rejected at {check.__name__}: {verdict.reason_code.value}")
                elif isinstance(verdict, InternalError):
                    logger.error(f"Payment {ctx.reference} could not be verified at {check.__name__}: {verdict.detail}")
                return verdict

        facts = ctx.facts
        logger.info(f"Payment verified: {facts.amount} from {facts.sender} ({ctx.confirmations} confirmations)")
        return Accepted(
            payer=facts.sender,
            amount=facts.amount,
            confirmations=ctx.confirmations,
            block_height=facts.block_height,
            chain_id=facts.chain_id,
            cached=False,
        )
