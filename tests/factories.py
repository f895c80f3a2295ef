# tests/factories.py
"""Payment fixtures shared across test modules."""
from unittest.mock import MagicMock

from paygate.x402.ledger import TransactionFacts

RECIPIENT = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
PAYER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OTHER_ADDRESS = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
CHAIN_ID = 84532
REQUIRED_AMOUNT = 10 ** 14  # 0.0001 ETH
MIN_CONFIRMATIONS = 3
TX_BLOCK = 1000
TX_HASH = "0x" + "a" * 64


def make_facts(**overrides) -> TransactionFacts:
    """Facts for a payment that passes every check against the gate_config fixture."""
    values = dict(
        reference=TX_HASH,
        succeeded=True,
        sender=PAYER,
        recipient=RECIPIENT,
        amount=REQUIRED_AMOUNT,
        block_height=TX_BLOCK,
        chain_id=CHAIN_ID,
    )
    values.update(overrides)
    return TransactionFacts(**values)


def make_ledger(facts=None, height=TX_BLOCK + MIN_CONFIRMATIONS) -> MagicMock:
    """Mock ledger reader returning the given facts and chain height."""
    ledger = MagicMock()
    ledger.get_transaction.return_value = make_facts() if facts is None else facts
    ledger.get_chain_height.return_value = height
    return ledger
