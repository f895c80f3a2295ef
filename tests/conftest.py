# tests/conftest.py
"""
Shared test configuration.

Environment defaults are set before any paygate module is imported, so the
module-level settings and app never touch a real node, database file or
audit log.
"""
import os
import tempfile

_AUDIT_DIR = tempfile.mkdtemp(prefix="paygate-audit-")

os.environ.setdefault("X402_PAY_TO_ADDRESS", "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266")
os.environ.setdefault("X402_REPLAY_DB_URL", "sqlite://")
os.environ.setdefault("X402_AUDIT_LOG_PATH", os.path.join(_AUDIT_DIR, "x402_audit.jsonl"))
os.environ.setdefault("BASE_RPC_URL", "http://localhost:8545")

import pytest

from paygate.core.config import GateConfig
from paygate.x402.replay import SqlReplayStore

from factories import CHAIN_ID, MIN_CONFIRMATIONS, RECIPIENT, REQUIRED_AMOUNT


@pytest.fixture
def gate_config() -> GateConfig:
    return GateConfig(
        recipient_address=RECIPIENT,
        required_amount=REQUIRED_AMOUNT,
        chain_id=CHAIN_ID,
        network="Base Sepolia",
        min_confirmations=MIN_CONFIRMATIONS,
    )


@pytest.fixture
def store() -> SqlReplayStore:
    """Fresh in-memory replay store, for single-threaded tests."""
    return SqlReplayStore("sqlite://")


@pytest.fixture
def file_store(tmp_path) -> SqlReplayStore:
    """Replay store on a file, for tests that hit it from several threads."""
    return SqlReplayStore(f"sqlite:///{tmp_path / 'replay.db'}")
