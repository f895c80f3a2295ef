# tests/test_x402_integration.py
"""
Integration tests for the payment gateway.

These tests drive the full application built by create_app:
- 402 challenge, payment, idempotent retry
- Rejection, replay detection and the dashboard views
- Audit trail of each decision

The ledger is mocked; the replay store is a real in-memory SQLite database.
"""
import pytest
from unittest.mock import patch

from fastapi.testclient import TestClient

from paygate.main import create_app
from paygate.x402.audit import AuditEventType, read_audit_log
from paygate.x402.ledger import LedgerUnavailableError
from paygate.x402.ratelimit import RateLimiter

from factories import (
    MIN_CONFIRMATIONS,
    OTHER_ADDRESS,
    PAYER,
    RECIPIENT,
    REQUIRED_AMOUNT,
    TX_BLOCK,
    TX_HASH,
    make_facts,
    make_ledger,
)

HEADER = "X-Payment-Hash"


@pytest.fixture(autouse=True)
def audit_log(tmp_path):
    with patch("paygate.x402.audit.settings") as mock_settings:
        mock_settings.X402_AUDIT_LOG_PATH = str(tmp_path / "audit.jsonl")
        yield


def build_client(gate_config, store, ledger=None, rate_limit=1000):
    ledger = ledger or make_ledger()
    app = create_app(gate_config, ledger=ledger, store=store, rate_limiter=RateLimiter(rate_limit))
    return TestClient(app), ledger


def event_types():
    return [event["event_type"] for event in reversed(read_audit_log(max_entries=1000))]


class TestFullPaymentFlow:
    """Challenge, pay, retry."""

    def test_forecast_flow(self, gate_config, store):
        client, ledger = build_client(gate_config, store)

        challenge = client.post("/api/market-forecast")
        assert challenge.status_code == 402
        assert challenge.json()["payTo"] == RECIPIENT

        paid = client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        assert paid.status_code == 200
        body = paid.json()
        assert body["cached"] is False
        assert [f["symbol"] for f in body["data"]["forecasts"]] == ["BTC", "ETH", "SOL", "BASE"]
        assert body["transaction"]["from"] == PAYER

        retry = client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        assert retry.status_code == 200
        assert retry.json()["cached"] is True
        assert retry.json()["data"] == body["data"]
        assert ledger.get_transaction.call_count == 1

    def test_premium_data_flow(self, gate_config, store):
        client, _ = build_client(gate_config, store)

        assert client.get("/api/premium-data").status_code == 402

        response = client.get("/api/premium-data", headers={HEADER: TX_HASH})

        assert response.status_code == 200
        assert response.json()["data"]["secret"] == "The Agent Economy is Live!"

    def test_hash_redeemed_once_across_endpoints(self, gate_config, store):
        """A hash paid for one endpoint is a replay on any other."""
        client, ledger = build_client(gate_config, store)

        first = client.get("/api/premium-data", headers={HEADER: TX_HASH})
        second = client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        again = client.get("/api/premium-data", headers={HEADER: TX_HASH})

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error"] == "ReplayAttack"
        assert second.json()["originalUse"] is not None
        assert "forecast" not in second.json()
        assert again.status_code == 200
        assert again.json()["cached"] is True
        assert again.json()["data"] == first.json()["data"]
        assert ledger.get_transaction.call_count == 1
        assert "replay_detected" in event_types()

    def test_dashboard_reflects_payment(self, gate_config, store):
        client, _ = build_client(gate_config, store)
        client.post("/api/market-forecast", headers={HEADER: TX_HASH})

        transactions = client.get("/api/transactions").json()["transactions"]
        metrics = client.get("/api/metrics").json()["metrics"]

        assert len(transactions) == 1
        assert transactions[0]["tx_hash"] == TX_HASH
        assert transactions[0]["status"] == "accepted"
        assert transactions[0]["block_number"] == TX_BLOCK
        assert transactions[0]["confirmations"] == MIN_CONFIRMATIONS
        assert metrics["accepted"] == 1
        assert metrics["total_volume"] == str(REQUIRED_AMOUNT)

    def test_audit_trail(self, gate_config, store):
        client, _ = build_client(gate_config, store)

        client.post("/api/market-forecast")
        client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        client.post("/api/market-forecast", headers={HEADER: TX_HASH})

        assert event_types() == [
            "payment_required_sent",
            "payment_received",
            "payment_verified",
            "resource_served",
            "payment_received",
            "cached_response_served",
        ]
        served = read_audit_log(event_type=AuditEventType.RESOURCE_SERVED)[0]
        assert served["tx_hash"] == TX_HASH
        assert served["wallet_address"] == PAYER


class TestRejectionFlow:
    """Bad payments are refused and cannot be retried."""

    def test_wrong_recipient_then_replay(self, gate_config, store):
        ledger = make_ledger(make_facts(recipient=OTHER_ADDRESS))
        client, _ = build_client(gate_config, store, ledger)

        first = client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        second = client.post("/api/market-forecast", headers={HEADER: TX_HASH})

        assert first.status_code == 400
        assert first.json()["error"] == "WrongRecipient"
        assert second.status_code == 409
        assert second.json()["error"] == "ReplayAttack"

        metrics = client.get("/api/metrics").json()["metrics"]
        assert metrics["rejected"] == 1
        assert metrics["accepted"] == 0
        assert "replay_detected" in event_types()

    def test_failed_transaction(self, gate_config, store):
        client, _ = build_client(gate_config, store, make_ledger(make_facts(succeeded=False)))

        response = client.get("/api/premium-data", headers={HEADER: TX_HASH})

        assert response.status_code == 400
        assert response.json()["error"] == "TransactionFailed"

    def test_ledger_outage_then_recovery(self, gate_config, store):
        """An outage does not burn the payment."""
        ledger = make_ledger()
        ledger.get_transaction.side_effect = LedgerUnavailableError("node down")
        client, _ = build_client(gate_config, store, ledger)

        outage = client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        assert outage.status_code == 503

        ledger.get_transaction.side_effect = None
        ledger.get_transaction.return_value = make_facts()
        recovered = client.post("/api/market-forecast", headers={HEADER: TX_HASH})
        assert recovered.status_code == 200
        assert recovered.json()["cached"] is False

    def test_rate_limit(self, gate_config, store):
        client, _ = build_client(gate_config, store, rate_limit=1)
        headers = {"X-Forwarded-For": "198.51.100.7"}

        assert client.post("/api/market-forecast", headers=headers).status_code == 402
        assert client.post("/api/market-forecast", headers=headers).status_code == 429
        assert "rate_limited" in event_types()
