# tests/test_x402_audit.py
"""
Unit tests for x402 audit logging.
"""
import json
import pytest
from unittest.mock import patch

from paygate.x402.audit import (
    AuditEventType,
    create_audit_event,
    generate_request_id,
    get_audit_stats,
    log_audit_event,
    log_cached_response_served,
    log_error,
    log_payment_received,
    log_payment_rejected,
    log_payment_required_sent,
    log_payment_verified,
    log_rate_limited,
    log_replay_detected,
    log_resource_served,
    read_audit_log,
)

from factories import PAYER, RECIPIENT, TX_HASH


@pytest.fixture
def audit_path(tmp_path):
    """Point the audit log at a fresh file."""
    path = tmp_path / "logs" / "audit.jsonl"
    with patch("paygate.x402.audit.settings") as mock_settings:
        mock_settings.X402_AUDIT_LOG_PATH = str(path)
        yield path


def read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestAuditEventType:
    """Test audit event type enumeration."""

    def test_event_types_exist(self):
        """All expected event types exist."""
        assert AuditEventType.PAYMENT_REQUIRED_SENT.value == "payment_required_sent"
        assert AuditEventType.PAYMENT_RECEIVED.value == "payment_received"
        assert AuditEventType.PAYMENT_VERIFIED.value == "payment_verified"
        assert AuditEventType.PAYMENT_REJECTED.value == "payment_rejected"
        assert AuditEventType.REPLAY_DETECTED.value == "replay_detected"
        assert AuditEventType.CACHED_RESPONSE_SERVED.value == "cached_response_served"
        assert AuditEventType.RESOURCE_SERVED.value == "resource_served"
        assert AuditEventType.RATE_LIMITED.value == "rate_limited"
        assert AuditEventType.ERROR.value == "error"


class TestGenerateRequestId:
    """Test request ID generation."""

    def test_correct_length(self):
        assert len(generate_request_id()) == 8

    def test_unique_ids(self):
        ids = [generate_request_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        """Creates event with all required fields."""
        event = create_audit_event(
            AuditEventType.PAYMENT_VERIFIED,
            {"amount": "1"},
            client_ip="10.0.0.1",
            tx_hash=TX_HASH,
            wallet_address=PAYER,
            request_id="abc12345",
        )

        assert event["event_type"] == "payment_verified"
        assert event["request_id"] == "abc12345"
        assert event["client_ip"] == "10.0.0.1"
        assert event["tx_hash"] == TX_HASH
        assert event["wallet_address"] == PAYER
        assert event["data"] == {"amount": "1"}
        assert "timestamp" in event

    def test_generates_request_id(self):
        event = create_audit_event(AuditEventType.ERROR, {})
        assert len(event["request_id"]) == 8


class TestLogAuditEvent:
    """Test writing audit events."""

    def test_creates_directory_and_appends(self, audit_path):
        """Log directory is created and events are appended one per line."""
        log_audit_event(AuditEventType.ERROR, {"n": 1})
        log_audit_event(AuditEventType.ERROR, {"n": 2})

        lines = read_lines(audit_path)
        assert [line["data"]["n"] for line in lines] == [1, 2]

    def test_returns_request_id(self, audit_path):
        assert log_audit_event(AuditEventType.ERROR, {}, request_id="req00001") == "req00001"

    def test_write_failure_returns_none(self, tmp_path):
        """An unwritable log never raises."""
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with patch("paygate.x402.audit.settings") as mock_settings:
            mock_settings.X402_AUDIT_LOG_PATH = str(blocker / "audit.jsonl")
            assert log_audit_event(AuditEventType.ERROR, {}) is None


class TestEventHelpers:
    """Test the per-event helpers."""

    def test_payment_required_sent(self, audit_path):
        log_payment_required_sent("10.0.0.1", "/api/market-forecast", "100", "Base Sepolia", RECIPIENT, "r1")

        event = read_lines(audit_path)[0]
        assert event["event_type"] == "payment_required_sent"
        assert event["data"] == {
            "path": "/api/market-forecast",
            "amount": "100",
            "network": "Base Sepolia",
            "pay_to": RECIPIENT,
        }

    def test_payment_received(self, audit_path):
        log_payment_received("10.0.0.1", TX_HASH, "/api/premium-data")

        event = read_lines(audit_path)[0]
        assert event["tx_hash"] == TX_HASH
        assert event["data"]["path"] == "/api/premium-data"

    def test_payment_verified_amount_as_string(self, audit_path):
        """Large amounts are logged exactly."""
        log_payment_verified("10.0.0.1", TX_HASH, PAYER, 2 ** 100, 3)

        event = read_lines(audit_path)[0]
        assert event["wallet_address"] == PAYER
        assert event["data"] == {"amount": str(2 ** 100), "confirmations": 3}

    def test_payment_rejected(self, audit_path):
        log_payment_rejected("10.0.0.1", TX_HASH, "WrongChain", "chain 1", True)

        event = read_lines(audit_path)[0]
        assert event["data"] == {"reason_code": "WrongChain", "detail": "chain 1", "recorded": True}

    def test_replay_detected(self, audit_path):
        log_replay_detected("10.0.0.1", TX_HASH, "2025-01-01T00:00:00+00:00")

        assert read_lines(audit_path)[0]["data"]["original_use"] == "2025-01-01T00:00:00+00:00"

    def test_cached_and_served(self, audit_path):
        log_resource_served("10.0.0.1", TX_HASH, PAYER, "/api/market-forecast", 12, "r1")
        log_cached_response_served("10.0.0.1", TX_HASH, PAYER, "r2")

        events = read_lines(audit_path)
        assert events[0]["data"] == {"path": "/api/market-forecast", "latency_ms": 12}
        assert events[1]["event_type"] == "cached_response_served"

    def test_rate_limited(self, audit_path):
        log_rate_limited("10.0.0.1", "5 requests per 60s")
        assert read_lines(audit_path)[0]["data"]["reason"] == "5 requests per 60s"

    def test_error(self, audit_path):
        log_error("10.0.0.1", "replay_store_unavailable", "locked", tx_hash=TX_HASH)

        event = read_lines(audit_path)[0]
        assert event["data"] == {
            "error_type": "replay_store_unavailable",
            "error_message": "locked",
            "context": {},
        }


class TestReadAuditLog:
    """Test reading the audit log back."""

    def test_missing_log(self, audit_path):
        assert read_audit_log() == []

    def test_newest_first(self, audit_path):
        for n in range(3):
            log_audit_event(AuditEventType.ERROR, {"n": n})

        assert [e["data"]["n"] for e in read_audit_log()] == [2, 1, 0]

    def test_max_entries(self, audit_path):
        for n in range(5):
            log_audit_event(AuditEventType.ERROR, {"n": n})

        assert len(read_audit_log(max_entries=2)) == 2

    def test_filter_by_type_and_hash(self, audit_path):
        log_payment_received("10.0.0.1", TX_HASH, "/a")
        log_payment_received("10.0.0.1", "0x" + "b" * 64, "/a")
        log_rate_limited("10.0.0.1", "limit")

        assert len(read_audit_log(event_type=AuditEventType.PAYMENT_RECEIVED)) == 2
        assert len(read_audit_log(tx_hash=TX_HASH)) == 1

    def test_skips_corrupt_lines(self, audit_path):
        log_audit_event(AuditEventType.ERROR, {})
        with open(audit_path, "a") as f:
            f.write("not json\n\n")

        assert len(read_audit_log()) == 1


class TestAuditStats:
    """Test audit statistics."""

    def test_missing_log(self, audit_path):
        stats = get_audit_stats()
        assert stats["total_events"] == 0
        assert stats["log_exists"] is False

    def test_counts_by_type(self, audit_path):
        log_rate_limited("10.0.0.1", "limit")
        log_rate_limited("10.0.0.2", "limit")
        log_error("10.0.0.1", "x", "y")

        stats = get_audit_stats()

        assert stats["total_events"] == 3
        assert stats["events_by_type"] == {"rate_limited": 2, "error": 1}
        assert stats["first_event"] is not None
        assert stats["last_event"] is not None
