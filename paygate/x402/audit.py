# paygate/x402/audit.py
"""
Audit logging for x402 payments.

This module logs every payment decision for:
- Dispute resolution ("I paid and got nothing")
- Reconciliation against on-chain transfers
- Spotting replay attempts and abuse

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- 402 returned (amount, asset, network, recipient)
- Payment proof received (transaction hash)
- Payment verified / rejected (reason code, detail)
- Replay detected (original timestamp)
- Cached response served (idempotent retry)
- Resource served and recorded
- Rate limit hit
- Error (type, context)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from paygate.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    REPLAY_DETECTED = "replay_detected"
    CACHED_RESPONSE_SERVED = "cached_response_served"
    RESOURCE_SERVED = "resource_served"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    tx_hash: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        tx_hash: Payment transaction hash (if presented)
        wallet_address: Payer address (once known)
        request_id: Request identifier shared by events of one request

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "tx_hash": tx_hash,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    tx_hash: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Audit failures are logged and never interrupt request handling.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        tx_hash=tx_hash,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_payment_required_sent(
    client_ip: str,
    path: str,
    amount: str,
    network: str,
    pay_to: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "path": path,
            "amount": amount,
            "network": network,
            "pay_to": pay_to,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_received(
    client_ip: str,
    tx_hash: str,
    path: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log that a request arrived with a payment proof."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECEIVED,
        data={"path": path},
        client_ip=client_ip,
        tx_hash=tx_hash,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    tx_hash: str,
    payer: str,
    amount: int,
    confirmations: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a freshly verified payment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "amount": str(amount),
            "confirmations": confirmations,
        },
        client_ip=client_ip,
        tx_hash=tx_hash,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_rejected(
    client_ip: str,
    tx_hash: str,
    reason_code: str,
    detail: str,
    recorded: bool,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a rejected payment and whether the rejection was recorded."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={
            "reason_code": reason_code,
            "detail": detail,
            "recorded": recorded,
        },
        client_ip=client_ip,
        tx_hash=tx_hash,
        request_id=request_id
    )


def log_replay_detected(
    client_ip: str,
    tx_hash: str,
    original_use: Optional[str],
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log reuse of a transaction hash that was already rejected."""
    return log_audit_event(
        event_type=AuditEventType.REPLAY_DETECTED,
        data={"original_use": original_use},
        client_ip=client_ip,
        tx_hash=tx_hash,
        request_id=request_id
    )


def log_cached_response_served(
    client_ip: str,
    tx_hash: str,
    payer: Optional[str],
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an idempotent retry answered from the replay store."""
    return log_audit_event(
        event_type=AuditEventType.CACHED_RESPONSE_SERVED,
        data={},
        client_ip=client_ip,
        tx_hash=tx_hash,
        wallet_address=payer,
        request_id=request_id
    )


def log_resource_served(
    client_ip: str,
    tx_hash: str,
    payer: str,
    path: str,
    latency_ms: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a priced resource served against a newly recorded payment."""
    return log_audit_event(
        event_type=AuditEventType.RESOURCE_SERVED,
        data={
            "path": path,
            "latency_ms": latency_ms,
        },
        client_ip=client_ip,
        tx_hash=tx_hash,
        wallet_address=payer,
        request_id=request_id
    )


def log_rate_limited(
    client_ip: str,
    reason: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a request refused by the rate limiter."""
    return log_audit_event(
        event_type=AuditEventType.RATE_LIMITED,
        data={"reason": reason},
        client_ip=client_ip,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    tx_hash: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        tx_hash=tx_hash,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    tx_hash: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        tx_hash: Filter by transaction hash (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if tx_hash and event.get("tx_hash") != tx_hash:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Count audit events by type.

    Returns:
        Dict with total events, counts per type and the first/last timestamp
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                stats["total_events"] += 1
                name = event.get("event_type", "unknown")
                stats["events_by_type"][name] = stats["events_by_type"].get(name, 0) + 1
                if stats["first_event"] is None:
                    stats["first_event"] = event.get("timestamp")
                stats["last_event"] = event.get("timestamp")
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        stats["error"] = str(e)

    return stats
