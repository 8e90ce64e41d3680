# app/x402/audit.py
"""
Audit logging for marketplace purchases.

Every purchase attempt leaves a trail for:
- Dispute resolution
- Manual reconciliation of payments whose bookkeeping failed
- Debugging facilitator failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- Purchase requested (slug, price)
- 402 returned (status, error)
- Payment settled (payer, transaction hash, network)
- Payment ambiguous (settlement timed out or errored)
- Secret released (transaction id)
- Reconciliation required (failed step, detail)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PURCHASE_REQUESTED = "purchase_requested"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_AMBIGUOUS = "payment_ambiguous"
    SECRET_RELEASED = "secret_released"
    RECONCILIATION_REQUIRED = "reconciliation_required"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    listing_slug: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        listing_slug: Listing the event concerns (if any)
        wallet_address: Buyer wallet address (if known)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "listing_slug": listing_slug,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    listing_slug: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Write failures are logged and swallowed; auditing never blocks a purchase.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        listing_slug=listing_slug,
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

    except Exception as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_purchase_requested(slug: str, price_usdc: Any, has_payment: bool, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PURCHASE_REQUESTED,
        data={"price_usdc": price_usdc, "has_payment": has_payment},
        listing_slug=slug,
        request_id=request_id
    )


def log_payment_required_sent(slug: str, status: int, error: Optional[str], request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={"status": status, "error": error},
        listing_slug=slug,
        request_id=request_id
    )


def log_payment_settled(
    slug: str,
    payer: Optional[str],
    transaction_hash: Optional[str],
    network: Optional[str],
    price_usdc: Any,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "transaction_hash": transaction_hash,
            "network": network,
            "price_usdc": price_usdc,
        },
        listing_slug=slug,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_ambiguous(slug: str, reason: str, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_AMBIGUOUS,
        data={"reason": reason},
        listing_slug=slug,
        request_id=request_id
    )


def log_secret_released(slug: str, payer: Optional[str], transaction_id: Optional[int], request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.SECRET_RELEASED,
        data={"transaction_id": transaction_id},
        listing_slug=slug,
        wallet_address=payer,
        request_id=request_id
    )


def log_reconciliation_required(
    slug: str,
    step: str,
    detail: str,
    payer: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.RECONCILIATION_REQUIRED,
        data={"step": step, "detail": detail, "context": context or {}},
        listing_slug=slug,
        wallet_address=payer,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    listing_slug: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        listing_slug: Filter by listing (optional)

    Returns:
        List of audit events (most recent first)
    """
    try:
        log_path = get_audit_log_path()
        if not log_path.exists():
            return []

        events = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                    if event_type and event.get("event_type") != event_type.value:
                        continue
                    if listing_slug and event.get("listing_slug") != listing_slug:
                        continue
                    events.append(event)
                except json.JSONDecodeError:
                    continue

        return list(reversed(events))[:max_entries]

    except Exception as e:
        logger.error(f"Failed to read audit log: {e}")
        return []
