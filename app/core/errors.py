# app/core/errors.py
"""
Error taxonomy for the marketplace core.

- AuthorizationError: signature, address binding or freshness failures (401)
- AvailabilityError: listing missing or sold out, raised before payment
- PaymentError: facilitator response that must be forwarded verbatim
- PaymentTimeoutError: facilitator outcome unknown, retryable
- PurchaseUndeliveredError: payment taken but the secret cannot be resolved
- ReconciliationError: bookkeeping failure after payment was taken
"""
from typing import Any, Dict, Optional


class MarketError(Exception):
    """Base class for marketplace errors."""


class ValidationFailure(MarketError):
    """Request data failed a business rule check."""


class AuthorizationError(MarketError):
    """
    A signed request could not be authorized.

    ``stage`` and ``reason`` are for server logs only. Clients always receive
    the same generic message.
    """

    def __init__(self, reason: str, stage: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.stage = stage


class AvailabilityError(MarketError):
    status_code = 410
    message = "Listing not available"


class ListingNotFoundError(AvailabilityError):
    status_code = 404
    message = "Listing not found"


class ListingUnavailableError(AvailabilityError):
    status_code = 410
    message = "Listing not available"


class PaymentError(MarketError):
    """Facilitator rejected or requested payment. The body is the x402 protocol response."""

    def __init__(self, status_code: int, body: Dict[str, Any]):
        super().__init__(body.get("error", "Payment required"))
        self.status_code = status_code
        self.body = body


class PaymentTimeoutError(MarketError):
    """Settlement outcome is unknown; the payment may have gone through on-chain."""


class PurchaseUndeliveredError(MarketError):
    """Payment settled but the secret could not be resolved for the buyer."""

    def __init__(self, slug: str, transaction_id: Optional[int] = None):
        super().__init__(f"Purchase of {slug} settled but could not be delivered")
        self.slug = slug
        self.transaction_id = transaction_id


class ReconciliationError(MarketError):
    """A post-payment step failed and needs manual reconciliation."""

    def __init__(self, step: str, slug: str, detail: str):
        super().__init__(f"{step} failed for listing {slug}: {detail}")
        self.step = step
        self.slug = slug
        self.detail = detail


class TransactionNotFoundError(MarketError):
    def __init__(self, message: str = "Transaction not found"):
        super().__init__(message)
        self.message = message
