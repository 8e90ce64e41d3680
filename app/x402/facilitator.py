# app/x402/facilitator.py
"""
x402 payment settlement through a facilitator.

This module:
1. Builds the x402 PaymentRequirements for a listing purchase
2. Decodes the X-PAYMENT header into a PaymentPayload
3. Verifies the payment via the facilitator
4. Settles a verified payment via the facilitator
5. Produces the 402 Payment Required body when payment is missing or invalid

The 402 bodies are the protocol: x402 clients read ``accepts`` from them and
retry with a valid payment header, so they are returned to the caller as-is.

Uses the official x402 Python SDK for payment handling.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from x402.types import PaymentRequirements, PaymentPayload, SettleResponse
from x402.facilitator import FacilitatorClient
from x402.encoding import safe_base64_decode, safe_base64_encode

from app.core.chain import ChainConfig
from app.core.errors import PaymentTimeoutError
from app.x402.pricing import atomic_to_usdc, price_label, usdc_to_atomic

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


@dataclass
class PaymentVerification:
    """
    Outcome of a verify_payment call.

    ``status == 200`` means the facilitator accepted the payment and
    ``payload``/``requirements`` are ready for settle_payment. Any other status
    carries an x402 body that must be forwarded verbatim.
    """
    status: int
    body: Dict[str, Any] = field(default_factory=dict)
    payer: Optional[str] = None
    payload: Optional[PaymentPayload] = None
    requirements: Optional[PaymentRequirements] = None

    @property
    def verified(self) -> bool:
        return self.status == 200


@dataclass
class SettlementResult:
    """
    Outcome of a settle_payment call.

    ``status == 200`` means the payment was settled and ``payer`` is the
    authoritative buyer address. Any other status carries an x402 body that
    must be forwarded verbatim.
    """
    status: int
    body: Dict[str, Any] = field(default_factory=dict)
    payer: Optional[str] = None
    transaction: Optional[str] = None
    network: Optional[str] = None
    settle_response: Optional[SettleResponse] = None

    @property
    def settled(self) -> bool:
        return self.status == 200


def create_payment_requirements(
    chain: ChainConfig,
    resource_url: str,
    pay_to: str,
    price_usdc: Decimal,
    description: str = "Marketplace purchase",
    max_timeout_seconds: int = 300,
) -> PaymentRequirements:
    """
    Create PaymentRequirements for a listing purchase.

    Args:
        chain: Network the payment settles on
        resource_url: URL of the resource being purchased
        pay_to: Address that receives the payment (the seller)
        price_usdc: Price in USDC (converted to smallest units)
        description: Description of the resource
        max_timeout_seconds: How long the signed payment stays valid

    Returns:
        PaymentRequirements object for the x402 response
    """
    return PaymentRequirements(
        scheme="exact",
        network=chain.network,
        max_amount_required=str(usdc_to_atomic(price_usdc)),
        resource=resource_url,
        description=description,
        mime_type="application/json",
        pay_to=pay_to,
        max_timeout_seconds=max_timeout_seconds,
        asset=chain.usdc_address,
        extra={"name": chain.usdc_name, "version": "2"},
    )


def create_402_body(
    payment_requirements: PaymentRequirements,
    error_message: str = "Payment required"
) -> Dict[str, Any]:
    """
    Create the body of an HTTP 402 Payment Required response.

    Args:
        payment_requirements: The payment requirements to include
        error_message: Error message for the response

    Returns:
        Dict with the x402 version, error and accepted payment requirements
    """
    return {
        "x402Version": X402_VERSION,
        "error": error_message,
        "accepts": [payment_requirements.model_dump(by_alias=True)]
    }


def decode_payment_header(header_value: str) -> Optional[PaymentPayload]:
    """
    Decode the X-PAYMENT header into a PaymentPayload.

    Args:
        header_value: Base64-encoded payment payload

    Returns:
        PaymentPayload if successfully decoded, None otherwise
    """
    try:
        # Decode base64 - safe_base64_decode returns str, not bytes
        decoded_str = safe_base64_decode(header_value)
        if decoded_str is None:
            logger.warning("Failed to decode X-PAYMENT header: invalid base64")
            return None

        payload_dict = json.loads(decoded_str)
        return PaymentPayload.model_validate(payload_dict)

    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse X-PAYMENT header JSON: {e}")
        return None
    except Exception as e:
        logger.warning(f"Failed to decode X-PAYMENT header: {e}")
        return None


def encode_payment_response(settle_response: SettleResponse) -> str:
    """
    Encode a settlement response for the X-PAYMENT-RESPONSE header.

    Args:
        settle_response: The settlement response from the facilitator

    Returns:
        Base64-encoded JSON string
    """
    response_dict = settle_response.model_dump(by_alias=True)
    response_json = json.dumps(response_dict)
    return safe_base64_encode(response_json.encode("utf-8"))


def build_facilitator_client(url: str, api_key: Optional[str] = None) -> FacilitatorClient:
    """Create a FacilitatorClient, attaching bearer credentials when configured."""
    config: Dict[str, Any] = {"url": url.rstrip("/")}

    if api_key:
        async def create_headers() -> Dict[str, Dict[str, str]]:
            auth = {"Authorization": f"Bearer {api_key}"}
            return {"verify": auth, "settle": auth}

        config["create_headers"] = create_headers

    return FacilitatorClient(config)


class PaymentSettler:
    """
    Delegates x402 payment verification and settlement to a facilitator.

    The two steps are separate calls so the caller can hold inventory only
    for payments the facilitator has already accepted. Verification failures
    are definite: no money moved. A settlement call that times out or errors
    is ambiguous, since the transfer may have been submitted on-chain, and is
    raised as PaymentTimeoutError.
    """

    def __init__(
        self,
        chain: ChainConfig,
        facilitator_client: FacilitatorClient,
        timeout_seconds: float = 30.0,
        max_timeout_seconds: int = 300,
    ):
        self.chain = chain
        self.facilitator_client = facilitator_client
        self.timeout_seconds = timeout_seconds
        self.max_timeout_seconds = max_timeout_seconds

    async def verify_payment(
        self,
        resource_url: str,
        method: str,
        payment_header: Optional[str],
        pay_to: str,
        price_usdc: Decimal,
        description: Optional[str] = None,
    ) -> PaymentVerification:
        """
        Check one payment for ``price_usdc`` to ``pay_to`` without settling it.

        Args:
            resource_url: URL of the purchased resource
            method: HTTP method of the purchase request
            payment_header: Raw X-PAYMENT header value, or None
            pay_to: Recipient address
            price_usdc: Exact price in USDC
            description: Resource description for the payment prompt

        Returns:
            PaymentVerification; status 200 when the payment can be settled,
            otherwise a passthrough status and x402 body
        """
        payment_requirements = create_payment_requirements(
            chain=self.chain,
            resource_url=resource_url,
            pay_to=pay_to,
            price_usdc=price_usdc,
            description=description or price_label(price_usdc),
            max_timeout_seconds=self.max_timeout_seconds,
        )

        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header on {method} {resource_url}, returning 402 for {price_label(price_usdc)}")
            return PaymentVerification(
                status=402,
                body=create_402_body(payment_requirements, "X-PAYMENT header is required"),
            )

        payment_payload = decode_payment_header(payment_header)
        if payment_payload is None:
            return PaymentVerification(
                status=402,
                body=create_402_body(payment_requirements, "Invalid X-PAYMENT header format"),
            )

        try:
            verify_response = await asyncio.wait_for(
                self.facilitator_client.verify(payment_payload, payment_requirements),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            logger.error(f"x402: Facilitator verification failed: {e!r}")
            return PaymentVerification(status=502, body={"error": "Payment verification failed"})

        if not verify_response.is_valid:
            reason = verify_response.invalid_reason or "Unknown reason"
            logger.warning(f"x402: Payment verification failed: {reason}")
            return PaymentVerification(
                status=402,
                body=create_402_body(payment_requirements, f"Payment verification failed: {reason}"),
                payer=verify_response.payer,
            )

        logger.info(f"x402: Payment verified for payer {verify_response.payer}")
        return PaymentVerification(
            status=200,
            payer=verify_response.payer,
            payload=payment_payload,
            requirements=payment_requirements,
        )

    async def settle_payment(self, verification: PaymentVerification) -> SettlementResult:
        """
        Settle a payment that verify_payment accepted.

        Returns:
            SettlementResult; status 200 when settled, otherwise a 402 body

        Raises:
            PaymentTimeoutError: settlement outcome unknown
        """
        requirements = verification.requirements
        try:
            settle_response = await asyncio.wait_for(
                self.facilitator_client.settle(verification.payload, requirements),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"x402: Settlement timed out after {self.timeout_seconds}s for {requirements.resource}")
            raise PaymentTimeoutError("Payment settlement timed out")
        except Exception as e:
            logger.error(f"x402: Payment settlement failed: {e!r}")
            raise PaymentTimeoutError(f"Payment settlement failed: {e}")

        if not settle_response.success:
            reason = settle_response.error_reason or "Unknown reason"
            logger.warning(f"x402: Settlement rejected: {reason}")
            return SettlementResult(
                status=402,
                body=create_402_body(requirements, f"Payment settlement failed: {reason}"),
                payer=settle_response.payer,
            )

        payer = settle_response.payer or verification.payer
        amount = atomic_to_usdc(requirements.max_amount_required)
        logger.info(f"x402: Settled {amount} USDC from {payer} to {requirements.pay_to}, tx={settle_response.transaction}")

        return SettlementResult(
            status=200,
            payer=payer,
            transaction=settle_response.transaction,
            network=settle_response.network,
            settle_response=settle_response,
        )
