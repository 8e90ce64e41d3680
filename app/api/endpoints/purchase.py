# app/api/endpoints/purchase.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
import logging

from app.api.deps import get_purchase_settlement
from app.core.errors import (
    AvailabilityError,
    PaymentError,
    PaymentTimeoutError,
    PurchaseUndeliveredError,
)
from app.services.purchase import PurchaseSettlement
from app.x402.facilitator import X_PAYMENT_HEADER, X_PAYMENT_RESPONSE_HEADER, encode_payment_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{slug}")
async def purchase_listing(
    slug: str,
    request: Request,
    settlement: PurchaseSettlement = Depends(get_purchase_settlement),
):
    """
    Buy one use of a listing with an x402 payment.

    Without a valid ``X-PAYMENT`` header this returns the facilitator's 402
    body listing the accepted payment requirements. With one, the payment is
    verified and settled and the listing's secret is returned.

    Returns:
        200 with ``{"listingType": ..., <secret fields>, "transactionId": ...}``
        and an ``X-PAYMENT-RESPONSE`` header carrying the settlement receipt
    """
    payment_header = request.headers.get(X_PAYMENT_HEADER)

    try:
        receipt = await settlement.settle(
            slug,
            payment_header,
            resource_url=str(request.url),
            method=request.method,
        )
    except AvailabilityError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    except PaymentError as e:
        return JSONResponse(status_code=e.status_code, content=e.body)
    except PaymentTimeoutError as e:
        logger.error(f"Settlement timed out for listing {slug}: {e}")
        return JSONResponse(
            status_code=504,
            content={
                "error": "Payment settlement timed out. The payment may still complete, please retry shortly.",
                "retryable": True,
            },
        )
    except PurchaseUndeliveredError as e:
        logger.error(f"Undelivered purchase: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Payment succeeded but the purchase could not be delivered. Please contact support.",
                "paymentSettled": True,
            },
        )
    except Exception as e:
        logger.error(f"Unexpected error purchasing listing {slug}: {e}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    headers = {}
    if receipt.settle_response is not None:
        headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(receipt.settle_response)

    content = receipt.secret.model_dump()
    if receipt.transaction_id is not None:
        # lets the buyer reveal the purchase again later
        content["transactionId"] = receipt.transaction_id

    logger.info(f"Delivered listing {slug} to {receipt.payer} (transaction {receipt.transaction_id})")
    return JSONResponse(content=content, headers=headers)
