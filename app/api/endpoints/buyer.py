# app/api/endpoints/buyer.py
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import logging

from app.api.deps import get_secret_reveal, get_store
from app.api.errors import error_response, unauthorized_response
from app.api.models.listing import ETH_ADDRESS_PATTERN
from app.api.models.purchase import PurchaseRecord, PurchasesResponse, RevealRequest
from app.core.errors import AuthorizationError, ListingNotFoundError, TransactionNotFoundError
from app.services.listings import ListingStore
from app.services.reveal import SecretReveal

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/reveal")
async def reveal_purchase(
    request: RevealRequest,
    reveal: SecretReveal = Depends(get_secret_reveal),
):
    """
    Re-reveal the secret of a past purchase to its buyer.

    The buyer signs a base64-encoded message with the wallet that paid. If
    the message carries ``Timestamp: <ms>`` it must be fresh, and if it
    carries ``Address: 0x...`` it must name the buyer.
    """
    if request.transactionId is None or not request.signature or not request.message:
        return error_response(400, "Missing required fields")

    try:
        secret = await reveal.reveal_for_buyer(request.transactionId, request.signature, request.message)
        return JSONResponse(content={"success": True, **secret.model_dump()})
    except TransactionNotFoundError as e:
        return error_response(404, e.message)
    except AuthorizationError:
        return unauthorized_response()
    except ListingNotFoundError:
        return error_response(404, "Listing not found")
    except Exception as e:
        logger.error(f"Failed to reveal transaction {request.transactionId}: {e}")
        return error_response(500, "Failed to reveal purchase")


@router.get("/{address}", response_model=PurchasesResponse)
async def get_buyer_purchases(address: str, store: ListingStore = Depends(get_store)):
    """Purchase history of a buyer address. Secrets are not included."""
    if not ETH_ADDRESS_PATTERN.match(address):
        return error_response(400, "Invalid Ethereum address format")
    try:
        transactions = await store.purchases_for_buyer(address)
        return PurchasesResponse(
            purchases=[
                PurchaseRecord(
                    id=transaction.id,
                    listingSlug=transaction.listing_slug,
                    sellerAddress=transaction.seller_address,
                    priceUsdc=float(transaction.price_usdc),
                    appId=transaction.app_id,
                    createdAt=transaction.created_at,
                )
                for transaction in transactions
            ]
        )
    except Exception as e:
        logger.error(f"Failed to fetch purchases for {address}: {e}")
        return error_response(500, "Failed to fetch purchases")
