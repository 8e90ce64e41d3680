# app/api/endpoints/listings.py
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from app.api.deps import get_listing_actions, get_secret_reveal, get_store
from app.api.errors import error_response, unauthorized_response
from app.api.models.listing import (
    CreateListingRequest,
    DeleteListingRequest,
    DeleteListingResponse,
    ListingResponse,
    ListingsResponse,
    LowestPriceResponse,
    SignedMessageRequest,
    UpdateListingRequest,
)
from app.core.errors import AuthorizationError, ListingNotFoundError, ValidationFailure
from app.services.listing_actions import ListingActions
from app.services.listings import ListingStore, to_public
from app.services.reveal import SecretReveal

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=ListingsResponse)
async def list_listings(store: ListingStore = Depends(get_store)):
    """
    List every listing on the configured chain, newest first.

    Secrets (invite URLs, access codes) are never included.
    """
    try:
        listings = await store.list_listings()
        return ListingsResponse(listings=[to_public(listing) for listing in listings])
    except Exception as e:
        logger.error(f"Failed to fetch listings: {e}")
        return error_response(500, "Failed to fetch listings")


@router.post("", status_code=201, response_model=ListingResponse)
async def create_listing(
    request: CreateListingRequest,
    actions: ListingActions = Depends(get_listing_actions),
):
    """
    Create a listing signed by the seller with EIP-712 ``CreateListing``.

    Returns:
        201 with the public listing

    Raises:
        400 on validation or chain mismatch, 401 on a bad or replayed signature
    """
    try:
        listing = await actions.create(request)
        return ListingResponse(listing=to_public(listing))
    except ValidationFailure as e:
        return error_response(400, str(e))
    except AuthorizationError:
        return unauthorized_response()
    except Exception as e:
        logger.error(f"Failed to create listing: {e}")
        return error_response(500, "Failed to create listing")


@router.get("/lowest-price", response_model=LowestPriceResponse)
async def get_lowest_price(
    appId: Optional[str] = Query(None),
    appName: Optional[str] = Query(None),
    store: ListingStore = Depends(get_store),
):
    """Cheapest available listing price for an app, or null when none is listed."""
    if not (appId or appName):
        return error_response(400, "Either appId or appName is required")
    try:
        price = await store.lowest_price(app_id=appId, app_name=appName)
        return LowestPriceResponse(lowestPrice=float(price) if price is not None else None)
    except Exception as e:
        logger.error(f"Failed to fetch lowest price for {appId or appName}: {e}")
        return error_response(500, "Failed to fetch lowest price")


@router.patch("/update", response_model=ListingResponse)
async def update_listing(
    request: UpdateListingRequest,
    actions: ListingActions = Depends(get_listing_actions),
):
    """Update an active listing, signed by its seller with EIP-712 ``UpdateListing``."""
    try:
        listing = await actions.update(request)
        return ListingResponse(listing=to_public(listing))
    except ValidationFailure as e:
        return error_response(400, str(e))
    except AuthorizationError:
        return unauthorized_response()
    except ListingNotFoundError:
        return error_response(404, "Listing not found or already sold")
    except Exception as e:
        logger.error(f"Failed to update listing {request.slug}: {e}")
        return error_response(500, "Failed to update listing")


@router.delete("/delete", response_model=DeleteListingResponse)
async def delete_listing(
    request: DeleteListingRequest,
    actions: ListingActions = Depends(get_listing_actions),
):
    """
    Cancel an active listing, signed by its seller with EIP-712 ``DeleteListing``.

    The listing stays in storage with status ``cancelled`` so past
    transactions keep resolving.
    """
    try:
        await actions.delete(request)
        return DeleteListingResponse()
    except ValidationFailure as e:
        return error_response(400, str(e))
    except AuthorizationError:
        return unauthorized_response()
    except ListingNotFoundError:
        return error_response(404, "Listing not found or already sold")
    except Exception as e:
        logger.error(f"Failed to delete listing {request.slug}: {e}")
        return error_response(500, "Failed to delete listing")


@router.get("/{slug}", response_model=ListingResponse)
async def get_listing(slug: str, store: ListingStore = Depends(get_store)):
    """Public view of one listing on the configured chain."""
    try:
        listing = await store.get_listing(slug, chain_only=True)
    except Exception as e:
        logger.error(f"Failed to fetch listing {slug}: {e}")
        return error_response(500, "Failed to fetch listing")

    if listing is None:
        return error_response(404, "Listing not found")
    return ListingResponse(listing=to_public(listing))


@router.post("/{slug}/secret")
async def get_listing_secret(
    slug: str,
    request: SignedMessageRequest,
    reveal: SecretReveal = Depends(get_secret_reveal),
):
    """
    Reveal a listing's secret to its seller, e.g. to prefill an edit form.

    The seller signs a base64 message containing ``Timestamp: <ms>``.
    """
    if not request.signature or not request.message:
        return error_response(400, "Missing required fields")
    try:
        secret = await reveal.reveal_for_seller(slug, request.signature, request.message)
        return JSONResponse(content={"success": True, **secret.model_dump()})
    except ListingNotFoundError:
        return error_response(404, "Listing not found")
    except AuthorizationError:
        return unauthorized_response()
    except Exception as e:
        logger.error(f"Failed to reveal listing {slug} to seller: {e}")
        return error_response(500, "Failed to fetch listing")
