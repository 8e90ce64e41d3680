# app/api/endpoints/sales.py
from fastapi import APIRouter, Depends, Query
import logging

from app.api.deps import get_store
from app.api.errors import error_response
from app.api.models.listing import ETH_ADDRESS_PATTERN
from app.api.models.purchase import (
    AppSalePoint,
    Pagination,
    SaleRecord,
    SalesResponse,
    SellerStats,
    SellerStatsResponse,
)
from app.services.listings import ListingStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/seller/{address}", response_model=SellerStatsResponse)
async def get_seller_stats(address: str, store: ListingStore = Depends(get_store)):
    """Number of sales and total revenue of a seller address."""
    if not ETH_ADDRESS_PATTERN.match(address):
        return error_response(400, "Invalid Ethereum address format")
    try:
        count, revenue = await store.seller_stats(address)
        return SellerStatsResponse(stats=SellerStats(salesCount=count, totalRevenue=float(revenue)))
    except Exception as e:
        logger.error(f"Failed to fetch seller stats for {address}: {e}")
        return error_response(500, "Failed to fetch seller stats")


@router.get("/sales", response_model=SalesResponse)
async def get_recent_sales(
    limit: int = Query(50, ge=1, le=100, description="Page size"),
    skip: int = Query(0, ge=0, description="Number of transactions to skip"),
    store: ListingStore = Depends(get_store),
):
    """Recent transactions on the configured chain, newest first."""
    try:
        rows, total = await store.recent_sales(limit=limit, skip=skip)
    except Exception as e:
        logger.error(f"Failed to fetch recent sales: {e}")
        return error_response(500, "Failed to fetch sales")

    transactions = [
        SaleRecord(
            id=transaction.id,
            listingSlug=transaction.listing_slug,
            sellerAddress=transaction.seller_address,
            buyerAddress=transaction.buyer_address,
            priceUsdc=float(transaction.price_usdc),
            appId=transaction.app_id,
            appName=app_name,
            chainId=transaction.chain_id,
            txHash=transaction.tx_hash,
            createdAt=transaction.created_at,
        )
        for transaction, app_name in rows
    ]
    return SalesResponse(
        transactions=transactions,
        pagination=Pagination(total=total, limit=limit, skip=skip, hasMore=skip + len(transactions) < total),
    )


@router.get("/sales/{app}", response_model=list[AppSalePoint])
async def get_app_sales(app: str, store: ListingStore = Depends(get_store)):
    """Sold listings of an app (matched by appId or appName), for price history."""
    try:
        listings = await store.sold_listings_for_app(app)
    except Exception as e:
        logger.error(f"Failed to fetch sales for app {app}: {e}")
        return error_response(500, "Failed to fetch sales")

    return [
        AppSalePoint(timestamp=listing.updated_at, priceUsdc=float(listing.price_usdc), slug=listing.slug)
        for listing in listings
    ]
