# app/api/models/purchase.py
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, Union


class RevealRequest(BaseModel):
    """Buyer reveal request. All fields are checked by the endpoint so a missing one is a 400."""
    transactionId: Optional[Union[int, str]] = None
    signature: Optional[str] = None
    message: Optional[str] = Field(None, description="Base64-encoded message that was signed.")


class PurchaseRecord(BaseModel):
    """A buyer's purchase as listed in their history. Secrets are fetched via reveal."""
    id: int
    listingSlug: str
    sellerAddress: str
    priceUsdc: float
    appId: Optional[str] = None
    createdAt: Optional[datetime] = None


class PurchasesResponse(BaseModel):
    success: bool = True
    purchases: list[PurchaseRecord]


class SellerStats(BaseModel):
    salesCount: int
    totalRevenue: float


class SellerStatsResponse(BaseModel):
    success: bool = True
    stats: SellerStats


class SaleRecord(BaseModel):
    id: int
    listingSlug: str
    sellerAddress: str
    buyerAddress: str
    priceUsdc: float
    appId: Optional[str] = None
    appName: Optional[str] = None
    chainId: int
    txHash: Optional[str] = None
    createdAt: Optional[datetime] = None


class Pagination(BaseModel):
    total: int
    limit: int
    skip: int
    hasMore: bool


class SalesResponse(BaseModel):
    success: bool = True
    transactions: list[SaleRecord]
    pagination: Pagination


class AppSalePoint(BaseModel):
    """One sold listing of an app, used for price history charts."""
    timestamp: Optional[datetime] = None
    priceUsdc: float
    slug: Optional[str] = None
