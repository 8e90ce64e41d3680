# app/api/models/listing.py
import re
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Literal, Optional, Union

ETH_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

ListingType = Literal["invite_link", "access_code"]
ListingStatus = Literal["active", "sold", "cancelled"]


def _check_address(value: str) -> str:
    if not ETH_ADDRESS_PATTERN.match(value or ""):
        raise ValueError("Invalid Ethereum address format")
    return value


def _check_max_uses(value: int) -> int:
    if value < -1 or value == 0:
        raise ValueError("maxUses must be -1 (unlimited) or a positive number")
    return value


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# --- Secret payload: one variant per listing type ---

class InviteLinkSecret(BaseModel):
    """Secret of an invite_link listing."""
    listingType: Literal["invite_link"] = "invite_link"
    inviteUrl: str


class AccessCodeSecret(BaseModel):
    """Secret of an access_code listing. appUrl is public, accessCode is not."""
    listingType: Literal["access_code"] = "access_code"
    appUrl: str
    accessCode: str


class PublicListing(BaseModel):
    """
    Listing as shown to anyone. Never carries inviteUrl or accessCode.
    """
    slug: str
    listingType: ListingType
    priceUsdc: float
    sellerAddress: str
    status: ListingStatus
    appId: Optional[str] = None
    appName: Optional[str] = None
    appUrl: Optional[str] = Field(None, description="Public app URL, access_code listings only.")
    maxUses: int
    purchaseCount: int
    description: Optional[str] = None
    chainId: int
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ListingResponse(BaseModel):
    success: bool = True
    listing: PublicListing


class ListingsResponse(BaseModel):
    success: bool = True
    listings: list[PublicListing]


class LowestPriceResponse(BaseModel):
    success: bool = True
    lowestPrice: Optional[float] = None


# --- Signed requests ---

class CreateListingRequest(BaseModel):
    """Request body for creating a listing, signed with EIP-712 CreateListing."""
    listingType: ListingType = "invite_link"
    inviteUrl: Optional[str] = None
    appUrl: Optional[str] = None
    accessCode: Optional[str] = None
    priceUsdc: Decimal = Field(..., gt=0, description="Price in USDC, must be positive.")
    sellerAddress: str
    appId: Optional[str] = None
    appName: Optional[str] = None
    maxUses: int = Field(1, description="-1 for unlimited, otherwise a positive number of sales.")
    description: Optional[str] = None
    nonce: int = Field(..., gt=0, description="Client timestamp in milliseconds, signed for uniqueness.")
    chainId: int
    signature: str = Field(..., min_length=4)

    @field_validator("sellerAddress")
    @classmethod
    def valid_address(cls, value: str) -> str:
        return _check_address(value)

    @field_validator("maxUses")
    @classmethod
    def valid_max_uses(cls, value: int) -> int:
        return _check_max_uses(value)

    @model_validator(mode="after")
    def check_type_fields(self):
        if self.listingType == "invite_link" and not self.inviteUrl:
            raise ValueError("Invite URL is required for invite link listings")
        if self.listingType == "access_code":
            if not self.appUrl:
                raise ValueError("App URL is required for access code listings")
            if not self.accessCode:
                raise ValueError("Access code is required for access code listings")
        if not _strip_or_none(self.appId) and not _strip_or_none(self.appName):
            raise ValueError("Either appId or appName must be provided")
        return self

    def secret(self) -> Union[InviteLinkSecret, AccessCodeSecret]:
        if self.listingType == "invite_link":
            return InviteLinkSecret(inviteUrl=self.inviteUrl)
        return AccessCodeSecret(appUrl=self.appUrl, accessCode=self.accessCode)


class UpdateListingRequest(BaseModel):
    """Request body for updating a listing, signed with EIP-712 UpdateListing."""
    slug: str
    sellerAddress: str
    priceUsdc: Optional[Decimal] = Field(None, gt=0)
    inviteUrl: Optional[str] = None
    appId: Optional[str] = None
    appName: Optional[str] = None
    nonce: int = Field(..., gt=0)
    chainId: int
    signature: str = Field(..., min_length=4)

    @field_validator("sellerAddress")
    @classmethod
    def valid_address(cls, value: str) -> str:
        return _check_address(value)

    @field_validator("inviteUrl")
    @classmethod
    def invite_url_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("Invalid invite URL")
        return value


class DeleteListingRequest(BaseModel):
    """Request body for cancelling a listing, signed with EIP-712 DeleteListing."""
    slug: str
    sellerAddress: str
    nonce: int = Field(..., gt=0)
    chainId: int
    signature: str = Field(..., min_length=4)

    @field_validator("sellerAddress")
    @classmethod
    def valid_address(cls, value: str) -> str:
        return _check_address(value)


class DeleteListingResponse(BaseModel):
    success: bool = True
    message: str = "Listing deleted successfully"


class SignedMessageRequest(BaseModel):
    """Freeform signed message: base64 message plus the wallet signature over it."""
    signature: Optional[str] = None
    message: Optional[str] = Field(None, description="Base64-encoded message that was signed.")
