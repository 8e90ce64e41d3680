# app/signing/typed_data.py
"""
EIP-712 domain and typed schemas for listing operations.

The chain id is bound into the domain so a signature made for one network
cannot be replayed on another. Field order inside each schema is part of the
type hash and must match what wallets sign.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from eth_account.messages import SignableMessage, encode_typed_data

DOMAIN_NAME = "Invite Markets"
DOMAIN_VERSION = "1"

CREATE_LISTING = "CreateListing"
UPDATE_LISTING = "UpdateListing"
DELETE_LISTING = "DeleteListing"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
]

EIP712_TYPES: Dict[str, List[Dict[str, str]]] = {
    CREATE_LISTING: [
        {"name": "inviteUrl", "type": "string"},
        {"name": "priceUsdc", "type": "string"},
        {"name": "sellerAddress", "type": "address"},
        {"name": "appId", "type": "string"},
        {"name": "appName", "type": "string"},
        {"name": "nonce", "type": "uint256"},
    ],
    UPDATE_LISTING: [
        {"name": "slug", "type": "string"},
        {"name": "inviteUrl", "type": "string"},
        {"name": "priceUsdc", "type": "string"},
        {"name": "sellerAddress", "type": "address"},
        {"name": "appName", "type": "string"},
        {"name": "nonce", "type": "uint256"},
    ],
    DELETE_LISTING: [
        {"name": "slug", "type": "string"},
        {"name": "sellerAddress", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}


def get_eip712_domain(chain_id: int) -> Dict[str, Any]:
    return {"name": DOMAIN_NAME, "version": DOMAIN_VERSION, "chainId": chain_id}


def format_price(price: Union[Decimal, int, float, str, None]) -> str:
    """
    Render a price the way the client stringifies it before signing.

    Trailing zeros are dropped and exponent notation is never used, so
    ``Decimal("1.50")`` becomes ``"1.5"`` and ``Decimal("100")`` stays ``"100"``.
    ``None`` renders as an empty string.
    """
    if price is None:
        return ""
    value = Decimal(str(price)).normalize()
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def create_listing_message(
    seller_address: str,
    price_usdc: Decimal,
    nonce: int,
    invite_url: Optional[str] = None,
    app_id: Optional[str] = None,
    app_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "inviteUrl": invite_url or "",
        "priceUsdc": format_price(price_usdc),
        "sellerAddress": seller_address,
        "appId": app_id or "",
        "appName": app_name or "",
        "nonce": int(nonce),
    }


def update_listing_message(
    slug: str,
    seller_address: str,
    nonce: int,
    price_usdc: Optional[Decimal] = None,
    invite_url: Optional[str] = None,
    app_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "slug": slug,
        "inviteUrl": invite_url or "",
        "priceUsdc": format_price(price_usdc),
        "sellerAddress": seller_address,
        "appName": app_name or "",
        "nonce": int(nonce),
    }


def delete_listing_message(slug: str, seller_address: str, nonce: int) -> Dict[str, Any]:
    return {"slug": slug, "sellerAddress": seller_address, "nonce": int(nonce)}


def build_typed_data(primary_type: str, message: Dict[str, Any], chain_id: int) -> Dict[str, Any]:
    """Assemble the full EIP-712 payload for one listing action."""
    if primary_type not in EIP712_TYPES:
        raise ValueError(f"Unknown typed action: {primary_type}")
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            primary_type: EIP712_TYPES[primary_type],
        },
        "primaryType": primary_type,
        "domain": get_eip712_domain(chain_id),
        "message": message,
    }


def encode_listing_action(primary_type: str, message: Dict[str, Any], chain_id: int) -> SignableMessage:
    return encode_typed_data(full_message=build_typed_data(primary_type, message, chain_id))
