# app/x402/pricing.py
"""
Price conversion for x402 payment requirements.

Listing prices are stored as decimal USDC amounts. x402 payment requirements
carry the amount in the token's smallest unit as a string.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from app.signing.typed_data import format_price

logger = logging.getLogger(__name__)

# USDC has 6 decimals, so $1.00 = 1,000,000 smallest units
USDC_DECIMALS = 6
USDC_UNIT = Decimal(10) ** USDC_DECIMALS


def usdc_to_atomic(price_usdc: Union[Decimal, int, float, str]) -> int:
    """
    Convert a USDC amount to atomic units.

    Args:
        price_usdc: Amount in USDC

    Returns:
        Integer amount in the smallest USDC unit

    Raises:
        ValueError: If the amount is negative
    """
    amount = Decimal(str(price_usdc))
    if amount < 0:
        raise ValueError(f"Price cannot be negative: {price_usdc}")
    return int((amount * USDC_UNIT).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def atomic_to_usdc(amount: Union[int, str]) -> Decimal:
    """Convert atomic units back to a USDC amount."""
    return Decimal(int(amount)) / USDC_UNIT


def price_label(price_usdc: Union[Decimal, int, float, str]) -> str:
    """Human readable price, e.g. ``"1.5 USDC"``."""
    return f"{format_price(price_usdc)} USDC"
