# app/db/models.py
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


LISTING_TYPE_INVITE_LINK = "invite_link"
LISTING_TYPE_ACCESS_CODE = "access_code"

STATUS_ACTIVE = "active"
STATUS_SOLD = "sold"
STATUS_CANCELLED = "cancelled"

UNLIMITED_USES = -1

RESERVATION_PENDING = "pending"
RESERVATION_AMBIGUOUS = "ambiguous"


class Listing(TimestampMixin, Base):
    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    # "invite_link" | "access_code"
    listing_type: Mapped[str] = mapped_column(String(20), nullable=False, default=LISTING_TYPE_INVITE_LINK)
    price_usdc: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    seller_address: Mapped[str] = mapped_column(String(42), index=True, nullable=False)

    # featured apps carry app_id, custom apps carry app_name
    app_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    app_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    # "active" | "sold" | "cancelled"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_ACTIVE)

    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    purchase_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # units held by rows in "reservations"; kept in step with them
    reserved_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # secret payload: invite_url, or app_url (public) + access_code
    invite_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    app_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Transaction(Base):
    """Append-only record of a settled purchase."""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_slug: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    seller_address: Mapped[str] = mapped_column(String(42), index=True, nullable=False)
    buyer_address: Mapped[str] = mapped_column(String(42), index=True, nullable=False)
    price_usdc: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    app_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    chain_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ConsumedNonce(Base):
    """EIP-712 nonces that have already authorized a listing mutation."""
    __tablename__ = "consumed_nonces"
    __table_args__ = (
        UniqueConstraint("signer_address", "action", "nonce", name="uq_consumed_nonce"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signer_address: Mapped[str] = mapped_column(String(42), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    nonce: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Reservation(Base):
    """
    One unit of inventory held for one buyer's payment.

    ``pending`` while the facilitator settles. ``ambiguous`` after a
    settlement whose outcome is unknown, until the same payer comes back or
    ``expires_at`` passes.
    """
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_slug: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    # lowercased payer address, or a digest of the payment header when the payer is unknown
    holder: Mapped[str] = mapped_column(String(80), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=RESERVATION_PENDING)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
