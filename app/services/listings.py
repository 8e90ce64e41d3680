# app/services/listings.py
"""
Listing and transaction storage.

All cross-request coordination happens here, in the database: inventory is
reserved, committed and released with conditional UPDATE and DELETE
statements whose affected-row count decides the outcome. Nothing reads,
compares and then writes.

Every held unit is a row in "reservations" owned by one payer and carrying
an expiry, so a unit held by a crashed or ambiguous settlement returns to
sale on its own and the same payer can take it back on retry.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.models.listing import AccessCodeSecret, InviteLinkSecret, PublicListing
from app.core.errors import AuthorizationError, ListingNotFoundError, ValidationFailure
from app.db.models import (
    ConsumedNonce,
    LISTING_TYPE_ACCESS_CODE,
    LISTING_TYPE_INVITE_LINK,
    Listing,
    RESERVATION_AMBIGUOUS,
    RESERVATION_PENDING,
    Reservation,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_SOLD,
    Transaction,
    UNLIMITED_USES,
)

logger = logging.getLogger(__name__)

SLUG_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
SLUG_LENGTH = 8
SLUG_ATTEMPTS = 5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_slug() -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(SLUG_LENGTH))


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def secret_of(listing: Listing) -> Union[InviteLinkSecret, AccessCodeSecret]:
    """Secret payload of a listing, by listing type."""
    if listing.listing_type == LISTING_TYPE_INVITE_LINK:
        return InviteLinkSecret(inviteUrl=listing.invite_url)
    if listing.listing_type == LISTING_TYPE_ACCESS_CODE:
        return AccessCodeSecret(appUrl=listing.app_url, accessCode=listing.access_code)
    raise ValueError(f"Unknown listing type: {listing.listing_type}")


def to_public(listing: Listing) -> PublicListing:
    """Public view of a listing. Secret fields are never copied."""
    return PublicListing(
        slug=listing.slug,
        listingType=listing.listing_type,
        priceUsdc=float(listing.price_usdc),
        sellerAddress=listing.seller_address,
        status=listing.status,
        appId=listing.app_id,
        appName=listing.app_name,
        appUrl=listing.app_url if listing.listing_type == LISTING_TYPE_ACCESS_CODE else None,
        maxUses=listing.max_uses,
        purchaseCount=listing.purchase_count,
        description=listing.description,
        chainId=listing.chain_id,
        createdAt=listing.created_at,
        updatedAt=listing.updated_at,
    )


def is_available(listing: Listing) -> bool:
    """Active with inventory left. Advisory only; reserve_inventory is authoritative."""
    if listing.status != STATUS_ACTIVE:
        return False
    return listing.max_uses == UNLIMITED_USES or listing.purchase_count < listing.max_uses


def _app_filter(app: str):
    return or_(Listing.app_id == app, func.lower(Listing.app_name) == app.lower())


class ListingStore:
    """Storage operations for one unit of work (one AsyncSession)."""

    def __init__(self, session: AsyncSession, chain_id: int):
        self.session = session
        self.chain_id = chain_id

    # --- Listings ---

    async def get_listing(self, slug: str, chain_only: bool = False) -> Optional[Listing]:
        stmt = select(Listing).where(Listing.slug == slug)
        if chain_only:
            stmt = stmt.where(Listing.chain_id == self.chain_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def list_listings(self) -> List[Listing]:
        stmt = (
            select(Listing)
            .where(Listing.chain_id == self.chain_id)
            .order_by(Listing.created_at.desc(), Listing.id.desc())
        )
        return list((await self.session.execute(stmt)).scalars())

    async def create_listing(
        self,
        secret: Union[InviteLinkSecret, AccessCodeSecret],
        price_usdc: Decimal,
        seller_address: str,
        app_id: Optional[str] = None,
        app_name: Optional[str] = None,
        max_uses: int = 1,
        description: Optional[str] = None,
    ) -> Listing:
        """
        Insert a new active listing under a fresh slug.

        Raises:
            RuntimeError: If no unique slug could be generated
        """
        slug = None
        for _ in range(SLUG_ATTEMPTS):
            candidate = generate_slug()
            if await self.get_listing(candidate) is None:
                slug = candidate
                break
        if slug is None:
            raise RuntimeError("Failed to generate unique slug")

        listing = Listing(
            slug=slug,
            chain_id=self.chain_id,
            listing_type=secret.listingType,
            price_usdc=price_usdc,
            seller_address=seller_address.lower(),
            app_id=clean_text(app_id),
            app_name=clean_text(app_name),
            status=STATUS_ACTIVE,
            max_uses=max_uses,
            purchase_count=0,
            reserved_count=0,
            description=clean_text(description),
        )
        if isinstance(secret, InviteLinkSecret):
            listing.invite_url = secret.inviteUrl
        elif isinstance(secret, AccessCodeSecret):
            listing.app_url = secret.appUrl
            listing.access_code = secret.accessCode
        else:
            raise ValueError(f"Unknown secret type: {type(secret).__name__}")

        self.session.add(listing)
        await self.session.flush()
        await self.session.refresh(listing)
        logger.info(f"Created {listing.listing_type} listing {slug} for {listing.seller_address}")
        return listing

    async def update_listing(
        self,
        slug: str,
        seller_address: str,
        price_usdc: Optional[Decimal] = None,
        invite_url: Optional[str] = None,
        app_id: Optional[str] = None,
        app_name: Optional[str] = None,
        fields_set: Optional[set] = None,
    ) -> Listing:
        """
        Apply a seller's edit to one of their active listings.

        ``fields_set`` names the request fields that were present; a present
        but empty appId/appName clears it.

        Raises:
            ListingNotFoundError: No active listing with this slug owned by the seller
            ValidationFailure: The edit is not valid for this listing
        """
        fields_set = fields_set or set()
        stmt = select(Listing).where(
            Listing.slug == slug,
            Listing.seller_address == seller_address.lower(),
            Listing.status == STATUS_ACTIVE,
        )
        listing = (await self.session.execute(stmt)).scalar_one_or_none()
        if listing is None:
            raise ListingNotFoundError()

        if price_usdc is not None:
            listing.price_usdc = price_usdc

        if invite_url is not None:
            if listing.listing_type != LISTING_TYPE_INVITE_LINK:
                raise ValidationFailure("Invite URL can only be set on invite link listings")
            listing.invite_url = invite_url

        if "appId" in fields_set:
            listing.app_id = clean_text(app_id)
        if "appName" in fields_set:
            listing.app_name = clean_text(app_name)

        if not listing.app_id and not listing.app_name:
            raise ValidationFailure("Either appId or appName must be provided")

        await self.session.flush()
        await self.session.refresh(listing)
        logger.info(f"Updated listing {slug}")
        return listing

    async def cancel_listing(self, slug: str, seller_address: str) -> bool:
        """Move an active listing owned by the seller to cancelled."""
        stmt = (
            update(Listing)
            .where(
                Listing.slug == slug,
                Listing.seller_address == seller_address.lower(),
                Listing.status == STATUS_ACTIVE,
            )
            .values(status=STATUS_CANCELLED, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        cancelled = (result.rowcount or 0) == 1
        if cancelled:
            logger.info(f"Cancelled listing {slug}")
        return cancelled

    async def consume_nonce(self, signer_address: str, action: str, nonce: int) -> None:
        """
        Record an EIP-712 nonce as used.

        Raises:
            AuthorizationError: The nonce was already consumed (replay)
        """
        self.session.add(ConsumedNonce(signer_address=signer_address.lower(), action=action, nonce=nonce))
        try:
            await self.session.flush()
        except IntegrityError:
            logger.warning(f"Replayed {action} nonce {nonce} from {signer_address.lower()}")
            raise AuthorizationError("nonce already used", stage="nonce_checking")

    async def lowest_price(self, app_id: Optional[str] = None, app_name: Optional[str] = None) -> Optional[Decimal]:
        conditions = []
        if app_id:
            conditions.append(_app_filter(app_id))
        if app_name:
            conditions.append(_app_filter(app_name))

        stmt = (
            select(Listing.price_usdc)
            .where(
                Listing.status == STATUS_ACTIVE,
                Listing.chain_id == self.chain_id,
                or_(*conditions),
                or_(Listing.max_uses == UNLIMITED_USES, Listing.purchase_count < Listing.max_uses),
            )
            .order_by(Listing.price_usdc.asc())
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def sold_listings_for_app(self, app: str, limit: int = 100) -> List[Listing]:
        stmt = (
            select(Listing)
            .where(_app_filter(app), Listing.status == STATUS_SOLD)
            .order_by(Listing.updated_at.desc())
            .limit(limit)
        )
        return list((await self.session.execute(stmt)).scalars())

    # --- Inventory ---

    async def reserve_inventory(
        self,
        slug: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Hold one unit of inventory for ``holder``'s payment.

        Reservations on the listing that are past their expiry are released
        first. A holder with an ambiguous reservation takes that unit back.
        Otherwise a new unit is held while the listing is active and
        ``purchase_count + reserved_count < max_uses`` (or uses are unlimited).

        Returns:
            The reservation id, or None when no unit is left
        """
        now = now or utc_now()
        expires_at = now + timedelta(seconds=ttl_seconds)

        await self.expire_reservations(slug, now)

        reclaimed = await self._reclaim_ambiguous(slug, holder, expires_at)
        if reclaimed is not None:
            logger.info(f"Holder {holder} reclaimed reservation {reclaimed} on listing {slug}")
            return reclaimed

        stmt = (
            update(Listing)
            .where(
                Listing.slug == slug,
                Listing.status == STATUS_ACTIVE,
                or_(
                    Listing.max_uses == UNLIMITED_USES,
                    Listing.purchase_count + Listing.reserved_count < Listing.max_uses,
                ),
            )
            .values(reserved_count=Listing.reserved_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if (result.rowcount or 0) != 1:
            return None

        reservation = Reservation(
            listing_slug=slug,
            holder=holder,
            state=RESERVATION_PENDING,
            expires_at=expires_at,
        )
        self.session.add(reservation)
        await self.session.flush()
        return reservation.id

    async def _reclaim_ambiguous(self, slug: str, holder: str, expires_at: datetime) -> Optional[int]:
        stmt = (
            select(Reservation.id)
            .where(
                Reservation.listing_slug == slug,
                Reservation.holder == holder,
                Reservation.state == RESERVATION_AMBIGUOUS,
            )
            .limit(1)
        )
        reservation_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if reservation_id is None:
            return None

        # only one retry may take the unit back
        claim = (
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.state == RESERVATION_AMBIGUOUS)
            .values(state=RESERVATION_PENDING, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(claim)
        return reservation_id if (result.rowcount or 0) == 1 else None

    async def expire_reservations(self, slug: str, now: Optional[datetime] = None) -> int:
        """Return the units of expired reservations on ``slug`` to sale."""
        now = now or utc_now()
        stmt = select(Reservation.id).where(Reservation.listing_slug == slug, Reservation.expires_at <= now)
        expired = list((await self.session.execute(stmt)).scalars())

        released = 0
        for reservation_id in expired:
            if await self.release_reservation(slug, reservation_id):
                released += 1
        if released:
            logger.warning(f"Released {released} expired reservation(s) on listing {slug}")
        return released

    async def mark_ambiguous(self, reservation_id: int, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        """Keep a reservation whose settlement outcome is unknown, for the payer to retry."""
        now = now or utc_now()
        stmt = (
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.state == RESERVATION_PENDING)
            .values(state=RESERVATION_AMBIGUOUS, expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def _drop_reservation(self, reservation_id: int) -> bool:
        stmt = delete(Reservation).where(Reservation.id == reservation_id).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def release_reservation(self, slug: str, reservation_id: int) -> bool:
        if not await self._drop_reservation(reservation_id):
            return False
        stmt = (
            update(Listing)
            .where(Listing.slug == slug, Listing.reserved_count > 0)
            .values(reserved_count=Listing.reserved_count - 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
        return True

    async def commit_purchase(self, slug: str, reservation_id: int) -> bool:
        """
        Turn a reservation into a sale.

        Increments purchase_count and moves the listing to sold when the last
        limited unit is taken. Unlimited listings stay active. If the
        reservation already expired, the sale goes through only while a unit
        is still free.
        """
        held = await self._drop_reservation(reservation_id)

        becomes_sold = (
            (Listing.status == STATUS_ACTIVE)
            & (Listing.max_uses != UNLIMITED_USES)
            & (Listing.purchase_count + 1 >= Listing.max_uses)
        )
        values = {
            "purchase_count": Listing.purchase_count + 1,
            "status": case((becomes_sold, STATUS_SOLD), else_=Listing.status),
            "updated_at": func.now(),
        }
        if held:
            guard = Listing.reserved_count > 0
            values["reserved_count"] = Listing.reserved_count - 1
        else:
            logger.warning(f"Reservation {reservation_id} on listing {slug} lapsed before commit")
            guard = or_(
                Listing.max_uses == UNLIMITED_USES,
                Listing.purchase_count + Listing.reserved_count < Listing.max_uses,
            )

        stmt = (
            update(Listing)
            .where(Listing.slug == slug, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) == 1

    # --- Transactions ---

    async def record_transaction(
        self,
        listing: Listing,
        buyer_address: str,
        tx_hash: Optional[str] = None,
    ) -> Transaction:
        transaction = Transaction(
            listing_slug=listing.slug,
            seller_address=listing.seller_address,
            buyer_address=buyer_address.lower(),
            price_usdc=listing.price_usdc,
            app_id=listing.app_id,
            chain_id=listing.chain_id,
            tx_hash=tx_hash,
        )
        self.session.add(transaction)
        await self.session.flush()
        await self.session.refresh(transaction)
        return transaction

    async def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return await self.session.get(Transaction, transaction_id)

    async def purchases_for_buyer(self, buyer_address: str) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.buyer_address == buyer_address.lower())
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        return list((await self.session.execute(stmt)).scalars())

    async def seller_stats(self, seller_address: str) -> Tuple[int, Decimal]:
        stmt = select(func.count(Transaction.id), func.coalesce(func.sum(Transaction.price_usdc), 0)).where(
            Transaction.seller_address == seller_address.lower()
        )
        count, total = (await self.session.execute(stmt)).one()
        return int(count), Decimal(str(total))

    async def recent_sales(self, limit: int = 50, skip: int = 0) -> Tuple[List[Tuple[Transaction, Optional[str]]], int]:
        """Transactions on this chain, newest first, with the listing's app name."""
        stmt = (
            select(Transaction, Listing.app_name)
            .outerjoin(Listing, Listing.slug == Transaction.listing_slug)
            .where(Transaction.chain_id == self.chain_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(skip)
        )
        rows = [(row[0], row[1]) for row in (await self.session.execute(stmt)).all()]

        total_stmt = select(func.count(Transaction.id)).where(Transaction.chain_id == self.chain_id)
        total = (await self.session.execute(total_stmt)).scalar_one()
        return rows, int(total)
