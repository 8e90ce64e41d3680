# app/services/purchase.py
"""
Purchase settlement: release a listing's secret only after payment.

Flow for one purchase:
1. Availability check (cheap, advisory)
2. x402 verification through the facilitator (no money moves)
3. Inventory reservation for the verified payer (atomic)
4. x402 settlement through the facilitator
5. Transaction record with the payer from the facilitator receipt
6. Inventory commit (purchase_count + 1, sold when exhausted)
7. Secret release, read fresh from the listing

Requests without a valid payment never hold inventory. A settlement with an
unknown outcome keeps its unit as an ambiguous reservation until it expires;
a retry from the same payer takes that unit back instead of competing for a
new one.

Steps 5-7 happen after money has moved. Their failures are logged and
audited for manual reconciliation and never turn into a denied purchase.
Everything from the reservation on runs shielded from request cancellation
so a disconnecting client cannot interrupt persistence.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Union

from x402.types import SettleResponse

from app.api.models.listing import AccessCodeSecret, InviteLinkSecret
from app.core.chain import ChainConfig
from app.core.errors import (
    ListingNotFoundError,
    ListingUnavailableError,
    PaymentError,
    PaymentTimeoutError,
    PurchaseUndeliveredError,
    ReconciliationError,
)
from app.db.models import Listing
from app.db.session import Database
from app.services.listings import ListingStore, is_available, secret_of
from app.x402.audit import (
    generate_request_id,
    log_payment_ambiguous,
    log_payment_required_sent,
    log_payment_settled,
    log_purchase_requested,
    log_reconciliation_required,
    log_secret_released,
)
from app.x402.facilitator import PaymentSettler, PaymentVerification, SettlementResult
from app.x402.pricing import price_label

logger = logging.getLogger(__name__)


@dataclass
class PurchaseReceipt:
    """What a successful purchase hands back to the buyer."""
    secret: Union[InviteLinkSecret, AccessCodeSecret]
    payer: Optional[str]
    transaction_id: Optional[int]
    settle_response: Optional[SettleResponse]


def payment_holder(payer: Optional[str], payment_header: str) -> str:
    """Owner of a reservation: the verified payer, else the payment itself."""
    if payer:
        return payer.lower()
    return hashlib.sha256(payment_header.encode("utf-8")).hexdigest()


class PurchaseSettlement:
    """Gates release of a listing's secret behind x402 payment settlement."""

    def __init__(
        self,
        database: Database,
        settler: PaymentSettler,
        chain: ChainConfig,
        reservation_ttl_seconds: int = 300,
    ):
        self.database = database
        self.settler = settler
        self.chain = chain
        self.reservation_ttl_seconds = reservation_ttl_seconds

    async def settle(
        self,
        slug: str,
        payment_header: Optional[str],
        resource_url: str,
        method: str = "POST",
    ) -> PurchaseReceipt:
        """
        Settle one purchase of ``slug``.

        Raises:
            ListingNotFoundError: No listing with this slug on the configured chain
            ListingUnavailableError: Listing is not active or has no inventory left
            PaymentError: Facilitator asked for or rejected payment (forward verbatim)
            PaymentTimeoutError: Settlement outcome unknown
            PurchaseUndeliveredError: Paid, but the secret could not be resolved
        """
        request_id = generate_request_id()

        async with self.database.sessionmaker() as session:
            listing = await ListingStore(session, self.chain.chain_id).get_listing(slug, chain_only=True)

        if listing is None:
            logger.info(f"Purchase of unknown listing {slug}")
            raise ListingNotFoundError()
        if not is_available(listing):
            logger.info(f"Purchase of unavailable listing {slug} (status={listing.status}, "
                        f"{listing.purchase_count}/{listing.max_uses})")
            raise ListingUnavailableError()

        log_purchase_requested(slug, str(listing.price_usdc), bool(payment_header), request_id=request_id)

        verification = await self.settler.verify_payment(
            resource_url=resource_url,
            method=method,
            payment_header=payment_header,
            pay_to=listing.seller_address,
            price_usdc=listing.price_usdc,
            description=self._describe(listing),
        )
        if not verification.verified:
            log_payment_required_sent(slug, verification.status, verification.body.get("error"), request_id=request_id)
            raise PaymentError(verification.status, verification.body)

        holder = payment_holder(verification.payer, payment_header)
        task = asyncio.ensure_future(self._reserve_pay_and_deliver(listing, verification, holder, request_id))
        return await asyncio.shield(task)

    async def _reserve_pay_and_deliver(
        self,
        listing: Listing,
        verification: PaymentVerification,
        holder: str,
        request_id: str,
    ) -> PurchaseReceipt:
        slug = listing.slug

        async with self.database.sessionmaker() as session:
            reservation_id = await ListingStore(session, self.chain.chain_id).reserve_inventory(
                slug, holder, self.reservation_ttl_seconds
            )
            await session.commit()
        if reservation_id is None:
            logger.info(f"Lost inventory race for listing {slug}")
            raise ListingUnavailableError()

        try:
            result = await self.settler.settle_payment(verification)
        except PaymentTimeoutError as e:
            logger.error(f"Ambiguous settlement for listing {slug}, reservation {reservation_id} held for {holder}: {e}")
            log_payment_ambiguous(slug, str(e), request_id=request_id)
            await self._hold_for_retry(slug, reservation_id)
            raise
        except BaseException:
            await self._release(slug, reservation_id)
            raise

        if not result.settled:
            await self._release(slug, reservation_id)
            log_payment_required_sent(slug, result.status, result.body.get("error"), request_id=request_id)
            raise PaymentError(result.status, result.body)

        log_payment_settled(
            slug, result.payer, result.transaction, result.network, str(listing.price_usdc), request_id=request_id
        )

        transaction_id = await self._record_transaction(listing, result, request_id)
        await self._commit_inventory(slug, reservation_id, result.payer, request_id)

        secret = await self._load_secret(slug, result.payer, request_id)
        if secret is None:
            raise PurchaseUndeliveredError(slug, transaction_id)

        log_secret_released(slug, result.payer, transaction_id, request_id=request_id)
        return PurchaseReceipt(
            secret=secret,
            payer=result.payer,
            transaction_id=transaction_id,
            settle_response=result.settle_response,
        )

    def _describe(self, listing: Listing) -> str:
        app = listing.app_name or listing.app_id or "app"
        return f"{price_label(listing.price_usdc)} for {app} {listing.listing_type.replace('_', ' ')}"

    async def _hold_for_retry(self, slug: str, reservation_id: int) -> None:
        # a failure here leaves the reservation pending until it expires
        try:
            async with self.database.sessionmaker() as session:
                await ListingStore(session, self.chain.chain_id).mark_ambiguous(
                    reservation_id, self.reservation_ttl_seconds
                )
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to mark reservation {reservation_id} on listing {slug} ambiguous: {e}")

    async def _release(self, slug: str, reservation_id: int) -> None:
        try:
            async with self.database.sessionmaker() as session:
                released = await ListingStore(session, self.chain.chain_id).release_reservation(slug, reservation_id)
                await session.commit()
            if not released:
                logger.warning(f"Reservation {reservation_id} on listing {slug} was already gone")
        except Exception as e:
            logger.error(f"Failed to release reservation {reservation_id} on listing {slug}: {e}")

    def _reconciliation(self, error: ReconciliationError, payer: Optional[str], request_id: str) -> None:
        logger.error(f"Reconciliation required: {error}")
        log_reconciliation_required(error.slug, error.step, error.detail, payer=payer, request_id=request_id)

    async def _record_transaction(self, listing: Listing, result: SettlementResult, request_id: str) -> Optional[int]:
        if not result.payer:
            self._reconciliation(
                ReconciliationError("record_transaction", listing.slug, "settlement receipt has no payer"),
                None,
                request_id,
            )
            return None

        try:
            async with self.database.sessionmaker() as session:
                transaction = await ListingStore(session, self.chain.chain_id).record_transaction(
                    listing, buyer_address=result.payer, tx_hash=result.transaction
                )
                await session.commit()
            logger.info(f"Recorded transaction {transaction.id} for listing {listing.slug}, buyer {transaction.buyer_address}")
            return transaction.id
        except Exception as e:
            self._reconciliation(ReconciliationError("record_transaction", listing.slug, str(e)), result.payer, request_id)
            return None

    async def _commit_inventory(self, slug: str, reservation_id: int, payer: Optional[str], request_id: str) -> None:
        try:
            async with self.database.sessionmaker() as session:
                committed = await ListingStore(session, self.chain.chain_id).commit_purchase(slug, reservation_id)
                await session.commit()
        except Exception as e:
            self._reconciliation(ReconciliationError("commit_inventory", slug, str(e)), payer, request_id)
            return

        if not committed:
            self._reconciliation(ReconciliationError("commit_inventory", slug, "no unit left to commit"), payer, request_id)

    async def _load_secret(
        self, slug: str, payer: Optional[str], request_id: str
    ) -> Optional[Union[InviteLinkSecret, AccessCodeSecret]]:
        try:
            async with self.database.sessionmaker() as session:
                listing = await ListingStore(session, self.chain.chain_id).get_listing(slug)
            if listing is None:
                raise ValueError("listing disappeared")
            return secret_of(listing)
        except Exception as e:
            self._reconciliation(ReconciliationError("release_secret", slug, str(e)), payer, request_id)
            return None
