# app/services/reveal.py
"""
Secret reads for verified buyers and sellers.

No payment or inventory is touched: these are authorization-gated reads of
the listing secret, re-derived from a transaction (buyer) or from listing
ownership (seller) on every request.
"""
import logging
from typing import Union

from app.api.models.listing import AccessCodeSecret, InviteLinkSecret
from app.core.chain import ChainConfig
from app.core.errors import ListingNotFoundError, TransactionNotFoundError
from app.services.listings import ListingStore, secret_of
from app.signing.authorizer import SignedActionAuthorizer

logger = logging.getLogger(__name__)


def parse_transaction_id(value: Union[int, str]) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise TransactionNotFoundError()


class SecretReveal:
    """Re-derives a caller's entitlement to a listing secret."""

    def __init__(self, store: ListingStore, authorizer: SignedActionAuthorizer, chain: ChainConfig):
        self.store = store
        self.authorizer = authorizer
        self.chain = chain

    async def reveal_for_buyer(
        self, transaction_id: Union[int, str], signature: str, message: str
    ) -> Union[InviteLinkSecret, AccessCodeSecret]:
        """
        Reveal the secret of a purchased listing to its buyer.

        Raises:
            TransactionNotFoundError: Unknown transaction, or one from another network
            AuthorizationError: Signature is not a fresh one from the buyer
            ListingNotFoundError: The purchased listing no longer exists on this chain
        """
        transaction = await self.store.get_transaction(parse_transaction_id(transaction_id))
        if transaction is None:
            raise TransactionNotFoundError()

        if transaction.chain_id != self.chain.chain_id:
            raise TransactionNotFoundError("Transaction not found on this network")

        await self.authorizer.authorize_freeform(message, signature, transaction.buyer_address)

        listing = await self.store.get_listing(transaction.listing_slug, chain_only=True)
        if listing is None:
            raise ListingNotFoundError()

        logger.info(f"Revealed listing {listing.slug} to buyer {transaction.buyer_address} (transaction {transaction.id})")
        return secret_of(listing)

    async def reveal_for_seller(
        self, slug: str, signature: str, message: str
    ) -> Union[InviteLinkSecret, AccessCodeSecret]:
        """
        Reveal a listing's secret to its seller for an edit session.

        The signed message must carry a Timestamp line.

        Raises:
            ListingNotFoundError: No listing with this slug on this chain
            AuthorizationError: Signature is not a fresh one from the seller
        """
        listing = await self.store.get_listing(slug, chain_only=True)
        if listing is None:
            raise ListingNotFoundError()

        await self.authorizer.authorize_freeform(message, signature, listing.seller_address, require_timestamp=True)

        logger.info(f"Revealed listing {slug} to its seller")
        return secret_of(listing)
