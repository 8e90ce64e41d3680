# app/services/listing_actions.py
"""
Signed listing mutations: create, update and cancel.

Each action is authorized with an EIP-712 signature from the seller, its
nonce is consumed, and the mutation is applied, all in one database
transaction. A rejected request leaves no trace.
"""
import logging

from app.api.models.listing import CreateListingRequest, DeleteListingRequest, UpdateListingRequest
from app.core.chain import ChainConfig
from app.core.errors import ListingNotFoundError, ValidationFailure
from app.db.models import Listing
from app.services.listings import ListingStore
from app.signing.authorizer import SignedActionAuthorizer
from app.signing.typed_data import (
    CREATE_LISTING,
    DELETE_LISTING,
    UPDATE_LISTING,
    create_listing_message,
    delete_listing_message,
    update_listing_message,
)

logger = logging.getLogger(__name__)


class ListingActions:

    def __init__(self, store: ListingStore, authorizer: SignedActionAuthorizer, chain: ChainConfig):
        self.store = store
        self.authorizer = authorizer
        self.chain = chain

    def _check_chain(self, client_chain_id: int) -> None:
        if client_chain_id != self.chain.chain_id:
            raise ValidationFailure(
                f"Invalid chain. Expected chainId {self.chain.chain_id}, got {client_chain_id}. "
                "Please switch to the correct network."
            )

    async def create(self, request: CreateListingRequest) -> Listing:
        self._check_chain(request.chainId)

        message = create_listing_message(
            seller_address=request.sellerAddress,
            price_usdc=request.priceUsdc,
            nonce=request.nonce,
            invite_url=request.inviteUrl,
            app_id=request.appId,
            app_name=request.appName,
        )
        await self.authorizer.authorize_typed(CREATE_LISTING, message, request.signature, request.sellerAddress)
        await self.store.consume_nonce(request.sellerAddress, CREATE_LISTING, request.nonce)

        listing = await self.store.create_listing(
            secret=request.secret(),
            price_usdc=request.priceUsdc,
            seller_address=request.sellerAddress,
            app_id=request.appId,
            app_name=request.appName,
            max_uses=request.maxUses,
            description=request.description,
        )
        await self.store.session.commit()
        return listing

    async def update(self, request: UpdateListingRequest) -> Listing:
        self._check_chain(request.chainId)

        message = update_listing_message(
            slug=request.slug,
            seller_address=request.sellerAddress,
            nonce=request.nonce,
            price_usdc=request.priceUsdc,
            invite_url=request.inviteUrl,
            app_name=request.appName,
        )
        await self.authorizer.authorize_typed(UPDATE_LISTING, message, request.signature, request.sellerAddress)
        await self.store.consume_nonce(request.sellerAddress, UPDATE_LISTING, request.nonce)

        listing = await self.store.update_listing(
            slug=request.slug,
            seller_address=request.sellerAddress,
            price_usdc=request.priceUsdc,
            invite_url=request.inviteUrl,
            app_id=request.appId,
            app_name=request.appName,
            fields_set=request.model_fields_set,
        )
        await self.store.session.commit()
        return listing

    async def delete(self, request: DeleteListingRequest) -> None:
        """Cancel a listing. Listings are never removed from storage."""
        self._check_chain(request.chainId)

        message = delete_listing_message(request.slug, request.sellerAddress, request.nonce)
        await self.authorizer.authorize_typed(DELETE_LISTING, message, request.signature, request.sellerAddress)
        await self.store.consume_nonce(request.sellerAddress, DELETE_LISTING, request.nonce)

        if not await self.store.cancel_listing(request.slug, request.sellerAddress):
            raise ListingNotFoundError()
        await self.store.session.commit()
