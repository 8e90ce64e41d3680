# app/api/deps.py
from typing import AsyncIterator

from fastapi import Depends, Request

from app.core.chain import ChainConfig
from app.services.listing_actions import ListingActions
from app.services.listings import ListingStore
from app.services.purchase import PurchaseSettlement
from app.services.reveal import SecretReveal
from app.signing.authorizer import SignedActionAuthorizer


def get_chain(request: Request) -> ChainConfig:
    return request.app.state.chain


def get_authorizer(request: Request) -> SignedActionAuthorizer:
    return request.app.state.authorizer


def get_purchase_settlement(request: Request) -> PurchaseSettlement:
    return request.app.state.purchase_settlement


async def get_store(request: Request) -> AsyncIterator[ListingStore]:
    """One session per request; uncommitted work is rolled back on close."""
    async with request.app.state.database.sessionmaker() as session:
        yield ListingStore(session, request.app.state.chain.chain_id)


def get_listing_actions(
    store: ListingStore = Depends(get_store),
    authorizer: SignedActionAuthorizer = Depends(get_authorizer),
    chain: ChainConfig = Depends(get_chain),
) -> ListingActions:
    return ListingActions(store, authorizer, chain)


def get_secret_reveal(
    store: ListingStore = Depends(get_store),
    authorizer: SignedActionAuthorizer = Depends(get_authorizer),
    chain: ChainConfig = Depends(get_chain),
) -> SecretReveal:
    return SecretReveal(store, authorizer, chain)
