# app/main.py
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from x402.facilitator import FacilitatorClient

from app.core.config import Settings, settings as default_settings
from app.core.chain import build_chain_config
from app.api.endpoints import buyer, listings, purchase, sales
from app.api.errors import validation_exception_handler
from app.db.session import Database
from app.services.purchase import PurchaseSettlement
from app.signing.authorizer import SignedActionAuthorizer
from app.signing.verifier import ChainSignatureVerifier, JsonRpcClient, SignatureVerifier
from app.x402.facilitator import PaymentSettler, build_facilitator_client
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    verifier: Optional[SignatureVerifier] = None,
    facilitator_client: Optional[FacilitatorClient] = None,
) -> FastAPI:
    """
    Build the API with its storage, signature and payment components.

    Components not passed in are built from settings; tests pass their own.
    """
    settings = settings or default_settings
    chain = build_chain_config(settings)
    database = database or Database(settings.DATABASE_URL)

    if verifier is None:
        verifier = ChainSignatureVerifier(JsonRpcClient(chain.rpc_url, timeout=settings.RPC_TIMEOUT_SECONDS))
    if facilitator_client is None:
        facilitator_client = build_facilitator_client(str(settings.X402_FACILITATOR_URL), settings.X402_FACILITATOR_API_KEY)

    authorizer = SignedActionAuthorizer(
        verifier,
        chain.chain_id,
        max_age_ms=settings.SIGNATURE_MAX_AGE_MS,
        clock_skew_ms=settings.SIGNATURE_CLOCK_SKEW_MS,
    )
    settler = PaymentSettler(
        chain,
        facilitator_client,
        timeout_seconds=settings.X402_FACILITATOR_TIMEOUT_SECONDS,
        max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await database.create_all()
        logger.info(f"{settings.PROJECT_NAME} serving chain {chain.chain_id} ({chain.network})")
        yield
        await database.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",  # Standard location for OpenAPI spec
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.chain = chain
    app.state.database = database
    app.state.authorizer = authorizer
    app.state.purchase_settlement = PurchaseSettlement(
        database, settler, chain, reservation_ttl_seconds=settings.X402_RESERVATION_TTL_SECONDS
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # The prefix ensures all routes start with /api/v1
    app.include_router(listings.router, prefix=f"{settings.API_V1_STR}/listings", tags=["listings"])
    app.include_router(purchase.router, prefix=f"{settings.API_V1_STR}/purchase", tags=["purchase"])
    app.include_router(buyer.router, prefix=f"{settings.API_V1_STR}/buyer", tags=["buyer"])
    app.include_router(sales.router, prefix=f"{settings.API_V1_STR}", tags=["sales"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {
            "status": "ok",
            "message": f"Welcome to {settings.PROJECT_NAME}",
            "chainId": chain.chain_id,
            "network": chain.network,
            "explorer": chain.explorer_url,
        }

    return app


app = create_app()
