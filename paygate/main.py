# paygate/main.py
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from paygate import __version__
from paygate.core.config import GateConfig, settings
from paygate.api.endpoints import market, transactions
from paygate.api.models.health import HealthResponse
from paygate.x402.ledger import JsonRpcLedgerReader
from paygate.x402.middleware import PaymentGateMiddleware
from paygate.x402.pricing import format_amount
from paygate.x402.ratelimit import RateLimiter
from paygate.x402.replay import SqlReplayStore
from paygate.x402.verifier import LedgerReader, PaymentVerifier, ReplayStore

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

FEATURES = [
    "Anti-Replay Protection",
    "Idempotency",
    "Chain Validation",
    "Rate Limiting",
    "Non-Custodial",
]


def create_app(
    config: Optional[GateConfig] = None,
    ledger: Optional[LedgerReader] = None,
    store: Optional[ReplayStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Anything not passed in is built from environment settings. Payment
    terms are fixed here for the lifetime of the app.

    Raises:
        ValueError: If the payment terms in the environment are invalid
    """
    config = config or GateConfig.from_settings()
    store = store or SqlReplayStore(settings.X402_REPLAY_DB_URL)
    ledger = ledger or JsonRpcLedgerReader(
        rpc_url=str(settings.BASE_RPC_URL),
        timeout=settings.X402_RPC_TIMEOUT_SECONDS,
        max_attempts=settings.X402_RPC_MAX_ATTEMPTS,
        backoff_seconds=settings.X402_RPC_BACKOFF_SECONDS,
    )
    rate_limiter = rate_limiter or RateLimiter()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        openapi_url=f"{settings.API_PREFIX}/openapi.json"
    )
    app.state.gate_config = config
    app.state.replay_store = store

    app.include_router(market.router, prefix=settings.API_PREFIX, tags=["market"])
    app.include_router(transactions.router, prefix=settings.API_PREFIX, tags=["transactions"])

    # Added first so CORS wraps it and 402/409 responses still carry CORS headers
    app.add_middleware(
        PaymentGateMiddleware,
        config=config,
        verifier=PaymentVerifier(ledger, store),
        store=store,
        rate_limiter=rate_limiter,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

    @app.get(f"{settings.API_PREFIX}/health", response_model=HealthResponse, tags=["default"])
    def health() -> HealthResponse:
        """ Gateway health and payment terms. """
        return HealthResponse(
            status="ok",
            service=settings.PROJECT_NAME,
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
            network=config.network,
            chainId=config.chain_id,
            seller_wallet=config.recipient_address,
            min_payment=format_amount(config.required_amount, config.asset, config.asset_decimals),
            min_confirmations=config.min_confirmations,
            features=FEATURES,
        )

    logger.info(
        f"Gateway ready: {config.network} (chain id {config.chain_id}), "
        f"pay to {config.recipient_address}, "
        f"min payment {format_amount(config.required_amount, config.asset, config.asset_decimals)}"
    )
    return app


app = create_app()
