"""
Payment Core — provider-agnostic payment orchestration API.

Processes payments, manages payment intents and performs refunds for the
reservation system, through the in-process manual provider or the Stripe
gateway, while keeping an auditable transaction ledger.

Start the server:
    uvicorn payment_core.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payment_core.api.health import router as health_router
from payment_core.api.payments import router as payments_router
from payment_core.api.webhooks import router as webhooks_router
from payment_core.config import Settings, settings
from payment_core.database import async_session, init_db
from payment_core.engine.errors import PaymentError, ValidationError
from payment_core.engine.service import PaymentService
from payment_core.providers.registry import ProviderRegistry
from payment_core.storage.base import PaymentStore
from payment_core.storage.sql import SqlPaymentStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger("payment_core.main")


def build_payment_service(store: PaymentStore, config: Settings = settings) -> PaymentService:
    """Composition root: store → registry → service."""
    registry = ProviderRegistry(config=config, store=store)
    return PaymentService(registry=registry, store=store, config=config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and compose the payment service on startup."""
    await init_db()
    app.state.settings = settings
    app.state.payment_service = build_payment_service(SqlPaymentStore(async_session))
    yield


app = FastAPI(
    title="Payment Core",
    description=(
        "Provider-agnostic payment orchestration: payments, intents and refunds "
        "through pluggable providers, with an immutable transaction ledger."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    content = {"error": exc.message, "code": exc.code}
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
app.include_router(webhooks_router)
