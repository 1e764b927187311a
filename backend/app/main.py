"""BrewOps Billing — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.checkout import router as checkout_router
from app.api.v1.cron import router as cron_router
from app.api.v1.subscription import router as subscription_router
from app.api.v1.webhooks import router as webhooks_router
from app.billing.exceptions import BillingError
from app.billing.midtrans_client import MidtransGateway
from app.config import settings
from app.database import Database

# Configure root logger so all app.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the database and gateway on startup; release them on shutdown."""
    app.state.db = Database(settings.async_database_url, pool_pre_ping=True)
    app.state.gateway = MidtransGateway(
        server_key=settings.midtrans_server_key,
        snap_url=settings.midtrans_snap_url,
        core_url=settings.midtrans_core_url,
        timeout=settings.gateway_timeout_seconds,
    )
    yield
    await app.state.gateway.aclose()
    await app.state.db.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription lifecycle and billing for brewery and roastery tenants.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render every billing failure as ``{"detail": {error_code, message, context}}``."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Routers
app.include_router(subscription_router)
app.include_router(checkout_router)
app.include_router(webhooks_router)
app.include_router(cron_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
