"""
Subscription Reconciliation API - Main Application
==================================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from subrecon.config import settings
from subrecon.core.errors import setup_exception_handlers
from subrecon.db.session import close_db, init_db
from subrecon.schemas.common import ErrorResponse, HealthResponse
from subrecon.services.cache import close_redis, init_redis

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that adds custom attributes to every New Relic
    transaction: response status, latency, HTTP method, route pattern and
    user id (when authenticated).

    Raw ASGI keeps the route handler in the same task, so New Relic's
    contextvars-based spans for Redis and database calls stay attached.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # until the real one is seen

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])

                # Set by the auth dependency
                state = scope.get("state")
                user_id = state.get("user_id") if isinstance(state, dict) else None
                if user_id:
                    newrelic.agent.add_custom_attribute("enduser.id", str(user_id))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown of:
    - Database connection
    - Redis connection
    - Reconciliation scheduler (when SCHEDULER_ENABLED)
    """
    logger.info("Starting Subscription Reconciliation API...")

    if settings.auth_disabled:
        logger.warning(
            "Authentication is DISABLED (DEV_AUTH_DISABLED=true); "
            "all requests use the development user. Never use this in production."
        )

    # Continue startup even if DB fails (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis connection failed, status answers will not be cached: %s", e)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        from subrecon.worker.scheduler import create_scheduler

        scheduler = create_scheduler()
        scheduler.start()
        logger.info("Reconciliation scheduler started in-process")

    yield

    logger.info("Shutting down Subscription Reconciliation API...")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Subscription Reconciliation API",
    description="""
## Cross-platform subscription ledger

Keeps subscription entitlement consistent across two app-store platforms
and the server-side ledger.

### Features
- **Validation**: purchase validation and restore with idempotent dedup
- **Entitlement**: cached entitlement check
- **Webhooks**: platform notifications mapped onto the subscription state machine
- **Reconciliation**: scheduled expiry, renewal and aggregate sweeps
    """,
    version=VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid argument or failed precondition"},
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        403: {"model": ErrorResponse, "description": "Permission denied"},
        404: {"model": ErrorResponse, "description": "Purchase not found"},
        409: {"model": ErrorResponse, "description": "Purchase reference already in use"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
        503: {"model": ErrorResponse, "description": "Platform temporarily unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(NewRelicTransactionMiddleware)

setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check() -> dict:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "environment": settings.ENVIRONMENT,
    }


# =============================================================================
# API Routes
# =============================================================================

from subrecon.api.v1 import subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
