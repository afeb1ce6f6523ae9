"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and sets
up startup and shutdown events.  When run with uvicorn it initialises
the database and loads configuration from ``packverify.core.config``::

    uvicorn packverify.api.main:app --reload --app-dir backend
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.exception_handlers import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from packverify.api.error_handlers import generic_exception_handler, validation_exception_handler
from packverify.api.routes.analysis import router as analysis_router
from packverify.api.routes.billing import router as billing_router
from packverify.api.routes.quota import router as quota_router
from packverify.api.routes.stripe_webhooks import router as stripe_webhooks_router
from packverify.api.routes.users import router as users_router
from packverify.core.config import is_development, settings
from packverify.core.database import get_db_debug_info, init_db
from packverify.core.observability import init_sentry, sentry_set_tags

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):  # type: ignore
    # No-op unless Sentry is configured
    tags = {"path": request.url.path, "method": request.method}
    uid = request.headers.get("x-user-id")
    if uid:
        tags["uid"] = uid
    sentry_set_tags(tags)
    return await call_next(request)


"""CORS configuration.

In development allow all origins.  Otherwise start from
BACKEND_CORS_ORIGINS and make sure the FRONTEND_BASE_URL origin is
present, deduplicated in order.
"""
allow_origins = ["*"] if is_development() else list(settings.BACKEND_CORS_ORIGINS or [])

if "*" not in allow_origins:
    parsed = urlparse(settings.FRONTEND_BASE_URL or "")
    if parsed.scheme and parsed.netloc:
        front_origin = f"{parsed.scheme}://{parsed.netloc}"
        if front_origin not in allow_origins:
            allow_origins.append(front_origin)

seen = set()
allow_origins = [o for o in allow_origins if not (o in seen or seen.add(o))]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register custom exception handlers
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include routers
app.include_router(users_router)
app.include_router(quota_router)
app.include_router(billing_router)
app.include_router(analysis_router)
app.include_router(stripe_webhooks_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the PackVerify metering API"}


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}


@app.get("/debug/db")
async def db_debug():
    """Return non-sensitive DB diagnostics (development only)."""
    if not is_development():
        return {"ok": False, "message": "disabled in non-development env"}
    return get_db_debug_info()
