"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and sets up
startup and shutdown events.  When run with uvicorn it initialises the
database and loads configuration from ``voucher_portal.core.config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from voucher_portal.api.error_handlers import generic_exception_handler, validation_exception_handler
from voucher_portal.api.routes.admin import router as admin_router
from voucher_portal.api.routes.auth import router as auth_router
from voucher_portal.api.routes.constituent import router as constituent_router
from voucher_portal.api.routes.documents import router as documents_router
from voucher_portal.api.routes.evaluator import router as evaluator_router
from voucher_portal.api.routes.inbound import router as inbound_router
from voucher_portal.api.routes.vendor import router as vendor_router
from voucher_portal.api.routes.webhooks import router as webhooks_router
from voucher_portal.core.config import settings
from voucher_portal.core.database import get_db_debug_info, init_db
from voucher_portal.core.observability import init_sentry

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
    title="Voucher Portal API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):
    if settings.SENTRY_DSN:
        scope = sentry_sdk.get_isolation_scope()
        scope.set_tag("path", request.url.path)
        scope.set_tag("method", request.method)
        uid = request.headers.get("x-user-id")
        if uid:
            scope.set_user({"id": uid})
    return await call_next(request)


def cors_origins() -> list[str]:
    """Development allows any origin; elsewhere the configured list plus the
    frontend origin and the local dev server."""
    if (settings.ENVIRONMENT or "development").lower() == "development":
        return ["*"]
    origins = list(settings.BACKEND_CORS_ORIGINS or [])
    parsed = urlparse(settings.FRONTEND_BASE_URL or "")
    if parsed.scheme and parsed.netloc:
        origins.append(f"{parsed.scheme}://{parsed.netloc}")
    origins.extend(["http://localhost:3000", "http://127.0.0.1:3000"])
    seen: set[str] = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(auth_router)
app.include_router(constituent_router)
app.include_router(vendor_router)
app.include_router(evaluator_router)
app.include_router(admin_router)
app.include_router(webhooks_router)
app.include_router(inbound_router)
app.include_router(documents_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Voucher Portal API"}


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}


@app.get("/debug/db")
async def db_debug():
    """Return non-sensitive DB diagnostics (development only)."""
    if (settings.ENVIRONMENT or "development").lower() != "development":
        return {"ok": False, "message": "disabled in non-development env"}
    return get_db_debug_info()
