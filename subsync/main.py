"""Subscription Sync API - Main Application.

FastAPI application that keeps the per-user subscription record in Firestore
consistent with Stripe, from both client status checks and Stripe webhooks.

Usage:
    uvicorn subsync.main:app --host 127.0.0.1 --port 3000
"""

from __future__ import annotations

import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import init_services
from .errors import BillingError
from .middleware.rate_limit import setup_rate_limiting
from .routers import health, provider_events, subscriptions

# =============================================================================
# CONFIGURATION
# =============================================================================

DEBUG_MODE = os.environ.get("DEBUG", "false").lower() == "true"
API_VERSION = "1.0.0"

# CORS - strict origin allowlist
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "https://cryptosnapshot.net,http://localhost:3000",
    ).split(",")
    if origin.strip()
]

logging.basicConfig(
    level=logging.DEBUG if DEBUG_MODE else logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)
logger = logging.getLogger("subsync.main")


# =============================================================================
# LIFESPAN (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    logger.info(f"Starting Subscription Sync API v{API_VERSION}")
    logger.info(f"Debug mode: {DEBUG_MODE}")

    try:
        init_services()
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down Subscription Sync API")


# =============================================================================
# APPLICATION
# =============================================================================

if DEBUG_MODE:
    app = FastAPI(
        title="Subscription Sync API",
        version=API_VERSION,
        lifespan=lifespan,
    )
else:
    # Production: disable docs endpoints
    app = FastAPI(
        title="Subscription Sync API",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )


# =============================================================================
# MIDDLEWARE
# =============================================================================
# Last added = first to run: CORS, then rate limiting.

setup_rate_limiting(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    if "server" in response.headers:
        del response.headers["server"]
    if "x-powered-by" in response.headers:
        del response.headers["x-powered-by"]

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests for debugging."""
    start_time = datetime.utcnow()

    response = await call_next(request)

    duration_ms = (datetime.utcnow() - start_time).total_seconds() * 1000
    logger.debug(
        f"{request.method} {request.url.path} "
        f"-> {response.status_code} ({duration_ms:.0f}ms)"
    )

    return response


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Map body validation failures to 400 missing_field / invalid_field."""
    errors = exc.errors()
    missing = [
        str(err["loc"][-1]) for err in errors
        if err.get("type") == "missing" and err.get("loc")
    ]
    invalid = [
        str(err["loc"][-1]) for err in errors
        if err.get("type") != "missing" and err.get("loc")
    ]
    if missing:
        content = {"error": "missing_field", "code": "VALIDATION_ERROR", "details": {"required": missing}}
    else:
        content = {"error": "invalid_field", "code": "VALIDATION_ERROR", "details": {"fields": invalid}}
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions with generic error response."""
    logger.exception(f"Unhandled exception on {request.url.path}")

    if DEBUG_MODE:
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "code": "INTERNAL_ERROR",
                "message": str(exc),
                "details": {"type": type(exc).__name__}
            }
        )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "code": "INTERNAL_ERROR"
        }
    )


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(subscriptions.router, tags=["Subscriptions"])
app.include_router(provider_events.router, tags=["Provider Events"])
app.include_router(health.router, tags=["Health"])


@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": "Subscription Sync API",
        "version": API_VERSION,
        "status": "running"
    }
