"""Health check router - configuration and connectivity.

Endpoints:
    GET /health          - Liveness; whether store and provider credentials are configured
    GET /health/store    - Firestore connectivity
    GET /health/provider - Stripe connectivity
    GET /check-urls      - Checkout redirect URLs and webhook URL in use
"""

from __future__ import annotations

import os
import logging
from datetime import datetime

from fastapi import APIRouter

from ..billing.events import STRIPE_WEBHOOK_SECRET
from ..billing.provider import CHECKOUT_CANCEL_URL, CHECKOUT_SUCCESS_URL
from ..dependencies import (
    get_billing_gateway,
    get_subscription_store,
    provider_configured,
    store_configured,
)

router = APIRouter()
logger = logging.getLogger("subsync.health")

DEBUG_MODE = os.environ.get("DEBUG", "false").lower() == "true"
BASE_URL = os.environ.get("BASE_URL", "").rstrip("/")


@router.get("/health")
async def health_check() -> dict:
    """Basic health check.

    Reports configuration only; use /health/store and /health/provider for
    connectivity.
    """
    store_ok = store_configured()
    provider_ok = provider_configured()
    return {
        "status": "healthy" if store_ok and provider_ok else "degraded",
        "store": store_ok,
        "provider": provider_ok,
        "webhookSecret": bool(STRIPE_WEBHOOK_SECRET),
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/store")
def store_health() -> dict:
    """Firestore health check. Reads a ping document; it need not exist."""
    try:
        get_subscription_store().ping()
        return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}
    except Exception as e:
        logger.error(f"Firestore health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e) if DEBUG_MODE else "Store connection failed",
            "timestamp": datetime.utcnow().isoformat(),
        }


@router.get("/health/provider")
def provider_health() -> dict:
    """Stripe health check. Lists a single customer."""
    try:
        get_billing_gateway().ping()
        return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}
    except Exception as e:
        logger.error(f"Stripe health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e) if DEBUG_MODE else "Provider connection failed",
            "timestamp": datetime.utcnow().isoformat(),
        }


@router.get("/check-urls")
async def check_urls() -> dict:
    return {
        "success_url": CHECKOUT_SUCCESS_URL,
        "cancel_url": CHECKOUT_CANCEL_URL,
        "webhook_url": f"{BASE_URL}/provider-events" if BASE_URL else None,
        "stripe_configured": provider_configured(),
        "webhook_secret_configured": bool(STRIPE_WEBHOOK_SECRET),
    }
