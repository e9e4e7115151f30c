"""FastAPI dependencies for the Firestore store, the Stripe gateway and the
billing components built on them.

Firebase and Stripe are initialized once from the application lifespan
(``init_services``); request handlers receive them through ``Depends`` and never
initialize anything lazily.
"""

from __future__ import annotations

import os
import logging
from pathlib import Path
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

from .billing.checkout import CheckoutIntentTracker
from .billing.engine import ReconciliationEngine
from .billing.events import EventIngestionGateway, EventProcessor
from .billing.provider import STRIPE_SECRET_KEY, StripeGateway
from .billing.store import FirestoreSubscriptionStore
from .errors import UpstreamError

# =============================================================================
# CONFIGURATION
# =============================================================================

PACKAGE_DIR = Path(__file__).parent
PROJECT_DIR = PACKAGE_DIR.parent

SERVICE_ACCOUNT_PATH = os.environ.get(
    "GOOGLE_APPLICATION_CREDENTIALS",
    str(PROJECT_DIR / "firebase-adminsdk.json"),
)
FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID", "")
FIREBASE_CLIENT_EMAIL = os.environ.get("FIREBASE_CLIENT_EMAIL", "")
FIREBASE_PRIVATE_KEY = os.environ.get("FIREBASE_PRIVATE_KEY", "")

logger = logging.getLogger("subsync.dependencies")


# =============================================================================
# FIREBASE INITIALIZATION
# =============================================================================

_firebase_app: Optional[firebase_admin.App] = None
_firestore_client = None
_stripe_gateway: Optional[StripeGateway] = None


def _normalize_private_key(raw: str) -> str:
    key = raw
    if "\\n" in key:
        key = key.replace("\\n", "\n")
    if key.startswith('"') and key.endswith('"'):
        key = key[1:-1]
    return key


def _firebase_credentials() -> credentials.Certificate:
    if Path(SERVICE_ACCOUNT_PATH).exists():
        return credentials.Certificate(SERVICE_ACCOUNT_PATH)

    if FIREBASE_PROJECT_ID and FIREBASE_CLIENT_EMAIL and FIREBASE_PRIVATE_KEY:
        logger.info("Using Firebase credentials from environment for project %s", FIREBASE_PROJECT_ID)
        return credentials.Certificate({
            "type": "service_account",
            "project_id": FIREBASE_PROJECT_ID,
            "private_key": _normalize_private_key(FIREBASE_PRIVATE_KEY),
            "client_email": FIREBASE_CLIENT_EMAIL,
            "token_uri": "https://oauth2.googleapis.com/token",
        })

    raise RuntimeError(
        f"Service account not found: {SERVICE_ACCOUNT_PATH} "
        "(or set FIREBASE_PROJECT_ID, FIREBASE_CLIENT_EMAIL, FIREBASE_PRIVATE_KEY)"
    )


def store_configured() -> bool:
    return Path(SERVICE_ACCOUNT_PATH).exists() or bool(
        FIREBASE_PROJECT_ID and FIREBASE_CLIENT_EMAIL and FIREBASE_PRIVATE_KEY
    )


def provider_configured() -> bool:
    return bool(STRIPE_SECRET_KEY)


def init_services() -> None:
    """Initialize Firebase, Firestore and Stripe. Called once at startup."""
    global _firebase_app, _firestore_client, _stripe_gateway

    try:
        _firebase_app = firebase_admin.get_app()
    except ValueError:
        _firebase_app = firebase_admin.initialize_app(_firebase_credentials())
        logger.info("Firebase Admin initialized")

    _firestore_client = firestore.client()
    logger.info("Firestore client initialized")

    if provider_configured():
        _stripe_gateway = StripeGateway(STRIPE_SECRET_KEY)
        logger.info("Stripe gateway initialized")
    else:
        logger.warning("STRIPE_SECRET_KEY not set; checkout, status and cancel will fail")


def get_firestore():
    """Get Firestore client (initialized in the lifespan)."""
    if _firestore_client is None:
        raise RuntimeError("Firestore not initialized; init_services() must run at startup")
    return _firestore_client


# =============================================================================
# BILLING COMPONENTS
# =============================================================================

def get_subscription_store() -> FirestoreSubscriptionStore:
    return FirestoreSubscriptionStore(get_firestore())


def get_billing_gateway() -> StripeGateway:
    if _stripe_gateway is None:
        raise UpstreamError(
            "Billing provider is not configured",
            service="stripe",
            status_code=503,
            details={"required": ["STRIPE_SECRET_KEY"]},
        )
    return _stripe_gateway


def get_engine() -> ReconciliationEngine:
    return ReconciliationEngine(get_subscription_store(), _stripe_gateway)


def get_checkout_tracker() -> CheckoutIntentTracker:
    gateway = get_billing_gateway()
    return CheckoutIntentTracker(ReconciliationEngine(get_subscription_store(), gateway), gateway)


def get_event_gateway() -> EventIngestionGateway:
    return EventIngestionGateway()


def get_event_processor() -> EventProcessor:
    store = get_subscription_store()
    return EventProcessor(ReconciliationEngine(store, _stripe_gateway), _stripe_gateway, store)
