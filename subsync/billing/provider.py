"""Stripe gateway: the only module that talks to the billing provider.

Wraps customer lookup (identity binding), active-subscription snapshots,
checkout session creation, cancellation and the checkout-session lookup used
to recover a user binding from a subscription id. Every Stripe failure is
raised as ``UpstreamError``.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import Any, Dict, Optional, Tuple

import stripe

from ..errors import UpstreamError
from .records import Snapshot, snapshot_from_subscription

logger = logging.getLogger("subsync.provider")

STRIPE_SECRET_KEY = str(os.environ.get("STRIPE_SECRET_KEY", "")).strip()
STRIPE_API_TIMEOUT_SEC = float(os.environ.get("STRIPE_API_TIMEOUT_SEC", "8"))
STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))

CHECKOUT_SUCCESS_URL = os.environ.get(
    "CHECKOUT_SUCCESS_URL",
    "https://cryptosnapshot.net/payment-success?session_id={CHECKOUT_SESSION_ID}",
)
CHECKOUT_CANCEL_URL = os.environ.get(
    "CHECKOUT_CANCEL_URL",
    "https://cryptosnapshot.net/canceled-payment?session_id={CHECKOUT_SESSION_ID}",
)

# Metadata keys that carry the local user id, newest first.
USER_ID_METADATA_KEYS = ("firebaseUID", "userId")


def user_id_from_metadata(metadata: Any) -> Optional[str]:
    if not metadata:
        return None
    for key in USER_ID_METADATA_KEYS:
        try:
            value = metadata[key]
        except (KeyError, TypeError):
            continue
        value = str(value or "").strip()
        if value:
            return value
    return None


def _search_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _stripe_call(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as exc:
            logger.error(
                "Stripe call %s failed: type=%s code=%s message=%s",
                fn.__name__,
                type(exc).__name__,
                getattr(exc, "code", None),
                getattr(exc, "user_message", None) or str(exc),
            )
            raise UpstreamError(
                "Billing provider request failed",
                service="stripe",
                details={
                    "operation": fn.__name__,
                    "stripeCode": getattr(exc, "code", None),
                    "httpStatus": getattr(exc, "http_status", None),
                },
            ) from exc

    return wrapper


class StripeGateway:
    """Thin, synchronous client over the Stripe SDK."""

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        *,
        timeout: float = STRIPE_API_TIMEOUT_SEC,
        max_network_retries: int = STRIPE_MAX_NETWORK_RETRIES,
    ):
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    # Identity binding

    @_stripe_call
    def resolve_customer(self, user_id: Optional[str], contact_identifier: Optional[str] = None) -> Optional[str]:
        """Customer id tagged with ``user_id``, else (if given) the one with that email."""
        if user_id:
            result = stripe.Customer.search(
                query=f"metadata['firebaseUID']:'{_search_literal(user_id)}'",
                limit=1,
            )
            if result.data:
                return result.data[0].id

        if contact_identifier:
            result = stripe.Customer.list(email=contact_identifier, limit=1)
            if result.data:
                logger.info("Resolved customer by contact identifier fallback")
                return result.data[0].id

        return None

    @_stripe_call
    def find_or_create_customer(self, user_id: str, email: str) -> str:
        customer_id = self.resolve_customer(user_id)
        if customer_id:
            return customer_id
        customer = stripe.Customer.create(
            email=email,
            metadata={"firebaseUID": user_id, "userId": user_id},
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    @_stripe_call
    def customer_user_id(self, customer_id: str) -> Optional[str]:
        customer = stripe.Customer.retrieve(customer_id)
        if getattr(customer, "deleted", False):
            return None
        return user_id_from_metadata(customer.get("metadata"))

    # Snapshots

    @_stripe_call
    def fetch_active(self, customer_id: str) -> Optional[Snapshot]:
        """First active subscription for the customer, or None."""
        result = stripe.Subscription.list(customer=customer_id, status="active", limit=1)
        if not result.data:
            return None
        return snapshot_from_subscription(result.data[0])

    @_stripe_call
    def cancel_at_period_end(self, subscription_id: str) -> Snapshot:
        subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        return snapshot_from_subscription(subscription)

    # Checkout

    @_stripe_call
    def create_checkout_session(
        self, *, customer_id: str, user_id: str, price_id: str
    ) -> Tuple[str, Optional[str]]:
        binding: Dict[str, str] = {"userId": user_id, "firebaseUID": user_id}
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=CHECKOUT_SUCCESS_URL,
            cancel_url=CHECKOUT_CANCEL_URL,
            client_reference_id=user_id,
            metadata=binding,
            subscription_data={"metadata": binding},
        )
        return session.id, session.url

    @_stripe_call
    def session_user_id_for_subscription(self, subscription_id: str) -> Optional[str]:
        """``client_reference_id`` of the checkout session that created the subscription."""
        result = stripe.checkout.Session.list(subscription=subscription_id, limit=3)
        for session in result.data:
            user_id = str(session.get("client_reference_id") or "").strip()
            if user_id:
                return user_id
            user_id = user_id_from_metadata(session.get("metadata"))
            if user_id:
                return user_id
        return None

    @_stripe_call
    def ping(self) -> None:
        stripe.Customer.list(limit=1)
