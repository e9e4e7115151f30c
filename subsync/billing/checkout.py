"""Checkout intents: plan allow-list, Stripe checkout session, pending marker."""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from pydantic import BaseModel

from ..errors import StaleEventError, ValidationError
from .engine import ReconciliationEngine
from .provider import StripeGateway
from .records import pending_fields

logger = logging.getLogger("subsync.checkout")

# Offerable plans. Callers pick a key (or one of these price ids); they can
# never name an arbitrary price.
PLAN_PRICE_IDS: Dict[str, str] = {
    "monthly": os.environ.get("STRIPE_PRICE_MONTHLY", "price_1QII9UCcFkjlkIFGhm2pxExa"),
    "annual": os.environ.get("STRIPE_PRICE_ANNUAL", "price_1QIICICcFkjlkIFG7HT1Fp15"),
}


def resolve_price_id(plan_id: Optional[str], plans: Optional[Dict[str, str]] = None) -> str:
    plans = PLAN_PRICE_IDS if plans is None else plans
    plan_id = str(plan_id or "").strip()
    if plan_id in plans:
        return plans[plan_id]
    if plan_id and plan_id in plans.values():
        return plan_id
    raise ValidationError(
        "Invalid planId",
        error="invalid_plan",
        details={"validPlanIds": sorted(plans)},
    )


class CheckoutIntent(BaseModel):
    sessionId: str
    checkoutUrl: Optional[str] = None


class CheckoutIntentTracker:
    def __init__(
        self,
        engine: ReconciliationEngine,
        gateway: StripeGateway,
        *,
        plans: Optional[Dict[str, str]] = None,
    ):
        self.engine = engine
        self.gateway = gateway
        self.plans = PLAN_PRICE_IDS if plans is None else plans

    def create_intent(self, user_id: str, contact_identifier: str, plan_id: str) -> CheckoutIntent:
        price_id = resolve_price_id(plan_id, self.plans)
        logger.info("Creating checkout session user=%s plan=%s", user_id, plan_id)

        created_at = self.engine.watermark()
        customer_id = self.gateway.find_or_create_customer(user_id, contact_identifier)
        session_id, url = self.gateway.create_checkout_session(
            customer_id=customer_id,
            user_id=user_id,
            price_id=price_id,
        )

        try:
            self.engine.apply(user_id, pending_fields(session_id), created_at, source="checkout")
        except StaleEventError:
            # A provider event for this user already landed; it is the newer fact.
            logger.info("Pending marker superseded user=%s session=%s", user_id, session_id)

        return CheckoutIntent(sessionId=session_id, checkoutUrl=url)
