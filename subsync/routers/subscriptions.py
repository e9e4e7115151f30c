"""Subscription router - checkout intents, status checks, cancellation.

Endpoints:
    POST /checkout-intents     - Start a Stripe checkout for an offerable plan
    POST /subscription-status  - Reconcile with Stripe and return the record
    POST /subscription-cancel  - Cancel at period end

Handlers are synchronous: FastAPI runs them in its thread pool, one worker per
request, since every call blocks on Stripe or Firestore.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from ..billing.checkout import CheckoutIntentTracker
from ..billing.engine import ReconciliationEngine
from ..billing.records import to_epoch_seconds
from ..dependencies import get_checkout_tracker, get_engine
from ..errors import ValidationError
from ..middleware.rate_limit import rate_limit_status, rate_limit_write
from ..models import (
    CheckoutIntentRequest,
    CheckoutIntentResponse,
    ErrorResponse,
    SubscriptionCancelRequest,
    SubscriptionCancelResponse,
    SubscriptionStatusRequest,
    SubscriptionStatusResponse,
)

router = APIRouter()
logger = logging.getLogger("subsync.subscriptions")


@router.post(
    "/checkout-intents",
    status_code=201,
    response_model=CheckoutIntentResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
@rate_limit_write
def create_checkout_intent(
    request: Request,
    payload: CheckoutIntentRequest,
    tracker: CheckoutIntentTracker = Depends(get_checkout_tracker),
) -> CheckoutIntentResponse:
    intent = tracker.create_intent(payload.userId, payload.contactIdentifier, payload.planId)
    return CheckoutIntentResponse(checkoutUrl=intent.checkoutUrl, sessionId=intent.sessionId)


@router.post(
    "/subscription-status",
    response_model=SubscriptionStatusResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
@rate_limit_status
def check_subscription_status(
    request: Request,
    payload: SubscriptionStatusRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> SubscriptionStatusResponse:
    logger.info("Checking subscription status for user %s", payload.userId)
    record = engine.sync_from_provider(payload.userId)
    return SubscriptionStatusResponse(
        active=record.active,
        status=record.status,
        tier=record.tier,
        currentPeriodEnd=to_epoch_seconds(record.currentPeriodEnd),
        cancelAtPeriodEnd=record.cancelAtPeriodEnd,
        subscriptionId=record.remoteSubscriptionId,
    )


@router.post(
    "/subscription-cancel",
    response_model=SubscriptionCancelResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
@rate_limit_write
def cancel_subscription(
    request: Request,
    payload: SubscriptionCancelRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> SubscriptionCancelResponse:
    if not payload.userId and not payload.contactIdentifier:
        raise ValidationError(
            "userId or contactIdentifier is required",
            error="missing_field",
            details={"required": ["userId"]},
        )

    logger.info("Canceling subscription for user %s", payload.userId or "<by contact>")
    snapshot, _ = engine.cancel_subscription(payload.userId, payload.contactIdentifier)
    return SubscriptionCancelResponse(
        subscriptionId=snapshot.id,
        currentPeriodEnd=to_epoch_seconds(snapshot.currentPeriodEnd),
        cancelAtPeriodEnd=snapshot.cancelAtPeriodEnd,
    )
