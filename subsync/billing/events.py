"""Provider event ingestion: signature verification, classification, dispatch.

``EventIngestionGateway`` turns a raw signed webhook body into a
``ProviderEvent`` or raises ``AuthenticityError``. ``EventProcessor`` maps each
``EventKind`` to exactly one handler and pushes the result through the
reconciliation engine. Failures are recorded in ``billingEventFailures`` so
the retry worker can replay them.
"""

from __future__ import annotations

import enum
import json
import logging
import os
from typing import Any, Callable, Dict, Optional

import stripe
from pydantic import BaseModel

from ..errors import (
    AuthenticityError,
    BillingError,
    StaleEventError,
    UnattributableEventError,
    ValidationError,
)
from .engine import ReconciliationEngine
from .provider import StripeGateway, user_id_from_metadata
from .records import (
    BILLABLE_PROVIDER_STATUSES,
    IN_FLIGHT_PROVIDER_STATUSES,
    Snapshot,
    project,
    snapshot_from_subscription,
)
from .store import FirestoreSubscriptionStore

logger = logging.getLogger("subsync.events")

STRIPE_WEBHOOK_SECRET = str(os.environ.get("STRIPE_WEBHOOK_SECRET", "")).strip()
WEBHOOK_TOLERANCE_SEC = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SEC", "300"))


class EventKind(str, enum.Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNHANDLED = "unhandled"


_KIND_BY_TYPE = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}


def classify(event_type: str) -> EventKind:
    return _KIND_BY_TYPE.get(event_type, EventKind.UNHANDLED)


class ProviderEvent(BaseModel):
    id: str
    type: str
    kind: EventKind
    created: int
    resource: Dict[str, Any]
    payload: Dict[str, Any]

    @property
    def watermark(self) -> int:
        return self.created * 1000

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProviderEvent":
        event_type = str(payload.get("type") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        obj = data.get("object") if isinstance(data.get("object"), dict) else {}
        return cls(
            id=str(payload.get("id") or ""),
            type=event_type,
            kind=classify(event_type),
            created=int(payload.get("created") or 0),
            resource=obj,
            payload=payload,
        )


class ProcessingOutcome(BaseModel):
    eventId: str
    type: str
    kind: EventKind
    applied: bool = False
    stale: bool = False
    deferred: bool = False
    userId: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class EventIngestionGateway:
    def __init__(self, secret: str = STRIPE_WEBHOOK_SECRET, *, tolerance: int = WEBHOOK_TOLERANCE_SEC):
        self.secret = secret
        self.tolerance = tolerance

    def ingest(self, raw_payload: bytes, signature_header: Optional[str]) -> ProviderEvent:
        if not self.secret:
            raise AuthenticityError("Webhook secret is not configured", error="webhook_not_configured")
        if not signature_header:
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            body = raw_payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature_header, self.secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise AuthenticityError("Webhook signature verification failed") from exc

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Event body is not JSON", error="invalid_payload") from exc
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValidationError("Event body has no id", error="invalid_payload")

        event = ProviderEvent.from_payload(payload)
        logger.info("Verified provider event id=%s type=%s kind=%s", event.id, event.type, event.kind.value)
        return event


class EventProcessor:
    def __init__(
        self,
        engine: ReconciliationEngine,
        gateway: Optional[StripeGateway],
        store: FirestoreSubscriptionStore,
    ):
        self.engine = engine
        self.gateway = gateway
        self.store = store
        self._handlers: Dict[EventKind, Callable[[ProviderEvent], ProcessingOutcome]] = {
            EventKind.SUBSCRIPTION_CREATED: self._on_subscription_change,
            EventKind.SUBSCRIPTION_UPDATED: self._on_subscription_change,
            EventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            EventKind.UNHANDLED: self._on_unhandled,
        }
        missing = set(EventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in missing)}")

    def process(self, event: ProviderEvent) -> ProcessingOutcome:
        """Apply one event. Errors propagate to the caller."""
        return self._handlers[event.kind](event)

    def handle(self, event: ProviderEvent) -> ProcessingOutcome:
        """Apply one event; record any failure instead of raising it.

        Only a failure to record the failure escapes, so that the provider
        redelivers rather than the event being lost.
        """
        try:
            return self.process(event)
        except UnattributableEventError as exc:
            logger.error("Unattributable provider event id=%s type=%s", event.id, event.type)
            self.record_failure(event, kind="unattributable", error=exc.message)
            return self._outcome(event, error=exc.error)
        except BillingError as exc:
            logger.error("Provider event %s failed: %s", event.id, exc.message)
            self.record_failure(event, kind="processing_error", error=exc.message)
            return self._outcome(event, error=exc.error)
        except Exception as exc:
            logger.exception("Unexpected failure processing provider event %s", event.id)
            self.record_failure(event, kind="processing_error", error=str(exc) or type(exc).__name__)
            return self._outcome(event, error="processing_error")

    def record_failure(self, event: ProviderEvent, *, kind: str, error: str) -> None:
        self.store.record_failure(
            event_id=event.id,
            event_type=event.type,
            kind=kind,
            payload=event.payload,
            error=error,
        )

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_subscription_change(self, event: ProviderEvent) -> ProcessingOutcome:
        snapshot = snapshot_from_subscription(event.resource)
        if snapshot.providerStatus in IN_FLIGHT_PROVIDER_STATUSES:
            logger.info("Subscription %s still %s; waiting for payment", snapshot.id, snapshot.providerStatus)
            return self._outcome(event)
        present = snapshot if snapshot.providerStatus in BILLABLE_PROVIDER_STATUSES else None
        return self._apply(event, snapshot, project(present))

    def _on_subscription_deleted(self, event: ProviderEvent) -> ProcessingOutcome:
        snapshot = snapshot_from_subscription(event.resource)
        return self._apply(event, snapshot, project(None))

    def _on_unhandled(self, event: ProviderEvent) -> ProcessingOutcome:
        logger.info("Unhandled event type: %s", event.type)
        return self._outcome(event)

    def _apply(self, event: ProviderEvent, snapshot: Snapshot, candidate: Dict[str, Any]) -> ProcessingOutcome:
        user_id = self.attribute(snapshot)
        try:
            record = self.engine.apply(
                user_id,
                candidate,
                event.watermark,
                source=f"event:{event.type}",
                subscription_id=snapshot.id,
            )
        except StaleEventError as exc:
            return self._outcome(event, stale=True, user_id=user_id, status=exc.record.status)
        return self._outcome(event, applied=True, user_id=user_id, status=record.status)

    def attribute(self, snapshot: Snapshot) -> str:
        """Local user id for a subscription snapshot.

        Metadata first; then the checkout session that created the
        subscription; then the customer's own metadata.
        """
        user_id = user_id_from_metadata(snapshot.metadata)
        if user_id:
            return user_id

        if self.gateway is not None:
            user_id = self.gateway.session_user_id_for_subscription(snapshot.id)
            if user_id:
                logger.info("Recovered user binding for %s from checkout session", snapshot.id)
                return user_id
            if snapshot.customerId:
                user_id = self.gateway.customer_user_id(snapshot.customerId)
                if user_id:
                    logger.info("Recovered user binding for %s from customer metadata", snapshot.id)
                    return user_id

        raise UnattributableEventError(
            f"No user binding for subscription {snapshot.id}",
            details={"subscriptionId": snapshot.id, "customerId": snapshot.customerId},
        )

    @staticmethod
    def _outcome(
        event: ProviderEvent,
        *,
        applied: bool = False,
        stale: bool = False,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ProcessingOutcome:
        return ProcessingOutcome(
            eventId=event.id,
            type=event.type,
            kind=event.kind,
            applied=applied,
            stale=stale,
            userId=user_id,
            status=status,
            error=error,
        )
