"""Reconciliation engine.

``ReconciliationEngine.apply`` is the single code path that writes
subscription fields. The pull path (status checks), the cancel path, the
checkout tracker and provider events all funnel through it, and it rejects any
update whose watermark is older than the one already persisted.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import NotFoundError, StaleEventError, SupersededSubscriptionError, UpstreamError
from .provider import StripeGateway
from .records import PRO_STATUSES, Snapshot, SubscriptionRecord, merge, project
from .store import FirestoreSubscriptionStore

logger = logging.getLogger("subsync.engine")

CHECKOUT_PENDING_TTL_SECONDS = int(os.environ.get("CHECKOUT_PENDING_TTL_SECONDS", "3600"))


def now_ms() -> int:
    return int(time.time() * 1000)


def to_watermark(epoch_ms: int) -> int:
    """Truncate to whole seconds, the resolution of provider event timestamps."""
    return (epoch_ms // 1000) * 1000


class ReconciliationEngine:
    def __init__(
        self,
        store: FirestoreSubscriptionStore,
        gateway: Optional[StripeGateway] = None,
        *,
        clock: Callable[[], int] = now_ms,
        pending_ttl_seconds: int = CHECKOUT_PENDING_TTL_SECONDS,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.pending_ttl_ms = pending_ttl_seconds * 1000

    def apply(
        self,
        user_id: str,
        candidate: Dict[str, Any],
        watermark: int,
        *,
        source: str,
        hold_fresh_pending: bool = False,
        subscription_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Write ``candidate`` unless the persisted watermark is newer.

        Raises StaleEventError (carrying the persisted record) when rejected.
        With ``hold_fresh_pending``, an "inactive" candidate does not overwrite a
        pending checkout younger than the pending TTL.

        ``subscription_id`` names the subscription the candidate describes.
        While the record holds a different paid subscription, only a new
        active subscription may replace it; anything else about the other
        subscription raises SupersededSubscriptionError.
        """
        def decide(current: SubscriptionRecord) -> Optional[SubscriptionRecord]:
            if watermark < current.lastAppliedEventTimestamp:
                raise StaleEventError(current, watermark)
            if (
                subscription_id
                and current.status in PRO_STATUSES
                and current.remoteSubscriptionId
                and current.remoteSubscriptionId != subscription_id
                and candidate.get("status") != "active"
            ):
                raise SupersededSubscriptionError(current, watermark, subscription_id)
            if (
                hold_fresh_pending
                and current.status == "pending"
                and candidate.get("status") == "inactive"
                and watermark - current.lastAppliedEventTimestamp < self.pending_ttl_ms
            ):
                return None
            return merge(current, candidate, watermark)

        try:
            before, after = self.store.update_record(user_id, decide)
        except StaleEventError as exc:
            logger.info(
                "Rejected update user=%s source=%s: %s",
                user_id,
                source,
                exc.message,
            )
            raise

        if after is None:
            logger.debug("Checkout still in flight user=%s source=%s", user_id, source)
            return before

        logger.info(
            "SubscriptionWrite user=%s source=%s status=%s->%s tier=%s watermark=%s",
            user_id,
            source,
            before.status,
            after.status,
            after.tier,
            watermark,
        )
        return after

    def _require_gateway(self) -> StripeGateway:
        if self.gateway is None:
            raise UpstreamError(
                "Billing provider is not configured",
                service="stripe",
                status_code=503,
                details={"required": ["STRIPE_SECRET_KEY"]},
            )
        return self.gateway

    def watermark(self) -> int:
        """Current time at provider event resolution."""
        return to_watermark(self.clock())

    def sync_from_provider(self, user_id: str) -> SubscriptionRecord:
        """Pull the provider's current view for ``user_id`` and reconcile it."""
        gateway = self._require_gateway()
        if not self.store.user_exists(user_id):
            raise NotFoundError("User not found", details={"userId": user_id})

        # Taken before the fetch: the snapshot is at least this recent.
        watermark = self.watermark()
        snapshot: Optional[Snapshot] = None
        customer_id = gateway.resolve_customer(user_id)
        if customer_id:
            snapshot = gateway.fetch_active(customer_id)

        try:
            return self.apply(
                user_id,
                project(snapshot),
                watermark,
                source="pull",
                hold_fresh_pending=True,
            )
        except StaleEventError as exc:
            return exc.record

    def cancel_subscription(
        self,
        user_id: Optional[str] = None,
        contact_identifier: Optional[str] = None,
    ) -> Tuple[Snapshot, Optional[SubscriptionRecord]]:
        """Set cancel-at-period-end on the user's active subscription.

        Returns the provider snapshot and the reconciled record (None when the
        customer could only be matched by contact identifier and carries no
        user binding).
        """
        gateway = self._require_gateway()
        customer_id = gateway.resolve_customer(user_id, contact_identifier)
        if not customer_id:
            raise NotFoundError("Customer not found")

        active = gateway.fetch_active(customer_id)
        if active is None:
            raise NotFoundError("No active subscription found")

        watermark = self.watermark()
        snapshot = gateway.cancel_at_period_end(active.id)

        bound_user = user_id or gateway.customer_user_id(customer_id)
        if not bound_user:
            logger.warning(
                "Canceled subscription %s for an unbound customer; record left to provider events",
                snapshot.id,
            )
            return snapshot, None

        try:
            record = self.apply(bound_user, project(snapshot), watermark, source="cancel")
        except StaleEventError as exc:
            record = exc.record
        return snapshot, record
