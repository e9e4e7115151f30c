"""Subscription record shape and the snapshot -> record projection.

The record lives as the ``subscription`` map on ``users/{userId}``. Everything
in this module is pure; the only writer of records is the reconciliation
engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

SubscriptionStatus = Literal["none", "pending", "active", "canceling", "inactive"]
Tier = Literal["basic", "pro"]

PRO_STATUSES = ("active", "canceling")

# Stripe subscription statuses that still grant access.
BILLABLE_PROVIDER_STATUSES = ("active", "trialing")
# First invoice not yet paid; the checkout is still in flight.
IN_FLIGHT_PROVIDER_STATUSES = ("incomplete",)

CANDIDATE_FIELDS = (
    "status",
    "remoteSubscriptionId",
    "currentPeriodEnd",
    "cancelAtPeriodEnd",
    "pendingCheckoutSessionId",
)


class Snapshot(BaseModel):
    """Provider's view of one subscription at a point in time."""

    id: str
    customerId: Optional[str] = None
    providerStatus: str = "active"
    currentPeriodEnd: Optional[datetime] = None
    cancelAtPeriodEnd: bool = False
    metadata: Dict[str, str] = {}


class SubscriptionRecord(BaseModel):
    userId: str
    status: SubscriptionStatus = "none"
    tier: Tier = "basic"
    remoteSubscriptionId: Optional[str] = None
    currentPeriodEnd: Optional[datetime] = None
    cancelAtPeriodEnd: bool = False
    pendingCheckoutSessionId: Optional[str] = None
    lastAppliedEventTimestamp: int = 0
    lastUpdated: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.status in PRO_STATUSES

    def to_document(self) -> Dict[str, Any]:
        """Firestore map for ``users/{userId}.subscription`` (without lastUpdated)."""
        data = self.model_dump(exclude={"lastUpdated"})
        data.pop("userId", None)
        return data

    @classmethod
    def from_document(cls, user_id: str, data: Optional[Dict[str, Any]]) -> "SubscriptionRecord":
        """Build a record from a stored map; absent or malformed maps give the zero state."""
        if not isinstance(data, dict):
            return cls(userId=user_id)
        status = data.get("status")
        if status not in ("none", "pending", "active", "canceling", "inactive"):
            # Maps written by older clients may carry a raw provider status.
            status = "active" if status in BILLABLE_PROVIDER_STATUSES else "none"
        record = cls(
            userId=user_id,
            status=status,
            remoteSubscriptionId=data.get("remoteSubscriptionId"),
            currentPeriodEnd=_as_datetime(data.get("currentPeriodEnd")),
            cancelAtPeriodEnd=bool(data.get("cancelAtPeriodEnd", False)),
            pendingCheckoutSessionId=data.get("pendingCheckoutSessionId"),
            lastAppliedEventTimestamp=int(data.get("lastAppliedEventTimestamp") or 0),
            lastUpdated=_as_datetime(data.get("lastUpdated")),
        )
        record.tier = tier_for(record.status)
        return record


def tier_for(status: str) -> Tier:
    return "pro" if status in PRO_STATUSES else "basic"


def project(snapshot: Optional[Snapshot]) -> Dict[str, Any]:
    """Map a snapshot (or its absence) to candidate record fields."""
    if snapshot is None:
        return {
            "status": "inactive",
            "remoteSubscriptionId": None,
            "currentPeriodEnd": None,
            "cancelAtPeriodEnd": False,
            "pendingCheckoutSessionId": None,
        }
    if snapshot.cancelAtPeriodEnd:
        return {
            "status": "canceling",
            "remoteSubscriptionId": snapshot.id,
            "currentPeriodEnd": snapshot.currentPeriodEnd,
            "cancelAtPeriodEnd": True,
            "pendingCheckoutSessionId": None,
        }
    return {
        "status": "active",
        "remoteSubscriptionId": snapshot.id,
        "currentPeriodEnd": snapshot.currentPeriodEnd,
        "cancelAtPeriodEnd": False,
        "pendingCheckoutSessionId": None,
    }


def pending_fields(session_id: str) -> Dict[str, Any]:
    return {
        "status": "pending",
        "remoteSubscriptionId": None,
        "currentPeriodEnd": None,
        "cancelAtPeriodEnd": False,
        "pendingCheckoutSessionId": session_id,
    }


def merge(current: SubscriptionRecord, candidate: Dict[str, Any], watermark: int) -> SubscriptionRecord:
    """Overlay candidate fields on ``current``; tier is re-derived, never copied."""
    updates = {key: candidate[key] for key in CANDIDATE_FIELDS if key in candidate}
    merged = current.model_copy(update=updates)
    merged.tier = tier_for(merged.status)
    merged.lastAppliedEventTimestamp = watermark
    if merged.status not in PRO_STATUSES:
        merged.remoteSubscriptionId = None
        merged.currentPeriodEnd = None
    if merged.status != "canceling":
        merged.cancelAtPeriodEnd = False
    if merged.status != "pending":
        merged.pendingCheckoutSessionId = None
    return merged


def snapshot_from_subscription(obj: Any) -> Snapshot:
    """Build a snapshot from a Stripe subscription object or its JSON dict."""
    metadata = _get(obj, "metadata") or {}
    customer = _get(obj, "customer")
    if not isinstance(customer, str):
        customer = _get(customer, "id")
    return Snapshot(
        id=str(_get(obj, "id")),
        customerId=customer,
        providerStatus=str(_get(obj, "status") or "active"),
        currentPeriodEnd=_period_end(obj),
        cancelAtPeriodEnd=bool(_get(obj, "cancel_at_period_end")),
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
    )


def _period_end(obj: Any) -> Optional[datetime]:
    seconds = _get(obj, "current_period_end")
    if seconds is None:
        # Newer API versions carry the period on the subscription items.
        items = _get(_get(obj, "items"), "data") or []
        if items:
            seconds = _get(items[0], "current_period_end")
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, key, None)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def to_epoch_seconds(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp())
