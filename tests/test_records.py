from datetime import datetime, timezone

from subsync.billing.records import (
    Snapshot,
    SubscriptionRecord,
    merge,
    pending_fields,
    project,
    snapshot_from_subscription,
    to_epoch_seconds,
)

PERIOD = datetime(2030, 3, 1, tzinfo=timezone.utc)


def test_project_absent_snapshot_is_inactive():
    candidate = project(None)
    assert candidate["status"] == "inactive"
    assert candidate["remoteSubscriptionId"] is None
    assert candidate["currentPeriodEnd"] is None
    assert candidate["pendingCheckoutSessionId"] is None


def test_project_active_and_canceling():
    active = project(Snapshot(id="sub_1", currentPeriodEnd=PERIOD))
    assert active["status"] == "active"
    assert active["remoteSubscriptionId"] == "sub_1"
    assert active["cancelAtPeriodEnd"] is False

    canceling = project(Snapshot(id="sub_1", currentPeriodEnd=PERIOD, cancelAtPeriodEnd=True))
    assert canceling["status"] == "canceling"
    assert canceling["cancelAtPeriodEnd"] is True
    assert canceling["currentPeriodEnd"] == PERIOD


def test_merge_derives_tier_and_watermark():
    current = SubscriptionRecord(userId="u1")
    merged = merge(current, project(Snapshot(id="sub_1", currentPeriodEnd=PERIOD)), 1234)
    assert merged.tier == "pro"
    assert merged.active is True
    assert merged.lastAppliedEventTimestamp == 1234

    downgraded = merge(merged, project(None), 2000)
    assert downgraded.tier == "basic"
    assert downgraded.remoteSubscriptionId is None
    assert downgraded.currentPeriodEnd is None


def test_merge_ignores_supplied_tier():
    merged = merge(SubscriptionRecord(userId="u1"), {"status": "inactive", "tier": "pro"}, 1)
    assert merged.tier == "basic"


def test_pending_keeps_session_and_basic_tier():
    merged = merge(SubscriptionRecord(userId="u1"), pending_fields("cs_1"), 10)
    assert merged.status == "pending"
    assert merged.tier == "basic"
    assert merged.pendingCheckoutSessionId == "cs_1"

    activated = merge(merged, project(Snapshot(id="sub_1")), 20)
    assert activated.pendingCheckoutSessionId is None


def test_record_document_roundtrip_drops_user_and_timestamp():
    record = merge(SubscriptionRecord(userId="u1"), project(Snapshot(id="sub_1", currentPeriodEnd=PERIOD)), 5)
    document = record.to_document()
    assert "userId" not in document
    assert "lastUpdated" not in document

    restored = SubscriptionRecord.from_document("u1", document)
    assert restored == record


def test_from_document_missing_or_legacy():
    assert SubscriptionRecord.from_document("u1", None).status == "none"

    legacy = SubscriptionRecord.from_document("u1", {"status": "trialing", "tier": "basic"})
    assert legacy.status == "active"
    assert legacy.tier == "pro"

    unknown = SubscriptionRecord.from_document("u1", {"status": "past_due", "tier": "pro"})
    assert unknown.status == "none"
    assert unknown.tier == "basic"


def test_snapshot_from_subscription_payload():
    snapshot = snapshot_from_subscription(
        {
            "id": "sub_9",
            "customer": "cus_9",
            "status": "trialing",
            "cancel_at_period_end": True,
            "current_period_end": 1_900_000_000,
            "metadata": {"firebaseUID": "u9"},
        }
    )
    assert snapshot.id == "sub_9"
    assert snapshot.customerId == "cus_9"
    assert snapshot.providerStatus == "trialing"
    assert snapshot.cancelAtPeriodEnd is True
    assert to_epoch_seconds(snapshot.currentPeriodEnd) == 1_900_000_000
    assert snapshot.metadata == {"firebaseUID": "u9"}


def test_snapshot_period_end_from_items():
    snapshot = snapshot_from_subscription(
        {
            "id": "sub_9",
            "customer": {"id": "cus_9"},
            "status": "active",
            "items": {"data": [{"current_period_end": 1_800_000_000}]},
        }
    )
    assert snapshot.customerId == "cus_9"
    assert to_epoch_seconds(snapshot.currentPeriodEnd) == 1_800_000_000
