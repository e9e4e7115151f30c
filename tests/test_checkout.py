import pytest

from subsync.billing.checkout import PLAN_PRICE_IDS, resolve_price_id
from subsync.billing.records import Snapshot, project
from subsync.errors import UpstreamError, ValidationError


def test_resolve_price_id_by_key_or_listed_price():
    assert resolve_price_id("monthly") == PLAN_PRICE_IDS["monthly"]
    assert resolve_price_id(PLAN_PRICE_IDS["annual"]) == PLAN_PRICE_IDS["annual"]


def test_resolve_price_id_rejects_unknown_plan():
    with pytest.raises(ValidationError) as excinfo:
        resolve_price_id("price_attacker_supplied")
    assert excinfo.value.error == "invalid_plan"
    assert excinfo.value.details["validPlanIds"] == sorted(PLAN_PRICE_IDS)


def test_create_intent_marks_record_pending(tracker, store, gateway, clock):
    intent = tracker.create_intent("u1", "a@example.com", "monthly")

    assert intent.sessionId == "cs_test_1"
    assert intent.checkoutUrl.endswith("cs_test_1")
    assert gateway.last_price_id == PLAN_PRICE_IDS["monthly"]

    record = store.record("u1")
    assert record.status == "pending"
    assert record.tier == "basic"
    assert record.pendingCheckoutSessionId == "cs_test_1"
    assert record.lastAppliedEventTimestamp == clock.now


def test_create_intent_reuses_bound_customer(tracker, gateway):
    gateway.add_customer("cus_existing", user_id="u1", email="a@example.com")
    tracker.create_intent("u1", "a@example.com", "annual")
    assert list(gateway.customers) == ["cus_existing"]


def test_invalid_plan_touches_nothing(tracker, store, gateway):
    with pytest.raises(ValidationError):
        tracker.create_intent("u1", "a@example.com", "lifetime")
    assert gateway.calls == []
    assert store.writes == 0


def test_provider_failure_leaves_record_untouched(tracker, store, gateway):
    gateway.fail = True
    with pytest.raises(UpstreamError):
        tracker.create_intent("u1", "a@example.com", "monthly")
    assert store.writes == 0


def test_newer_event_wins_over_pending_marker(tracker, engine, store, clock):
    engine.apply("u1", project(Snapshot(id="sub_1")), clock.now + 1000, source="event")

    intent = tracker.create_intent("u1", "a@example.com", "monthly")

    assert intent.sessionId
    assert store.record("u1").status == "active"
