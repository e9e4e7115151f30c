import json
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as google_exceptions

from subsync.billing import store as store_module
from subsync.billing.engine import ReconciliationEngine
from subsync.billing.records import Snapshot, project
from subsync.billing.store import TRANSACTION_MAX_ATTEMPTS, FirestoreSubscriptionStore
from subsync.errors import StaleEventError, UpstreamError

PERSISTED = {
    "status": "active",
    "tier": "pro",
    "remoteSubscriptionId": "sub_1",
    "cancelAtPeriodEnd": False,
    "lastAppliedEventTimestamp": 5000,
}


@pytest.fixture(autouse=True)
def run_transaction_body_directly(monkeypatch):
    # The decorated body receives the transaction; begin/commit belong to the client.
    monkeypatch.setattr(store_module.firestore, "transactional", lambda fn: fn)


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def user_ref(db):
    ref = db.collection.return_value.document.return_value
    snap = MagicMock()
    snap.exists = True
    snap.to_dict.return_value = {"email": "a@example.com", "subscription": dict(PERSISTED)}
    ref.get.return_value = snap
    return ref


@pytest.fixture
def transaction(db):
    return db.transaction.return_value


@pytest.fixture
def firestore_store(db):
    return FirestoreSubscriptionStore(db, timeout=1)


def test_update_writes_merged_record_in_transaction(firestore_store, db, user_ref, transaction):
    engine = ReconciliationEngine(firestore_store)

    record = engine.apply("u1", project(Snapshot(id="sub_1", cancelAtPeriodEnd=True)), 6000, source="test")

    assert record.status == "canceling"
    db.collection.assert_any_call("users")
    db.collection.return_value.document.assert_any_call("u1")
    db.transaction.assert_called_once_with(max_attempts=TRANSACTION_MAX_ATTEMPTS)
    user_ref.get.assert_called_once_with(transaction=transaction, timeout=1)

    transaction.set.assert_called_once()
    args, kwargs = transaction.set.call_args
    assert args[0] is user_ref
    assert kwargs == {"merge": True}
    document = args[1]["subscription"]
    assert document["status"] == "canceling"
    assert document["cancelAtPeriodEnd"] is True
    assert document["lastAppliedEventTimestamp"] == 6000
    assert document["lastUpdated"] is store_module.firestore.SERVER_TIMESTAMP
    assert "userId" not in document


def test_update_with_no_result_writes_nothing(firestore_store, user_ref, transaction):
    before, after = firestore_store.update_record("u1", lambda current: None)

    assert after is None
    assert before.status == "active"
    assert before.lastAppliedEventTimestamp == 5000
    transaction.set.assert_not_called()


def test_stale_update_aborts_without_write(firestore_store, user_ref, transaction):
    engine = ReconciliationEngine(firestore_store)

    with pytest.raises(StaleEventError) as excinfo:
        engine.apply("u1", project(None), 4000, source="test")

    assert excinfo.value.record.status == "active"
    transaction.set.assert_not_called()


def test_missing_document_reads_as_zero_state(firestore_store, user_ref, transaction):
    user_ref.get.return_value.exists = False

    before, after = firestore_store.update_record("u1", lambda current: current)

    assert before.status == "none"
    assert before.lastAppliedEventTimestamp == 0
    transaction.set.assert_called_once()


def test_firestore_error_becomes_upstream_error(firestore_store, user_ref, transaction):
    user_ref.get.side_effect = google_exceptions.ServiceUnavailable("firestore down")

    with pytest.raises(UpstreamError) as excinfo:
        firestore_store.update_record("u1", lambda current: current)

    assert excinfo.value.status_code == 502
    assert excinfo.value.details == {"service": "firestore", "operation": "update_record"}
    transaction.set.assert_not_called()


def test_record_failure_first_write_starts_attempts(firestore_store, db):
    ref = db.collection.return_value.document.return_value
    ref.get.return_value.exists = False

    firestore_store.record_failure(
        event_id="evt_1",
        event_type="customer.subscription.created",
        kind="deferred",
        payload={"id": "evt_1", "created": 1},
        error="processing deadline exceeded",
    )

    db.collection.assert_called_with("billingEventFailures")
    update = ref.set.call_args.args[0]
    assert update["status"] == "open"
    assert update["attempts"] == 0
    assert json.loads(update["payloadJson"]) == {"id": "evt_1", "created": 1}
    assert ref.set.call_args.kwargs == {"merge": True, "timeout": 1}
