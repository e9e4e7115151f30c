from __future__ import annotations

import hashlib
import hmac
import json
import os
import tempfile
import threading
import time
from collections.abc import Generator
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SECURITY_LOG_DIR", tempfile.mkdtemp(prefix="subsync-security-"))

import pytest
from fastapi.testclient import TestClient

from subsync import dependencies
from subsync.billing.checkout import CheckoutIntentTracker
from subsync.billing.engine import ReconciliationEngine
from subsync.billing.events import EventIngestionGateway, EventProcessor
from subsync.billing.records import Snapshot, SubscriptionRecord
from subsync.errors import UpstreamError
from subsync.main import app
from subsync.middleware.rate_limit import limiter

WEBHOOK_SECRET = "whsec_test_secret"
PERIOD_END = 1_900_000_000


class FakeStore:
    """In-memory stand-in for FirestoreSubscriptionStore."""

    def __init__(self) -> None:
        self.users: set[str] = set()
        self.records: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.writes = 0
        self._lock = threading.Lock()

    def add_user(self, user_id: str) -> None:
        self.users.add(user_id)

    def user_exists(self, user_id: str) -> bool:
        self.calls.append("user_exists")
        return user_id in self.users

    def get_record(self, user_id: str) -> SubscriptionRecord:
        self.calls.append("get_record")
        return SubscriptionRecord.from_document(user_id, self.records.get(user_id))

    def update_record(self, user_id, mutate):
        self.calls.append("update_record")
        with self._lock:
            current = SubscriptionRecord.from_document(user_id, self.records.get(user_id))
            updated = mutate(current)
            if updated is not None:
                document = updated.to_document()
                document["lastUpdated"] = datetime.now(timezone.utc)
                self.records[user_id] = document
                self.users.add(user_id)
                self.writes += 1
            return current, updated

    def record_failure(self, *, event_id, event_type, kind, payload, error) -> None:
        self.calls.append("record_failure")
        existing = self.failures.get(event_id, {"attempts": 0})
        existing.update(
            {
                "eventId": event_id,
                "eventType": event_type,
                "kind": kind,
                "payload": json.loads(json.dumps(payload)),
                "error": error,
                "status": "open",
            }
        )
        self.failures[event_id] = existing

    def list_open_failures(self, limit: int = 50) -> List[Dict[str, Any]]:
        self.calls.append("list_open_failures")
        open_failures = [dict(f) for f in self.failures.values() if f["status"] == "open"]
        return open_failures[:limit]

    def resolve_failure(self, event_id: str) -> None:
        self.calls.append("resolve_failure")
        self.failures[event_id]["status"] = "resolved"

    def note_failed_attempt(self, event_id: str, *, error: str, abandoned: bool) -> None:
        self.calls.append("note_failed_attempt")
        failure = self.failures[event_id]
        failure["attempts"] = int(failure.get("attempts") or 0) + 1
        failure["error"] = error
        failure["status"] = "abandoned" if abandoned else "open"

    def ping(self) -> None:
        self.calls.append("ping")

    def record(self, user_id: str) -> SubscriptionRecord:
        return SubscriptionRecord.from_document(user_id, self.records.get(user_id))


class FakeGateway:
    """In-memory stand-in for StripeGateway."""

    def __init__(self) -> None:
        self.customers: Dict[str, Dict[str, Optional[str]]] = {}
        self.active: Dict[str, Snapshot] = {}
        self.session_bindings: Dict[str, str] = {}
        self.calls: List[str] = []
        self.fail = False
        self._sessions = 0

    def add_customer(self, customer_id: str, *, user_id: Optional[str] = None, email: Optional[str] = None) -> None:
        self.customers[customer_id] = {"userId": user_id, "email": email}

    def add_active(self, customer_id: str, subscription_id: str = "sub_x", *, cancel: bool = False) -> Snapshot:
        snapshot = Snapshot(
            id=subscription_id,
            customerId=customer_id,
            currentPeriodEnd=datetime.fromtimestamp(PERIOD_END, tz=timezone.utc),
            cancelAtPeriodEnd=cancel,
        )
        self.active[customer_id] = snapshot
        return snapshot

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise UpstreamError("Billing provider request failed", service="stripe")

    def resolve_customer(self, user_id, contact_identifier=None):
        self._call("resolve_customer")
        for customer_id, info in self.customers.items():
            if user_id and info["userId"] == user_id:
                return customer_id
        for customer_id, info in self.customers.items():
            if contact_identifier and info["email"] == contact_identifier:
                return customer_id
        return None

    def find_or_create_customer(self, user_id, email):
        self._call("find_or_create_customer")
        customer_id = self.resolve_customer(user_id)
        if customer_id:
            return customer_id
        customer_id = f"cus_{len(self.customers) + 1}"
        self.add_customer(customer_id, user_id=user_id, email=email)
        return customer_id

    def customer_user_id(self, customer_id):
        self._call("customer_user_id")
        return (self.customers.get(customer_id) or {}).get("userId")

    def fetch_active(self, customer_id):
        self._call("fetch_active")
        return self.active.get(customer_id)

    def cancel_at_period_end(self, subscription_id):
        self._call("cancel_at_period_end")
        for customer_id, snapshot in self.active.items():
            if snapshot.id == subscription_id:
                updated = snapshot.model_copy(update={"cancelAtPeriodEnd": True})
                self.active[customer_id] = updated
                return updated
        raise UpstreamError("No such subscription", service="stripe")

    def create_checkout_session(self, *, customer_id, user_id, price_id):
        self._call("create_checkout_session")
        self._sessions += 1
        session_id = f"cs_test_{self._sessions}"
        self.last_price_id = price_id
        return session_id, f"https://checkout.stripe.com/c/pay/{session_id}"

    def session_user_id_for_subscription(self, subscription_id):
        self._call("session_user_id_for_subscription")
        return self.session_bindings.get(subscription_id)

    def ping(self):
        self._call("ping")


class Clock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def subscription_event(
    event_type: str,
    *,
    event_id: str,
    created: int,
    sub_id: str = "sub_x",
    status: str = "active",
    cancel_at_period_end: bool = False,
    metadata: Optional[Dict[str, str]] = None,
    customer: str = "cus_1",
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {
            "object": {
                "id": sub_id,
                "object": "subscription",
                "customer": customer,
                "status": status,
                "cancel_at_period_end": cancel_at_period_end,
                "current_period_end": PERIOD_END,
                "metadata": {"firebaseUID": "user_1"} if metadata is None else metadata,
            }
        },
    }


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(store, gateway, clock) -> ReconciliationEngine:
    return ReconciliationEngine(store, gateway, clock=clock, pending_ttl_seconds=3600)


@pytest.fixture
def processor(engine, gateway, store) -> EventProcessor:
    return EventProcessor(engine, gateway, store)


@pytest.fixture
def tracker(engine, gateway) -> CheckoutIntentTracker:
    return CheckoutIntentTracker(engine, gateway)


@pytest.fixture
def client(monkeypatch, store, gateway, engine, tracker, processor) -> Generator[TestClient, None, None]:
    monkeypatch.setattr("subsync.main.init_services", lambda: None)
    limiter.enabled = False

    app.dependency_overrides[dependencies.get_engine] = lambda: engine
    app.dependency_overrides[dependencies.get_checkout_tracker] = lambda: tracker
    app.dependency_overrides[dependencies.get_event_processor] = lambda: processor
    app.dependency_overrides[dependencies.get_event_gateway] = lambda: EventIngestionGateway(WEBHOOK_SECRET)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
