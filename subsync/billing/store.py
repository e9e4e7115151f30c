"""Firestore-backed persistence for subscription records and failed events.

Records live on ``users/{userId}`` under the ``subscription`` map. Every
record mutation is a transactional read-modify-write so that two writers
carrying different watermarks cannot lose each other's update.
"""

from __future__ import annotations

import functools
import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from ..errors import UpstreamError
from .records import SubscriptionRecord

logger = logging.getLogger("subsync.store")

USERS_COLLECTION = "users"
RECORD_FIELD = "subscription"
FAILURES_COLLECTION = "billingEventFailures"

STORE_TIMEOUT_SEC = float(os.environ.get("STORE_TIMEOUT_SEC", "10"))
TRANSACTION_MAX_ATTEMPTS = int(os.environ.get("STORE_TRANSACTION_MAX_ATTEMPTS", "5"))

Mutation = Callable[[SubscriptionRecord], Optional[SubscriptionRecord]]


def _store_call(fn):
    """Surface Firestore failures and timeouts as UpstreamError."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (google_exceptions.GoogleAPIError, google_exceptions.RetryError) as exc:
            logger.error("Firestore call %s failed: %s", fn.__name__, exc)
            raise UpstreamError(
                "Document store request failed",
                service="firestore",
                details={"operation": fn.__name__},
            ) from exc

    return wrapper


class FirestoreSubscriptionStore:
    """Keyed record store over a Firestore client."""

    def __init__(self, db: firestore.Client, *, timeout: float = STORE_TIMEOUT_SEC):
        self._db = db
        self._timeout = timeout

    def _user_ref(self, user_id: str):
        return self._db.collection(USERS_COLLECTION).document(user_id)

    @_store_call
    def user_exists(self, user_id: str) -> bool:
        return self._user_ref(user_id).get(timeout=self._timeout).exists

    @_store_call
    def get_record(self, user_id: str) -> SubscriptionRecord:
        snap = self._user_ref(user_id).get(timeout=self._timeout)
        data = (snap.to_dict() or {}) if snap.exists else {}
        return SubscriptionRecord.from_document(user_id, data.get(RECORD_FIELD))

    @_store_call
    def update_record(
        self, user_id: str, mutate: Mutation
    ) -> Tuple[SubscriptionRecord, Optional[SubscriptionRecord]]:
        """Atomically read the record, let ``mutate`` decide, and write its result.

        ``mutate`` returns the record to persist, or None to leave the document
        untouched. Exceptions raised by ``mutate`` abort the transaction.
        """
        ref = self._user_ref(user_id)
        timeout = self._timeout

        @firestore.transactional
        def read_modify_write(transaction):
            snap = ref.get(transaction=transaction, timeout=timeout)
            data = (snap.to_dict() or {}) if snap.exists else {}
            current = SubscriptionRecord.from_document(user_id, data.get(RECORD_FIELD))
            updated = mutate(current)
            if updated is not None:
                document = updated.to_document()
                document["lastUpdated"] = firestore.SERVER_TIMESTAMP
                transaction.set(ref, {RECORD_FIELD: document}, merge=True)
            return current, updated

        transaction = self._db.transaction(max_attempts=TRANSACTION_MAX_ATTEMPTS)
        return read_modify_write(transaction)

    # -------------------------------------------------------------------------
    # Failed provider events
    # -------------------------------------------------------------------------

    @_store_call
    def record_failure(
        self,
        *,
        event_id: str,
        event_type: str,
        kind: str,
        payload: Dict[str, Any],
        error: str,
    ) -> None:
        ref = self._db.collection(FAILURES_COLLECTION).document(event_id)
        snap = ref.get(timeout=self._timeout)
        update = {
            "eventId": event_id,
            "eventType": event_type,
            "kind": kind,
            "payloadJson": json.dumps(payload, default=str),
            "error": error,
            "status": "open",
            "updatedAt": firestore.SERVER_TIMESTAMP,
        }
        if not snap.exists:
            update["attempts"] = 0
            update["createdAt"] = firestore.SERVER_TIMESTAMP
        ref.set(update, merge=True, timeout=self._timeout)

    @_store_call
    def list_open_failures(self, limit: int = 50) -> List[Dict[str, Any]]:
        query = (
            self._db.collection(FAILURES_COLLECTION)
            .where("status", "==", "open")
            .limit(limit)
        )
        failures = []
        for snap in query.stream(timeout=self._timeout):
            data = snap.to_dict() or {}
            try:
                data["payload"] = json.loads(data.get("payloadJson") or "{}")
            except ValueError:
                data["payload"] = {}
            data.setdefault("eventId", snap.id)
            failures.append(data)
        return failures

    @_store_call
    def resolve_failure(self, event_id: str) -> None:
        self._db.collection(FAILURES_COLLECTION).document(event_id).set(
            {
                "status": "resolved",
                "resolvedAt": firestore.SERVER_TIMESTAMP,
                "updatedAt": firestore.SERVER_TIMESTAMP,
            },
            merge=True,
            timeout=self._timeout,
        )

    @_store_call
    def note_failed_attempt(self, event_id: str, *, error: str, abandoned: bool) -> None:
        self._db.collection(FAILURES_COLLECTION).document(event_id).set(
            {
                "status": "abandoned" if abandoned else "open",
                "error": error,
                "attempts": firestore.Increment(1),
                "updatedAt": firestore.SERVER_TIMESTAMP,
            },
            merge=True,
            timeout=self._timeout,
        )

    @_store_call
    def ping(self) -> None:
        self._db.collection("_health").document("ping").get(timeout=self._timeout)
