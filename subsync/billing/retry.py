"""Replay of provider events whose application failed or was deferred."""

from __future__ import annotations

import logging
import os
from typing import Dict

from ..errors import BillingError
from .events import EventProcessor, ProviderEvent
from .store import FirestoreSubscriptionStore

logger = logging.getLogger("subsync.retry")

MAX_EVENT_ATTEMPTS = int(os.environ.get("MAX_EVENT_ATTEMPTS", "8"))


def retry_failed_events(
    store: FirestoreSubscriptionStore,
    processor: EventProcessor,
    *,
    limit: int = 50,
    max_attempts: int = MAX_EVENT_ATTEMPTS,
) -> Dict[str, int]:
    """Re-run open failures through ``processor``.

    Success (including a stale rejection) resolves the failure. Another
    failure bumps its attempt count; at ``max_attempts`` it is abandoned and
    left for an operator.
    """
    stats = {"resolved": 0, "failed": 0, "abandoned": 0}

    for failure in store.list_open_failures(limit=limit):
        event_id = failure["eventId"]
        payload = failure.get("payload") or {}
        if not payload.get("id"):
            payload["id"] = event_id
        event = ProviderEvent.from_payload(payload)

        try:
            outcome = processor.process(event)
        except BillingError as exc:
            error = exc.message
        except Exception as exc:
            logger.exception("Retry of provider event %s crashed", event_id)
            error = str(exc) or type(exc).__name__
        else:
            store.resolve_failure(event_id)
            stats["resolved"] += 1
            logger.info(
                "Resolved provider event %s applied=%s stale=%s",
                event_id,
                outcome.applied,
                outcome.stale,
            )
            continue

        attempts = int(failure.get("attempts") or 0) + 1
        abandoned = attempts >= max_attempts
        store.note_failed_attempt(event_id, error=error, abandoned=abandoned)
        if abandoned:
            stats["abandoned"] += 1
            logger.error(
                "Abandoned provider event %s type=%s after %s attempts: %s",
                event_id,
                failure.get("eventType"),
                attempts,
                error,
            )
        else:
            stats["failed"] += 1
            logger.warning("Retry %s of provider event %s failed: %s", attempts, event_id, error)

    return stats
