#!/usr/bin/env python3
"""Billing event retry worker.

Polls Firestore billingEventFailures for open entries (failed, deferred or
unattributable provider events) and replays them through the same event
processor the webhook uses. Replays are safe: the reconciliation engine
rejects anything older than the persisted watermark.

Usage:
    python scripts/retry_billing_events.py --serviceAccount /path/to/sa.json
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import time
from pathlib import Path

from firebase_admin import credentials, firestore as admin_firestore, initialize_app

from subsync.billing.engine import ReconciliationEngine
from subsync.billing.events import EventProcessor
from subsync.billing.provider import STRIPE_SECRET_KEY, StripeGateway
from subsync.billing.retry import MAX_EVENT_ATTEMPTS, retry_failed_events
from subsync.billing.store import FirestoreSubscriptionStore

WORKER_ID = f"billing-retry-{socket.gethostname()}-{os.getpid()}"

POLL_SECONDS = int(os.environ.get("BILLING_RETRY_POLL_SECONDS", "60"))
BATCH_SIZE = int(os.environ.get("BILLING_RETRY_BATCH_SIZE", "50"))

logger = logging.getLogger("billing_retry_worker")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def build_processor(sa_path: str) -> tuple[FirestoreSubscriptionStore, EventProcessor]:
    initialize_app(credentials.Certificate(sa_path))
    store = FirestoreSubscriptionStore(admin_firestore.client())
    gateway = StripeGateway(STRIPE_SECRET_KEY) if STRIPE_SECRET_KEY else None
    if gateway is None:
        logger.warning("STRIPE_SECRET_KEY not set; events without metadata cannot be attributed")
    return store, EventProcessor(ReconciliationEngine(store, gateway), gateway, store)


def run_worker(sa_path: str, *, poll_seconds: int, batch_size: int, run_once: bool = False) -> None:
    store, processor = build_processor(sa_path)
    logger.info(
        "Billing retry worker started: worker=%s poll=%ss batch=%s maxAttempts=%s",
        WORKER_ID,
        poll_seconds,
        batch_size,
        MAX_EVENT_ATTEMPTS,
    )

    while True:
        try:
            stats = retry_failed_events(store, processor, limit=batch_size)
            if any(stats.values()):
                logger.info(
                    "Retry pass: resolved=%s failed=%s abandoned=%s",
                    stats["resolved"],
                    stats["failed"],
                    stats["abandoned"],
                )
            if run_once:
                return
            time.sleep(poll_seconds)

        except KeyboardInterrupt:
            logger.info("Billing retry worker interrupted, shutting down")
            return
        except Exception:
            logger.exception("Billing retry worker loop failure")
            if run_once:
                raise
            time.sleep(poll_seconds)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Billing event retry worker")
    parser.add_argument(
        "--serviceAccount",
        default=os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", ""),
        help="Path to Firebase service account JSON",
    )
    parser.add_argument(
        "--poll-seconds",
        type=int,
        default=POLL_SECONDS,
        help="Polling interval in seconds",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=BATCH_SIZE,
        help="Open failures replayed per pass",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single retry pass and exit",
    )
    return parser.parse_args()


def main() -> int:
    configure_logging()
    args = parse_args()

    sa_path = str(args.serviceAccount or "").strip()
    if not sa_path:
        logger.error("--serviceAccount (or GOOGLE_APPLICATION_CREDENTIALS) is required")
        return 2
    if not Path(sa_path).exists():
        logger.error("Service account path does not exist: %s", sa_path)
        return 2

    run_worker(
        sa_path,
        poll_seconds=max(args.poll_seconds, 5),
        batch_size=max(args.batch_size, 1),
        run_once=bool(args.once),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
