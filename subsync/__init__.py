"""Subscription Sync API.

FastAPI service that reconciles Stripe subscription state into a per-user
Firestore record:
- Checkout intents bound to the local user id
- Pull-based status checks against Stripe
- Signed Stripe webhook ingestion
- Watermark-ordered, transactional record writes
"""
