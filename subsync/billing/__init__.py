"""Subscription reconciliation core: records, store, provider, engine, events."""

from .checkout import CheckoutIntentTracker, PLAN_PRICE_IDS
from .engine import ReconciliationEngine
from .events import EventIngestionGateway, EventKind, EventProcessor, ProviderEvent
from .records import Snapshot, SubscriptionRecord, project
from .retry import retry_failed_events

__all__ = [
    'CheckoutIntentTracker',
    'PLAN_PRICE_IDS',
    'ReconciliationEngine',
    'EventIngestionGateway',
    'EventKind',
    'EventProcessor',
    'ProviderEvent',
    'Snapshot',
    'SubscriptionRecord',
    'project',
    'retry_failed_events',
]
