"""API routers."""

from . import health
from . import provider_events
from . import subscriptions

__all__ = ['health', 'provider_events', 'subscriptions']
