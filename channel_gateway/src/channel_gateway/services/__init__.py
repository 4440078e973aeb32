"""Service layer for the gateway.

This package holds the key/value store, the in-process channel event bus
and the subscription registry used by the connection manager.
"""

from .event_bus import ChannelEventBus  # noqa: F401
from .store import KeyValueStore  # noqa: F401
from .subscriptions import SubscriptionRegistry  # noqa: F401
