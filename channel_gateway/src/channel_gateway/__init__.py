"""
Channel gateway package.

The gateway keeps one payment-channel client connected on behalf of an
outer request layer and forwards channel events to subscribers' HTTP
callbacks.  :class:`ChannelGateway` is the facade the request layer
calls; :class:`ConnectionManager` owns the client lifecycle and
:class:`SubscriptionRegistry` keeps subscriptions bound to whichever
client is active.  The process entry point lives in ``gateway_main.py``.
"""

from .connection_manager import ConnectionManager, ConnectionState  # noqa: F401
from .gateway import ChannelGateway  # noqa: F401
from .services.subscriptions import SubscriptionRegistry  # noqa: F401
