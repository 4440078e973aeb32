"""
Client utilities for interacting with external services.

This package describes the channel client boundary (the protocol the
gateway calls, plus signer derivation and connector loading) and
provides the webhook client that delivers subscribed events.
"""

from .channel_client import ChannelClient, derive_address, derive_signer, load_callable  # noqa: F401
from .webhook import DeliveryError, WebhookClient  # noqa: F401
