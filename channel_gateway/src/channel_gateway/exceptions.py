"""
Channel gateway exceptions.

Lifecycle and validation errors are raised by the gateway itself.
Failures surfaced by the channel client, the store or the on-chain
helper are wrapped in :class:`ExternalClientFailure` and chained to the
original exception.
"""


class GatewayError(Exception):
    """Base exception for channel gateway errors."""
    pass


class MissingCredential(GatewayError):
    """Raised when no mnemonic can be resolved for initialization."""
    pass


class AlreadyInitializing(GatewayError):
    """Raised when initialization is requested while one is in flight."""
    pass


class NotInitialized(GatewayError):
    """Raised when an operation needs a ready client and there is none."""
    pass


class InvalidSubscriptionParams(GatewayError):
    """Raised when subscription parameters fail validation."""
    pass


class SubscriptionNotFound(GatewayError):
    """Raised when a subscription id is unknown to the registry."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class TransferNotFound(GatewayError):
    """Raised when a transfer status lookup returns nothing."""
    pass


class ExternalClientFailure(GatewayError):
    """Wraps a failure raised by the channel client, store or on-chain helper."""

    def __init__(self, operation: str, message: str = "") -> None:
        super().__init__(f"{operation} failed: {message}" if message else f"{operation} failed")
        self.operation = operation


class ExternalConnectFailure(ExternalClientFailure):
    """Raised when connecting the channel client fails during initialize."""
    pass
