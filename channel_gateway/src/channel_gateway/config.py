"""
Gateway configuration.

Values are read through the secrets manager (so any of them may be
supplied as ``NAME_FILE``) with a fallback to ``os.getenv``.  The
following keys are recognised:

``NETWORK``
    Channel network selector handed to the connector (default ``rinkeby``).

``ETH_PROVIDER_URL`` / ``NODE_URL``
    Ethereum JSON-RPC provider and channel node URLs.

``CLIENT_LOG_LEVEL``
    Log verbosity passed to the channel client, 0 to 5 (default 3).

``MNEMONIC``
    Default credential used when none was supplied explicitly.

``STORE_PATH``
    JSON file backing the key/value store (default
    ``./connext-store/store.json``).

``CHANNEL_CONNECTOR`` / ``ONCHAIN_TRANSFER``
    Dotted paths (``package.module:attr``) of the channel client
    connector and the on-chain transfer helper.

``WEBHOOK_TIMEOUT`` / ``WEBHOOK_MAX_ATTEMPTS``
    Per request timeout in seconds and attempts per webhook delivery.

``PROMETHEUS_PORT``
    Port for the metrics endpoint (default 9108, ``0`` disables it).
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

from .models import ConnectionOptions
from .secrets_manager import BaseSecretsManager, get_default_secrets_manager


class GatewayConfig(BaseModel):
    network: str = "rinkeby"
    eth_provider_url: Optional[str] = None
    node_url: Optional[str] = None
    client_log_level: int = Field(3, ge=0, le=5)
    mnemonic: Optional[str] = None
    store_path: str = "./connext-store/store.json"
    channel_connector: Optional[str] = None
    onchain_transfer: Optional[str] = None
    webhook_timeout: float = Field(10.0, gt=0)
    webhook_max_attempts: int = Field(3, ge=1)
    prometheus_port: int = 9108

    def default_options(self) -> ConnectionOptions:
        """Connection options used when a caller leaves fields unset."""
        return ConnectionOptions(
            network=self.network,
            eth_provider_url=self.eth_provider_url,
            node_url=self.node_url,
            log_level=self.client_log_level,
        )


def load_config(secrets: Optional[BaseSecretsManager] = None) -> GatewayConfig:
    """Build a :class:`GatewayConfig` from secrets and the environment."""
    secrets = secrets or get_default_secrets_manager()

    def get_secret(name: str) -> Optional[str]:
        value = secrets.get_secret(name)
        if value:
            return value
        return os.getenv(name) or None

    values = {
        "network": get_secret("NETWORK"),
        "eth_provider_url": get_secret("ETH_PROVIDER_URL"),
        "node_url": get_secret("NODE_URL"),
        "client_log_level": get_secret("CLIENT_LOG_LEVEL"),
        "mnemonic": get_secret("MNEMONIC"),
        "store_path": get_secret("STORE_PATH"),
        "channel_connector": get_secret("CHANNEL_CONNECTOR"),
        "onchain_transfer": get_secret("ONCHAIN_TRANSFER"),
        "webhook_timeout": get_secret("WEBHOOK_TIMEOUT"),
        "webhook_max_attempts": get_secret("WEBHOOK_MAX_ATTEMPTS"),
        "prometheus_port": get_secret("PROMETHEUS_PORT"),
    }
    return GatewayConfig(**{key: value for key, value in values.items() if value is not None})
