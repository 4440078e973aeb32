"""
Entry point for the channel gateway process.

Loads configuration, starts the metrics endpoint and, when a mnemonic is
available from the environment or the store, connects the channel client
and rebinds the subscriptions persisted by the previous run.  The
process then stays alive so subscribed events keep being delivered; the
outer request layer drives everything else through
:class:`ChannelGateway`.
"""

import asyncio
import logging
import os

from .config import load_config
from .exceptions import GatewayError, MissingCredential
from .gateway import ChannelGateway
from .telemetry import start_metrics_server


async def main() -> None:
    """Start the gateway and wait until cancelled."""
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)

    config = load_config()
    start_metrics_server(config.prometheus_port)
    gateway = ChannelGateway.from_config(config)

    try:
        await gateway.manager.initialize()
    except MissingCredential:
        logger.info("No mnemonic configured; waiting for an explicit initialize")
    except GatewayError as exc:
        logger.error("Initial connect failed: %s", exc)
    else:
        restored = await gateway.restore_subscriptions()
        logger.info("Restored %d subscriptions", len(restored["subscriptions"]))

    logger.info("Channel gateway started on network %s", config.network)
    try:
        await asyncio.Event().wait()
    finally:
        await gateway.registry.drain()
        logger.info("Channel gateway exiting")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
